"""
Command line entry points.

Usage:
    python -m market_dash.cli scrape [--max-markets N] [--include-closed] [--output FILE]
    python -m market_dash.cli benchmark [--iterations N]
    python -m market_dash.cli serve [--host HOST] [--port PORT]
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from market_dash.proxy import MarketScraper, ProxyFetchClient, ProxyPoolManager, ScrapeProgress


def build_scraper() -> MarketScraper:
    from config.settings import settings

    pool = ProxyPoolManager.from_settings(settings)
    if (settings.proxy_provider or "").lower() == "webshare" and settings.proxy_api_key:
        pool.load_webshare_proxies(settings.proxy_api_key)
    return MarketScraper(ProxyFetchClient.from_settings(settings, pool=pool))


def run_scrape(args) -> int:
    scraper = build_scraper()
    print("=== Market Scrape ===")
    print(f"Proxies: {scraper.client.pool.proxy_count or 'none (direct)'}")
    print(f"Active only: {not args.include_closed}")
    if args.max_markets:
        print(f"Max markets: {args.max_markets}")
    print()

    def report(progress: ScrapeProgress) -> None:
        print(
            f"   [{progress.phase}] page {progress.current_page}: "
            f"{progress.markets_found} markets, {progress.errors} errors"
        )

    markets = scraper.fetch_all_markets_from_events(
        active_only=not args.include_closed,
        max_markets=args.max_markets,
        on_progress=report,
    )
    print()

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump([m.model_dump(by_alias=True) for m in markets], f, indent=2, ensure_ascii=False)
        print(f"Wrote {len(markets)} markets to {output_path}")

    print("=== Summary ===")
    print(f"Markets: {len(markets)}")
    print(f"Open: {sum(1 for m in markets if not m.closed)}")
    print(f"Total 24h volume: {sum(m.volume_24hr for m in markets):,.0f}")
    return 0


def run_benchmark(args) -> int:
    scraper = build_scraper()
    result = scraper.benchmark_proxies(iterations=args.iterations)
    stats = result["proxy_stats"]

    print("=== Proxy Benchmark ===")
    print(f"Average latency: {result['avg_latency_ms']:.0f}ms")
    print(f"Success rate: {result['success_rate']:.1f}%")
    print(f"Healthy proxies: {stats['healthy_proxies']}/{stats['total_proxies']}")
    print(f"Rate limit hits: {stats['rate_limit_hits']}")
    return 0 if result["success_rate"] > 0 else 1


def run_serve(args) -> int:
    import uvicorn
    from config.settings import settings

    uvicorn.run("market_dash.main:app", host=args.host, port=args.port or settings.backend_port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prediction-market data tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scrape = subparsers.add_parser("scrape", help="Collect every market through the proxy pool")
    scrape.add_argument("--max-markets", type=int, default=None, help="Stop after this many markets")
    scrape.add_argument("--include-closed", action="store_true", help="Include closed markets")
    scrape.add_argument("--output", type=str, default=None, help="Write markets as JSON to this file")
    scrape.set_defaults(handler=run_scrape)

    benchmark = subparsers.add_parser("benchmark", help="Measure proxy latency and success rate")
    benchmark.add_argument("--iterations", type=int, default=10, help="Number of requests")
    benchmark.set_defaults(handler=run_benchmark)

    serve = subparsers.add_parser("serve", help="Run the backend API")
    serve.add_argument("--host", type=str, default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None, help="Defaults to BACKEND_PORT")
    serve.set_defaults(handler=run_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
