"""
Market scraper tests: payload normalisation, event/market paging and details.
"""
from urllib.parse import parse_qs, urlsplit

import pytest
from pydantic import ValidationError

from market_dash.proxy import MarketScraper, ProxyFetchClient, parse_market

GAMMA = "https://gamma.test"


def raw_market(market_id, **extra):
    return {"id": market_id, "question": f"Will {market_id} happen?", **extra}


def event(event_id, *markets):
    return {"id": event_id, "title": f"Event {event_id}", "slug": f"event-{event_id}", "markets": list(markets)}


class FakeGamma:
    """Pages of /events and /markets keyed by offset; anything else is a 404."""

    def __init__(self, make_response, events_pages, markets_pages=None, failing_event_offsets=()):
        self.make_response = make_response
        self.events_pages = events_pages
        self.markets_pages = markets_pages or {}
        self.failing_event_offsets = set(failing_event_offsets)
        self.paths = []

    def __call__(self, url, params):
        parts = urlsplit(url)
        query = parse_qs(parts.query)
        offset = int(query.get("offset", ["0"])[0])
        self.paths.append((parts.path, offset))

        if parts.path == "/events":
            if offset in self.failing_event_offsets:
                return self.make_response(404, {})
            return self.make_response(200, self.events_pages.get(offset, []))
        if parts.path == "/markets":
            return self.make_response(200, self.markets_pages.get(offset, []))
        if parts.path.startswith("/markets/"):
            market_id = parts.path.rsplit("/", 1)[1]
            if market_id == "gone":
                return self.make_response(404, {})
            return self.make_response(200, raw_market(market_id, liquidity="1500.5"))
        return self.make_response(404, {})


@pytest.fixture
def build_scraper(scripted_session, sleeps):
    def _build(handler, page_size=2):
        session = scripted_session(handler=handler)
        client = ProxyFetchClient(session=session, base_urls={"gamma": GAMMA}, sleep=sleeps.append)
        return MarketScraper(client, page_size=page_size, sleep=sleeps.append)
    return _build


# ============================================================
# parse_market
# ============================================================

def test_parse_market_decodes_json_strings():
    market = parse_market({
        "id": "12",
        "question": "Rain tomorrow?",
        "outcomes": '["Up", "Down"]',
        "outcomePrices": '["0.62", "0.38"]',
        "clobTokenIds": '["t-up", "t-down"]',
        "volume": "1234.5",
        "volume24hr": 99,
        "closed": True,
    }, event_title="Weather", event_slug="weather")

    assert market.title == "Rain tomorrow?"
    assert market.outcomes == ["Up", "Down"]
    assert market.outcome_prices == [0.62, 0.38]
    assert market.clob_token_ids == ["t-up", "t-down"]
    assert market.volume == 1234.5
    assert market.volume_24hr == 99.0
    assert market.closed is True
    assert market.event_title == "Weather"
    assert market.probability == 0.62


def test_parse_market_defaults():
    market = parse_market({"conditionId": "0xabc", "image": None, "outcomePrices": None})

    assert market.id == "0xabc"
    assert market.condition_id == "0xabc"
    assert market.title == "Unknown Market"
    assert market.outcomes == ["Yes", "No"]
    assert market.outcome_prices == [0.5, 0.5]
    assert market.active is True
    assert market.closed is False
    assert market.image is None


def test_parse_market_numeric_id_and_fallback_volume():
    market = parse_market({"id": 7, "volumeNum": 50.5, "liquidityNum": 10})
    assert market.id == "7"
    assert market.volume == 50.5
    assert market.liquidity == 10.0


def test_parse_market_rejects_unusable_payload():
    with pytest.raises(ValidationError):
        parse_market({"question": "no id at all"})
    with pytest.raises(ValidationError):
        parse_market({"id": "1", "outcomePrices": "not json"})


def test_serialised_market_uses_camel_case():
    payload = parse_market(raw_market("1")).model_dump(by_alias=True)
    assert payload["outcomePrices"] == [0.5, 0.5]
    assert payload["volume24hr"] == 0.0
    assert payload["conditionId"] == "1"


# ============================================================
# Events and standalone markets
# ============================================================

def test_scrape_events_then_standalone_markets(build_scraper, make_response):
    gamma = FakeGamma(
        make_response,
        events_pages={
            0: [event("e1", raw_market("a"), raw_market("b")), event("e2", raw_market("c"))],
            2: [event("e3", raw_market("a"))],
        },
        markets_pages={0: [raw_market("b"), raw_market("d")], 2: [raw_market("e")]},
    )
    scraper = build_scraper(gamma)
    phases = []
    seen = []

    markets = scraper.fetch_all_markets_from_events(
        on_progress=lambda p: phases.append(p.phase),
        on_market=seen.append,
    )

    assert [m.id for m in markets] == ["a", "b", "c", "d", "e"]
    assert markets[0].event_title == "Event e1"
    assert markets[3].event_title is None
    assert seen == markets
    assert phases[-1] == "complete"
    assert "markets" in phases
    assert [p for p in gamma.paths if p[0] == "/events"] == [("/events", 0), ("/events", 2)]


def test_active_only_adds_filters(build_scraper, make_response):
    gamma = FakeGamma(make_response, events_pages={})
    scraper = build_scraper(gamma)

    scraper.fetch_all_markets_from_events(active_only=True)

    urls = [call["url"] for call in scraper.client._session.calls]
    assert "closed=false" in urls[0]
    assert "active=true" in urls[1]


def test_max_markets_stops_early(build_scraper, make_response):
    gamma = FakeGamma(
        make_response,
        events_pages={0: [event("e1", raw_market("a"), raw_market("b"), raw_market("c"))]},
        markets_pages={0: [raw_market("d")]},
    )
    scraper = build_scraper(gamma, page_size=5)

    markets = scraper.fetch_all_markets_from_events(max_markets=2)

    assert [m.id for m in markets] == ["a", "b"]
    assert all(path == "/events" for path, _ in gamma.paths)


def test_failed_events_page_is_skipped(build_scraper, make_response):
    gamma = FakeGamma(
        make_response,
        events_pages={2: [event("e2", raw_market("x"))]},
        failing_event_offsets={0},
    )
    scraper = build_scraper(gamma)
    errors = []

    markets = scraper.fetch_all_markets_from_events(on_error=lambda e, ctx: errors.append(ctx))

    assert [m.id for m in markets] == ["x"]
    assert errors == ["/events page 1"]


def test_malformed_market_counted_not_fatal(build_scraper, make_response):
    gamma = FakeGamma(
        make_response,
        events_pages={0: [event("e1", raw_market("ok"), raw_market("bad", outcomePrices="{oops"))]},
    )
    scraper = build_scraper(gamma, page_size=5)
    errors = []

    markets = scraper.fetch_all_markets_from_events(on_error=lambda e, ctx: errors.append(ctx))

    assert [m.id for m in markets] == ["ok"]
    assert errors == ["market bad"]


def test_stream_is_lazy(build_scraper, make_response):
    gamma = FakeGamma(
        make_response,
        events_pages={
            0: [event("e1", raw_market("a"), raw_market("b"))],
            1: [event("e2", raw_market("c"))],
        },
    )
    scraper = build_scraper(gamma, page_size=1)

    stream = scraper.stream_all_markets(active_only=False)
    first = next(stream)

    assert first.id == "a"
    assert gamma.paths == [("/events", 0)]
    assert [m.id for m in stream] == ["b", "c"]


def test_stream_respects_max_markets(build_scraper, make_response):
    gamma = FakeGamma(make_response, events_pages={0: [event("e1", raw_market("a"), raw_market("b"))]})
    scraper = build_scraper(gamma, page_size=5)

    assert [m.id for m in scraper.stream_all_markets(max_markets=1)] == ["a"]


# ============================================================
# Details and benchmark
# ============================================================

def test_fetch_market_details_skips_failures(build_scraper, make_response):
    scraper = build_scraper(FakeGamma(make_response, events_pages={}))
    progress = []

    details = scraper.fetch_market_details(["m1", "gone", "m2"], on_progress=lambda done, total: progress.append(total))

    assert set(details) == {"m1", "m2"}
    assert details["m1"].liquidity == 1500.5
    assert progress == [3, 3, 3]


def test_benchmark_reports_success_rate(build_scraper, make_response):
    responses = iter([200, 500, 200, 200])

    def handler(url, params):
        return make_response(next(responses), [])

    scraper = build_scraper(handler)
    result = scraper.benchmark_proxies(iterations=4)

    assert result["success_rate"] == 75.0
    assert result["avg_latency_ms"] >= 0
    assert result["proxy_stats"]["total_proxies"] == 0
