"""
Proxy pool data structures.
"""
from dataclasses import dataclass, asdict
from typing import Optional


@dataclass
class ProxyAuth:
    username: str
    password: str


@dataclass
class ProxyRecord:
    """
    One egress proxy and its health counters.

    Mutated only by ProxyPoolManager (selection, mark_success, mark_failure).
    """
    host: str
    port: int
    protocol: str = "http"  # http, https, socks5
    auth: Optional[ProxyAuth] = None
    type: Optional[str] = None  # datacenter, residential, mobile
    country: Optional[str] = None
    fail_count: int = 0
    success_count: int = 0
    avg_latency_ms: Optional[float] = None
    last_used_at: Optional[float] = None

    @property
    def key(self) -> str:
        """Identity used by the rate-limit ledger."""
        return f"{self.host}:{self.port}"

    def to_dict(self) -> dict:
        """Public view without credentials."""
        data = asdict(self)
        data["auth"] = self.auth.username if self.auth else None
        return data


@dataclass
class ProxyStats:
    total_proxies: int = 0
    healthy_proxies: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    avg_latency_ms: float = 0.0
    rate_limit_hits: int = 0
