"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream REST APIs
    gamma_api_base_url: str = "https://gamma-api.polymarket.com"
    clob_api_base_url: str = "https://clob.polymarket.com"
    data_api_base_url: str = "https://data-api.polymarket.com"

    # Backend server
    backend_port: int = 3001

    # Dashboard client (talks to the backend above)
    dashboard_api_base_url: str = "http://localhost:3001"

    # Proxy pool
    proxy_list: Optional[str] = None
    proxy_provider: Optional[str] = None  # brightdata, oxylabs, smartproxy, webshare, custom
    proxy_api_key: Optional[str] = None
    proxy_username: Optional[str] = None
    proxy_password: Optional[str] = None
    proxy_zone: Optional[str] = None
    proxy_country: str = "us"
    proxy_session_type: str = "rotating"  # rotating or sticky
    proxy_max_failures: int = 3
    proxy_cooldown_seconds: float = 60.0
    proxy_min_delay_seconds: float = 0.1
    # Hand out the first proxy when every proxy is unhealthy
    proxy_fallback_to_first: bool = True

    # Proxy-aware fetch client
    fetch_timeout_seconds: float = 30.0
    fetch_retries: int = 3
    fetch_retry_delay_seconds: float = 1.0
    fetch_max_retry_after_seconds: float = 5.0
    fetch_page_delay_seconds: float = 0.1

    # Cache
    cache_revalidation_workers: int = 4
    # None: joining callers wait for the in-flight fetch however long it runs
    cache_coalesce_timeout: Optional[float] = None
    cache_slow_operation_seconds: float = 0.5

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
