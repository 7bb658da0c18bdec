"""
Error taxonomy for upstream access.

Network and timeout failures are not wrapped: the fetch client re-raises the
last ``requests.RequestException`` once retries are exhausted.
"""
from typing import Any, Optional


class UpstreamError(Exception):
    """An upstream API answered with a response we cannot use."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.body = body


class NotFoundError(UpstreamError):
    """Upstream returned 404 for the requested resource."""


class RateLimitError(UpstreamError):
    """Upstream kept rate limiting us after every retry."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, url=url)
        self.retry_after = retry_after


class UpstreamDecodeError(UpstreamError):
    """Upstream payload did not match the expected schema."""
