"""
Shared test fixtures: a manual clock, recorded sleeps and scripted HTTP sessions.
"""
import json
import threading
import time

import pytest
import requests
from requests.structures import CaseInsensitiveDict

REASONS = {
    200: "OK",
    404: "Not Found",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_response(status_code=200, json_body=None, headers=None, text=None, url="https://upstream.test/"):
    """A real requests.Response with the given status, body and headers."""
    response = requests.Response()
    response.status_code = status_code
    if text is None:
        text = json.dumps(json_body) if json_body is not None else ""
    response._content = text.encode("utf-8")
    response.encoding = "utf-8"
    response.headers = CaseInsensitiveDict(headers or {})
    response.reason = REASONS.get(status_code, "")
    response.url = url
    return response


class ScriptedSession:
    """
    Stands in for requests.Session.

    Answers GETs either from a list of responses (in order) or from a
    handler ``(url, params) -> Response``. Exceptions in the script are raised.
    """

    def __init__(self, responses=None, handler=None):
        self._script = list(responses or [])
        self._handler = handler
        self._lock = threading.Lock()
        self.calls = []

    def get(self, url, params=None, headers=None, proxies=None, timeout=None, **kwargs):
        with self._lock:
            self.calls.append({
                "url": url,
                "params": params,
                "headers": headers,
                "proxies": proxies,
                "timeout": timeout,
            })
            outcome = None if self._handler else self._script.pop(0)

        if self._handler:
            outcome = self._handler(url, params)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """List that records every requested sleep; use ``sleeps.append`` as the sleep function."""
    return []


@pytest.fixture
def make_response():
    return build_response


@pytest.fixture
def scripted_session():
    return ScriptedSession


@pytest.fixture
def wait_until():
    def _wait_until(predicate, timeout=5.0, interval=0.005):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait_until
