from __future__ import annotations

from typing import Any, Callable, Dict, List

import pytest

from tokenscope.http import HttpClient
from tokenscope.logging_utils import reset_warn_once_cache


class _InvalidJson:
    """Marker payload that makes :meth:`DummyResponse.json` fail to decode."""


INVALID_JSON = _InvalidJson()


class DummyResponse:
    def __init__(
        self,
        payload: Any = None,
        *,
        status: int = 200,
        headers: Dict[str, str] | None = None,
    ) -> None:
        self._payload = payload
        self.status = status
        self.headers = headers or {}

    async def __aenter__(self) -> "DummyResponse":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def json(self, content_type: str | None = None) -> Any:
        if self._payload is INVALID_JSON:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class DummySession:
    """Replays queued responses (or raises queued exceptions) for ``get``."""

    def __init__(self, responses: List[Any] | None = None) -> None:
        self._responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def queue(self, *responses: Any) -> None:
        self._responses.extend(responses)

    def get(
        self,
        url: str,
        *,
        headers: Dict[str, str] | None = None,
        params: Dict[str, Any] | None = None,
        timeout: Any = None,
    ) -> DummyResponse:
        self.calls.append(
            {"url": url, "headers": headers or {}, "params": params or {}, "timeout": timeout}
        )
        if not self._responses:
            raise AssertionError(f"No more responses queued for {url}")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def invalid_json() -> Any:
    return INVALID_JSON


@pytest.fixture
def response() -> Callable[..., DummyResponse]:
    return DummyResponse


@pytest.fixture
def session() -> DummySession:
    return DummySession()


@pytest.fixture
def http(session: DummySession) -> HttpClient:
    return HttpClient(session=session)  # type: ignore[arg-type]


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: List[float]) -> Callable[[float], Any]:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture(autouse=True)
def _reset_warn_once() -> None:
    reset_warn_once_cache()


def listing_payload(*tokens: Dict[str, Any], success: bool = True) -> Dict[str, Any]:
    return {"success": success, "data": {"tokens": list(tokens)}}


@pytest.fixture
def listing() -> Callable[..., Dict[str, Any]]:
    return listing_payload
