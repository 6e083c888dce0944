"""Shared aiohttp client that turns upstream responses into JSON or a classified failure."""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import aiohttp

from .numeric import coerce_float
from .retry import Failure, FailureKind

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def parse_retry_after(value: Any) -> float | None:
    seconds = coerce_float(value)
    if seconds is None or seconds <= 0:
        return None
    return seconds


class HttpClient:
    """Lazily created aiohttp session with per-request timeouts and host counters."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = "tokenscope/1.0",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._timeout = float(timeout)
        self._user_agent = user_agent
        self._session = session
        self._owns_session = session is None
        self._session_lock = asyncio.Lock()
        self._metrics_req: Counter[str] = Counter()
        self._metrics_err: Counter[str] = Counter()

    async def start(self) -> None:
        async with self._session_lock:
            if self._session is not None and not getattr(self._session, "closed", False):
                return
            headers = {
                "User-Agent": self._user_agent,
                "Accept": "application/json",
            }
            self._session = aiohttp.ClientSession(headers=headers)
            self._owns_session = True

    async def close(self) -> None:
        async with self._session_lock:
            if (
                self._owns_session
                and self._session is not None
                and not getattr(self._session, "closed", False)
            ):
                await self._session.close()
            if self._owns_session:
                self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or getattr(self._session, "closed", False):
            await self.start()
        assert self._session is not None
        return self._session

    async def get_json(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout: float | None = None,
    ) -> Any | Failure:
        """GET ``url`` and decode its JSON body.

        Never raises for upstream problems: 429 maps to ``RATE_LIMITED``,
        timeouts, connection errors and 5xx map to ``TRANSIENT``, any other
        non-2xx status or an undecodable body maps to ``TERMINAL``.
        """

        session = await self._ensure_session()
        host = urlparse(url).hostname or url
        client_timeout = aiohttp.ClientTimeout(total=float(timeout or self._timeout))
        self._metrics_req[host] += 1
        try:
            async with session.get(
                url,
                headers=dict(headers or {}),
                params=dict(params or {}),
                timeout=client_timeout,
            ) as resp:
                status = int(resp.status)
                if status == 429:
                    self._metrics_err[host] += 1
                    return Failure(
                        FailureKind.RATE_LIMITED,
                        "HTTP 429",
                        status=status,
                        retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                    )
                if status >= 500:
                    self._metrics_err[host] += 1
                    return Failure(FailureKind.TRANSIENT, f"HTTP {status}", status=status)
                if not 200 <= status < 300:
                    self._metrics_err[host] += 1
                    return Failure(FailureKind.TERMINAL, f"HTTP {status}", status=status)
                try:
                    return await resp.json(content_type=None)
                except ValueError as exc:
                    self._metrics_err[host] += 1
                    return Failure(
                        FailureKind.TERMINAL, f"invalid JSON body: {exc}", status=status
                    )
        except asyncio.TimeoutError:
            self._metrics_err[host] += 1
            return Failure(FailureKind.TRANSIENT, "request timed out")
        except aiohttp.ClientError as exc:
            self._metrics_err[host] += 1
            return Failure(FailureKind.TRANSIENT, f"{type(exc).__name__}: {exc}")

    def metrics(self) -> Dict[str, Dict[str, float]]:
        data: Dict[str, Dict[str, float]] = {}
        for host in set(self._metrics_req) | set(self._metrics_err):
            data[host] = {
                "req_total": float(self._metrics_req.get(host, 0)),
                "err_total": float(self._metrics_err.get(host, 0)),
            }
        return data


__all__ = ["DEFAULT_TIMEOUT", "HttpClient", "parse_retry_after"]
