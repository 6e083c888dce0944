"""Birdeye token-list client: paginated fetch, rate budget, retries and cache."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping

from .cache import ListingCache
from .http import HttpClient
from .logging_utils import warn_once_per
from .models import RawListingRecord
from .rate_limit import RequestBudget
from .retry import Failure, FailureKind, RetryPolicy, call_with_retry, exponential_backoff

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://public-api.birdeye.so"
DEFAULT_PAGE_SIZE = 50
DEFAULT_PAGE_DELAY = 1.2
DEFAULT_RATE_LIMIT = 1000
DEFAULT_TIMEOUT = 10.0

DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=4,
    backoff=exponential_backoff(base=0.3, rate_limit_base=2.0),
)


@dataclass(slots=True)
class ListingPage:
    offset: int
    limit: int
    records: List[RawListingRecord] = field(default_factory=list)
    raw_count: int = 0

    @property
    def exhausted(self) -> bool:
        """``True`` when upstream returned fewer rows than requested."""

        return self.raw_count < self.limit


def parse_listing(payload: Any, *, offset: int, limit: int) -> ListingPage | Failure:
    """Validate a ``/defi/tokenlist`` body into a :class:`ListingPage`."""

    if not isinstance(payload, Mapping):
        return Failure(FailureKind.TERMINAL, "unexpected response body")
    if not payload.get("success"):
        error = payload.get("error") or payload.get("message") or "success=false"
        return Failure(FailureKind.TERMINAL, str(error))
    data = payload.get("data")
    tokens = data.get("tokens") if isinstance(data, Mapping) else None
    if tokens is None:
        tokens = []
    if not isinstance(tokens, list):
        return Failure(FailureKind.TERMINAL, "data.tokens is not a list")
    records: List[RawListingRecord] = []
    for entry in tokens:
        record = RawListingRecord.from_payload(entry)
        if record is not None:
            records.append(record)
    return ListingPage(offset=offset, limit=limit, records=records, raw_count=len(tokens))


class BirdeyeClient:
    """Primary listing source.

    Page requests never raise past this class; exhausted retries surface as a
    :class:`Failure` and :meth:`fetch_all` returns whatever was collected.
    """

    def __init__(
        self,
        http: HttpClient,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        cache: ListingCache | None = None,
        budget: RequestBudget | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_delay: float = DEFAULT_PAGE_DELAY,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._http = http
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._cache = cache
        self._budget = budget or RequestBudget(limit=DEFAULT_RATE_LIMIT, window=60.0)
        self._page_size = int(page_size)
        self._page_delay = max(0.0, float(page_delay))
        self._retry_policy = retry_policy
        self._timeout = float(timeout)
        self._sleep = sleep

    @property
    def budget(self) -> RequestBudget:
        return self._budget

    @property
    def cache(self) -> ListingCache | None:
        return self._cache

    async def list_page(self, offset: int = 0, limit: int = DEFAULT_PAGE_SIZE) -> ListingPage | Failure:
        url = f"{self._base_url}/defi/tokenlist"
        params = {
            "sort_by": "v24hUSD",
            "sort_type": "desc",
            "offset": int(offset),
            "limit": int(limit),
        }
        headers = {"accept": "application/json", "X-API-KEY": self._api_key}

        async def _attempt() -> ListingPage | Failure:
            self._budget.record()
            payload = await self._http.get_json(
                url, headers=headers, params=params, timeout=self._timeout
            )
            if isinstance(payload, Failure):
                return payload
            return parse_listing(payload, offset=offset, limit=limit)

        result = await call_with_retry(
            _attempt,
            self._retry_policy,
            sleep=self._sleep,
            label=f"Birdeye tokenlist offset={offset}",
        )
        if isinstance(result, Failure):
            log.warning("Birdeye request failed: %s", result.message)
        return result

    async def _respect_budget(self) -> None:
        wait = self._budget.wait_time()
        if wait <= 0:
            return
        warn_once_per(
            1.0,
            "birdeye-budget",
            "Birdeye rate budget reached, waiting %.2fs",
            wait,
            logger=log,
        )
        await self._sleep(wait)

    async def fetch_all(self, total_desired: int = 1000, use_cache: bool = True) -> List[RawListingRecord]:
        if use_cache and self._cache is not None:
            cached = self._cache.load()
            if cached:
                return cached

        collected: List[RawListingRecord] = []
        if total_desired <= 0:
            return collected
        started = time.monotonic()
        for offset in range(0, total_desired, self._page_size):
            log.info("Fetching tokens %d to %d...", offset, offset + self._page_size)
            await self._respect_budget()
            page = await self.list_page(offset, self._page_size)
            if isinstance(page, Failure):
                if collected:
                    log.warning(
                        "Stopping pagination at offset %d after %d tokens: %s",
                        offset,
                        len(collected),
                        page.message,
                    )
                else:
                    log.error("Birdeye API error: %s", page.message)
                break
            collected.extend(page.records)
            if len(collected) >= total_desired:
                del collected[total_desired:]
                break
            if page.exhausted:
                break
            await self._sleep(self._page_delay)

        log.info(
            "Fetch: %d tokens in %.2fs", len(collected), time.monotonic() - started
        )
        if collected and self._cache is not None:
            self._cache.save(collected)
        return collected


__all__ = [
    "BirdeyeClient",
    "DEFAULT_RETRY_POLICY",
    "ListingPage",
    "parse_listing",
]
