"""One refresh cycle: fetch, process, dedupe, enrich and publish."""
from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Protocol, Sequence

from .dexscreener import EnrichmentResult
from .models import PriceChange, ProcessedToken, RawListingRecord
from .numeric import coerce_float
from .processor import (
    DEFAULT_WEIGHTS,
    PerformanceWeights,
    dedupe_by_address,
    process,
    rederive,
)
from .store import Snapshot, SnapshotStore

log = logging.getLogger(__name__)

NO_TOKENS_ERROR = "No tokens from API"


class ListingSource(Protocol):
    async def fetch_all(self, total_desired: int = ..., use_cache: bool = ...) -> List[RawListingRecord]:
        ...


class EnrichmentSource(Protocol):
    async def enrich(self, addresses: Sequence[str]) -> EnrichmentResult:
        ...


class SnapshotState(str, Enum):
    STALE = "stale"
    READY = "ready"


@dataclass(slots=True, frozen=True)
class RefreshResult:
    success: bool
    forced: bool = False
    token_count: int = 0
    price_enriched: int = 0
    liquidity_enriched: int = 0
    duration: float = 0.0
    error: str | None = None


def apply_price_change(token: ProcessedToken, change: PriceChange) -> ProcessedToken:
    updates = {}
    for attr, value in (
        ("price_change_m5", change.m5),
        ("price_change_h1", change.h1),
        ("price_change_h6", change.h6),
        ("price_change_24h", change.h24),
    ):
        numeric = coerce_float(value)
        if numeric is not None:
            updates[attr] = numeric
    if not updates:
        return token
    return dataclasses.replace(token, **updates)


def merge_enrichment(
    tokens: Sequence[ProcessedToken],
    enrichment: EnrichmentResult,
    weights: PerformanceWeights = DEFAULT_WEIGHTS,
) -> tuple[List[ProcessedToken], int, int]:
    """Fold enrichment into ``tokens``; returns ``(tokens, price_hits, liquidity_hits)``.

    Missing entries leave the listing values untouched.
    """

    merged: List[ProcessedToken] = []
    price_hits = 0
    liquidity_hits = 0
    for token in tokens:
        change = enrichment.price_change.get(token.address)
        if change is not None:
            updated = apply_price_change(token, change)
            if updated is not token:
                price_hits += 1
            token = updated
        liquidity = coerce_float(enrichment.liquidity.get(token.address))
        if liquidity is not None and liquidity >= 0:
            token = rederive(token, liquidity, weights)
            liquidity_hits += 1
        merged.append(token)
    return merged, price_hits, liquidity_hits


class SnapshotOrchestrator:
    """Sole writer of the :class:`SnapshotStore`.

    Cycles are serialised; a request arriving mid-cycle waits for it to finish
    and then runs its own.
    """

    def __init__(
        self,
        *,
        listing: ListingSource,
        enrichment: EnrichmentSource,
        store: SnapshotStore,
        total_tokens: int = 1000,
        weights: PerformanceWeights = DEFAULT_WEIGHTS,
    ) -> None:
        self._listing = listing
        self._enrichment = enrichment
        self._store = store
        self._total_tokens = int(total_tokens)
        self._weights = weights
        self._lock: asyncio.Lock | None = None
        self._state = SnapshotState.STALE
        self._last_result: RefreshResult | None = None

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def state(self) -> SnapshotState:
        return self._state

    @property
    def last_result(self) -> RefreshResult | None:
        return self._last_result

    @property
    def refreshing(self) -> bool:
        return self._lock is not None and self._lock.locked()

    def _cycle_lock(self) -> asyncio.Lock:
        # created lazily so the lock binds to the loop that runs the cycles
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def run_refresh_cycle(self, force: bool = False) -> RefreshResult:
        async with self._cycle_lock():
            result = await self._run_cycle(force)
        self._last_result = result
        return result

    async def _run_cycle(self, force: bool) -> RefreshResult:
        started = time.monotonic()
        records = await self._listing.fetch_all(self._total_tokens, use_cache=not force)
        if not records:
            log.error("%s; keeping previous snapshot (%d tokens)", NO_TOKENS_ERROR, len(self._store.current()))
            return RefreshResult(
                success=False,
                forced=force,
                duration=time.monotonic() - started,
                error=NO_TOKENS_ERROR,
            )

        processed = process(records, self._weights)
        tokens = dedupe_by_address(processed)
        if len(tokens) != len(processed):
            log.info("Dropped %d duplicate token(s)", len(processed) - len(tokens))

        price_hits = liquidity_hits = 0
        try:
            enrichment = await self._enrichment.enrich([token.address for token in tokens])
        except Exception as exc:
            log.warning("DexScreener enrichment failed, serving listing values: %s", exc)
        else:
            tokens, price_hits, liquidity_hits = merge_enrichment(tokens, enrichment, self._weights)

        snapshot = Snapshot.build(tokens, refreshed_at=dt.datetime.now(dt.timezone.utc))
        self._store.replace(snapshot)
        self._state = SnapshotState.READY
        duration = time.monotonic() - started
        log.info(
            "Processed %d tokens in %.2fs (price change %d, liquidity %d enriched)",
            len(tokens),
            duration,
            price_hits,
            liquidity_hits,
        )
        return RefreshResult(
            success=True,
            forced=force,
            token_count=len(tokens),
            price_enriched=price_hits,
            liquidity_enriched=liquidity_hits,
            duration=duration,
        )


__all__ = [
    "NO_TOKENS_ERROR",
    "RefreshResult",
    "SnapshotOrchestrator",
    "SnapshotState",
    "apply_price_change",
    "merge_enrichment",
]
