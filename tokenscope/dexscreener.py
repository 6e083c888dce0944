"""DexScreener enrichment: aggregate pool liquidity and pick the deepest pair's price change."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Sequence
from urllib.parse import quote

from .http import HttpClient
from .models import PairRecord, PriceChange
from .retry import NO_RETRY, Failure, FailureKind, RetryPolicy, call_with_retry

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"
DEFAULT_CHAIN = "solana"
DEFAULT_BATCH_SIZE = 30
DEFAULT_BATCH_DELAY = 0.25
DEFAULT_TIMEOUT = 15.0


@dataclass(slots=True)
class EnrichmentResult:
    price_change: Dict[str, PriceChange] = field(default_factory=dict)
    liquidity: Dict[str, float] = field(default_factory=dict)

    def merge(self, other: "EnrichmentResult") -> None:
        self.price_change.update(other.price_change)
        self.liquidity.update(other.liquidity)


def parse_pairs(payload: Any) -> List[PairRecord] | Failure:
    if not isinstance(payload, list):
        return Failure(FailureKind.TERMINAL, "expected a list of pairs")
    pairs: List[PairRecord] = []
    for entry in payload:
        pair = PairRecord.from_payload(entry)
        if pair is not None:
            pairs.append(pair)
    return pairs


def aggregate_pairs(
    pairs: Iterable[PairRecord],
    addresses: Iterable[str],
    *,
    chain: str | None = DEFAULT_CHAIN,
) -> EnrichmentResult:
    """Reduce the pairs of one batch to per-address liquidity and price change.

    Liquidity is summed over every pair an address takes part in as base or
    quote. Price change comes from the single highest-liquidity pair that has
    at least one valid price-change field; the earlier pair wins a tie.
    Only ``addresses`` receive entries.
    """

    wanted = set(addresses)
    liquidity: Dict[str, float] = {}
    best: Dict[str, tuple[float, PriceChange]] = {}
    seen_pairs: set[str] = set()
    for pair in pairs:
        if chain and pair.chain_id and pair.chain_id != chain:
            continue
        if pair.pair_address:
            if pair.pair_address in seen_pairs:
                continue
            seen_pairs.add(pair.pair_address)
        members = pair.addresses() & wanted
        if not members:
            continue
        pair_liquidity = pair.liquidity_usd
        for address in members:
            if pair_liquidity is not None:
                liquidity[address] = liquidity.get(address, 0.0) + pair_liquidity
            if pair.price_change.is_empty:
                continue
            rank = pair_liquidity if pair_liquidity is not None else 0.0
            current = best.get(address)
            if current is None or rank > current[0]:
                best[address] = (rank, pair.price_change)
    return EnrichmentResult(
        price_change={address: change for address, (_, change) in best.items()},
        liquidity=liquidity,
    )


def _batches(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class DexScreenerClient:
    """Secondary source. A failed batch is empty; nothing raises past :meth:`enrich`."""

    def __init__(
        self,
        http: HttpClient,
        *,
        base_url: str = DEFAULT_BASE_URL,
        chain: str = DEFAULT_CHAIN,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        retry_policy: RetryPolicy = NO_RETRY,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._chain = chain
        self._batch_size = int(batch_size)
        self._batch_delay = max(0.0, float(batch_delay))
        self._retry_policy = retry_policy
        self._timeout = float(timeout)
        self._sleep = sleep

    async def fetch_pairs(self, addresses: Sequence[str]) -> List[PairRecord]:
        if not addresses:
            return []
        joined = quote(",".join(addresses), safe=",")
        url = f"{self._base_url}/tokens/v1/{self._chain}/{joined}"

        async def _attempt() -> List[PairRecord] | Failure:
            payload = await self._http.get_json(
                url, headers={"Accept": "application/json"}, timeout=self._timeout
            )
            if isinstance(payload, Failure):
                return payload
            return parse_pairs(payload)

        result = await call_with_retry(
            _attempt, self._retry_policy, sleep=self._sleep, label="DexScreener batch"
        )
        if isinstance(result, Failure):
            log.warning(
                "DexScreener batch of %d failed: %s", len(addresses), result.message
            )
            return []
        return result

    async def enrich(self, addresses: Sequence[str]) -> EnrichmentResult:
        unique = list(dict.fromkeys(addr for addr in addresses if addr))
        combined = EnrichmentResult()
        batches = list(_batches(unique, self._batch_size))
        for index, batch in enumerate(batches):
            pairs = await self.fetch_pairs(batch)
            combined.merge(aggregate_pairs(pairs, batch, chain=self._chain))
            if index + 1 < len(batches):
                await self._sleep(self._batch_delay)
        log.info(
            "DexScreener: price change for %d/%d, liquidity for %d/%d",
            len(combined.price_change),
            len(unique),
            len(combined.liquidity),
            len(unique),
        )
        return combined


__all__ = [
    "DexScreenerClient",
    "EnrichmentResult",
    "aggregate_pairs",
    "parse_pairs",
]
