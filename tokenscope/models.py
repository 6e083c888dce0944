"""Typed records for the listing source, the enrichment source and the served snapshot."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from .numeric import coerce_float, finite_or_default

PUMP_SUFFIX = "pump"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass(slots=True, frozen=True)
class RawListingRecord:
    """One token row from the Birdeye token list, validated at the boundary."""

    address: str
    symbol: str = ""
    name: str = ""
    volume_24h_usd: float = 0.0
    liquidity_usd: float = 0.0
    market_cap_usd: float = 0.0
    price_change_24h: float = 0.0
    volume_change_24h_percent: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any) -> "RawListingRecord | None":
        if not isinstance(payload, Mapping):
            return None
        address = payload.get("address")
        if not isinstance(address, str) or not address.strip():
            return None
        return cls(
            address=address.strip(),
            symbol=_text(payload.get("symbol")),
            name=_text(payload.get("name")),
            volume_24h_usd=finite_or_default(payload.get("v24hUSD")),
            liquidity_usd=finite_or_default(payload.get("liquidity")),
            market_cap_usd=finite_or_default(payload.get("mc")),
            price_change_24h=finite_or_default(payload.get("priceChange24h")),
            volume_change_24h_percent=finite_or_default(payload.get("v24hChangePercent")),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialise back to the Birdeye field names used by the cache file."""

        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "v24hUSD": self.volume_24h_usd,
            "liquidity": self.liquidity_usd,
            "mc": self.market_cap_usd,
            "priceChange24h": self.price_change_24h,
            "v24hChangePercent": self.volume_change_24h_percent,
        }


@dataclass(slots=True, frozen=True)
class TokenRef:
    address: str = ""
    symbol: str = ""
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenRef":
        if isinstance(payload, str):
            return cls(address=payload)
        if not isinstance(payload, Mapping):
            return cls()
        address = payload.get("address")
        return cls(
            address=address.strip() if isinstance(address, str) else "",
            symbol=_text(payload.get("symbol")),
            name=_text(payload.get("name")),
        )


@dataclass(slots=True, frozen=True)
class PriceChange:
    """Per-timeframe price change in percent; ``None`` means absent or invalid."""

    m5: float | None = None
    h1: float | None = None
    h6: float | None = None
    h24: float | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "PriceChange":
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            m5=coerce_float(payload.get("m5")),
            h1=coerce_float(payload.get("h1")),
            h6=coerce_float(payload.get("h6")),
            h24=coerce_float(payload.get("h24")),
        )

    @property
    def is_empty(self) -> bool:
        return self.m5 is None and self.h1 is None and self.h6 is None and self.h24 is None


@dataclass(slots=True, frozen=True)
class PairRecord:
    """A DexScreener trading pair reduced to the fields enrichment needs."""

    chain_id: str
    base: TokenRef
    quote: TokenRef
    price_change: PriceChange = field(default_factory=PriceChange)
    liquidity_usd: float | None = None
    pair_address: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "PairRecord | None":
        if not isinstance(payload, Mapping):
            return None
        base = TokenRef.from_payload(payload.get("baseToken"))
        quote = TokenRef.from_payload(payload.get("quoteToken"))
        if not base.address and not quote.address:
            return None
        liquidity = payload.get("liquidity")
        if isinstance(liquidity, Mapping):
            liquidity_usd = coerce_float(liquidity.get("usd"))
        else:
            liquidity_usd = None
        return cls(
            chain_id=_text(payload.get("chainId")),
            base=base,
            quote=quote,
            price_change=PriceChange.from_payload(payload.get("priceChange")),
            liquidity_usd=liquidity_usd,
            pair_address=_text(payload.get("pairAddress")),
        )

    def addresses(self) -> set[str]:
        return {addr for addr in (self.base.address, self.quote.address) if addr}


@dataclass(slots=True, frozen=True)
class ProcessedToken:
    address: str
    symbol: str
    name: str
    volume: float
    liquidity: float
    mc: float
    price_change_m5: float
    price_change_h1: float
    price_change_h6: float
    price_change_24h: float
    volume_change_24h_percent: float
    volume_liquidity_ratio: float
    volume_mc_ratio: float
    liquidity_mc_ratio: float
    performance: float
    is_pump: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "volume": self.volume,
            "liquidity": self.liquidity,
            "mc": self.mc,
            "price_change_m5": self.price_change_m5,
            "price_change_h1": self.price_change_h1,
            "price_change_h6": self.price_change_h6,
            "price_change_24h": self.price_change_24h,
            "v24hChangePercent": self.volume_change_24h_percent,
            "volume_liquidity_ratio": self.volume_liquidity_ratio,
            "volume_mc_ratio": self.volume_mc_ratio,
            "liquidity_mc_ratio": self.liquidity_mc_ratio,
            "performance": self.performance,
            "is_pump": self.is_pump,
        }


def is_pump_address(address: str) -> bool:
    return address.lower().endswith(PUMP_SUFFIX)


__all__ = [
    "PUMP_SUFFIX",
    "PairRecord",
    "PriceChange",
    "ProcessedToken",
    "RawListingRecord",
    "TokenRef",
    "is_pump_address",
]
