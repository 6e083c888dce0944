"""Derived ratios and the composite performance score for listing records."""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Tuple

import yaml

from .config import ConfigError
from .models import ProcessedToken, RawListingRecord, is_pump_address
from .numeric import coerce_float, finite_or_default, safe_division

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PerformanceWeights:
    volume_liquidity: float = 0.4
    volume_mc: float = 0.4
    liquidity_mc: float = 0.2


DEFAULT_WEIGHTS = PerformanceWeights()


def load_weights(path: str | Path | None) -> PerformanceWeights:
    """Read weights from a YAML mapping; absent keys keep their defaults.

    Raises :class:`~tokenscope.config.ConfigError` when the file is not valid
    YAML, is not a mapping, names an unknown weight or holds a non-finite or
    non-numeric value.
    """

    if not path:
        return DEFAULT_WEIGHTS
    weights_path = Path(path)
    if not weights_path.exists():
        log.warning("Weights file %s not found, using defaults", weights_path)
        return DEFAULT_WEIGHTS
    try:
        payload = yaml.safe_load(weights_path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read weights file {weights_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"weights file {weights_path} must contain a mapping")
    known = {f.name for f in dataclasses.fields(PerformanceWeights)}
    unknown = set(payload) - known
    if unknown:
        raise ConfigError(f"unknown weight(s): {', '.join(sorted(map(str, unknown)))}")
    values = {}
    for key, value in payload.items():
        numeric = coerce_float(value)
        if numeric is None:
            raise ConfigError(f"weight {key!r} must be a finite number, got {value!r}")
        values[key] = numeric
    return dataclasses.replace(DEFAULT_WEIGHTS, **values)


def derive_ratios(
    volume: float,
    liquidity: float,
    mc: float,
    weights: PerformanceWeights = DEFAULT_WEIGHTS,
) -> Tuple[float, float, float, float]:
    """Return ``(volume/liquidity, volume/mc, liquidity/mc, performance)``."""

    volume_liquidity = safe_division(volume, liquidity)
    volume_mc = safe_division(volume, mc)
    liquidity_mc = safe_division(liquidity, mc)
    performance = finite_or_default(
        volume_liquidity * weights.volume_liquidity
        + volume_mc * weights.volume_mc
        + liquidity_mc * weights.liquidity_mc
    )
    return volume_liquidity, volume_mc, liquidity_mc, performance


def process_record(
    record: RawListingRecord,
    weights: PerformanceWeights = DEFAULT_WEIGHTS,
) -> ProcessedToken:
    volume = finite_or_default(record.volume_24h_usd)
    liquidity = finite_or_default(record.liquidity_usd)
    mc = finite_or_default(record.market_cap_usd)
    volume_liquidity, volume_mc, liquidity_mc, performance = derive_ratios(
        volume, liquidity, mc, weights
    )
    return ProcessedToken(
        address=record.address,
        symbol=record.symbol,
        name=record.name,
        volume=volume,
        liquidity=liquidity,
        mc=mc,
        price_change_m5=0.0,
        price_change_h1=0.0,
        price_change_h6=0.0,
        price_change_24h=finite_or_default(record.price_change_24h),
        volume_change_24h_percent=finite_or_default(record.volume_change_24h_percent),
        volume_liquidity_ratio=volume_liquidity,
        volume_mc_ratio=volume_mc,
        liquidity_mc_ratio=liquidity_mc,
        performance=performance,
        is_pump=is_pump_address(record.address),
    )


def process(
    records: Iterable[RawListingRecord],
    weights: PerformanceWeights = DEFAULT_WEIGHTS,
) -> List[ProcessedToken]:
    return [process_record(record, weights) for record in records]


def rederive(
    token: ProcessedToken,
    liquidity: float,
    weights: PerformanceWeights = DEFAULT_WEIGHTS,
) -> ProcessedToken:
    """Swap in a corrected liquidity and recompute what depends on it.

    Volume and market cap keep their listing values.
    """

    volume_liquidity, volume_mc, liquidity_mc, performance = derive_ratios(
        token.volume, liquidity, token.mc, weights
    )
    return dataclasses.replace(
        token,
        liquidity=liquidity,
        volume_liquidity_ratio=volume_liquidity,
        volume_mc_ratio=volume_mc,
        liquidity_mc_ratio=liquidity_mc,
        performance=performance,
    )


def dedupe_by_address(tokens: Iterable[ProcessedToken]) -> List[ProcessedToken]:
    seen: set[str] = set()
    unique: List[ProcessedToken] = []
    for token in tokens:
        if token.address in seen:
            continue
        seen.add(token.address)
        unique.append(token)
    return unique


__all__ = [
    "DEFAULT_WEIGHTS",
    "PerformanceWeights",
    "dedupe_by_address",
    "derive_ratios",
    "load_weights",
    "process",
    "process_record",
    "rederive",
]
