"""Finite-number coercion helpers shared by the parsers and the processor."""
from __future__ import annotations

import math
from typing import Any


def coerce_float(value: Any) -> float | None:
    """Return ``value`` as a finite float, or ``None`` when it is not one.

    Numbers and numeric strings are accepted; booleans, blanks, NaN and
    infinities are rejected.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            numeric = float(text)
        except (TypeError, ValueError):
            return None
    else:
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def finite_or_default(value: Any, default: float = 0.0) -> float:
    numeric = coerce_float(value)
    return default if numeric is None else numeric


def safe_division(a: float, b: float, default: float = 0.0) -> float:
    """Divide ``a`` by ``b`` falling back to ``default`` on non-finite results."""

    if b == 0 or not math.isfinite(b):
        return default
    try:
        result = a / b
    except (ArithmeticError, TypeError):
        return default
    return result if math.isfinite(result) else default


__all__ = ["coerce_float", "finite_or_default", "safe_division"]
