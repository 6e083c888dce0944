"""Single-file JSON cache for the latest token listing."""
from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, List, Sequence

from .models import RawListingRecord

log = logging.getLogger(__name__)

DEFAULT_TTL = 30 * 60.0


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _parse_timestamp(value: Any) -> dt.datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _format_timestamp(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


class ListingCache:
    """``{"tokens": [...], "cache_timestamp": "<ISO-8601>"}`` on disk.

    Loading never raises: a missing, empty, malformed, token-less or stale file
    is a miss. Saving is best effort and goes through a temp file plus rename
    so a concurrent reader sees either the old or the new document.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._path = Path(path)
        self._ttl = float(ttl)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    @property
    def ttl(self) -> float:
        return self._ttl

    def load(self) -> List[RawListingRecord] | None:
        if not self._path.exists():
            return None
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            log.warning("Could not read cache %s: %s", self._path, exc)
            return None
        if not raw.strip():
            log.warning("Cache file empty, skipping")
            return None
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            log.warning("Cache file %s is not valid JSON: %s", self._path, exc)
            return None
        if not isinstance(payload, dict):
            log.warning("Cache invalid (unexpected document), skipping")
            return None
        entries = payload.get("tokens")
        if not isinstance(entries, list) or not entries:
            log.warning("Cache invalid (no tokens array), skipping")
            return None
        stamp = _parse_timestamp(payload.get("cache_timestamp"))
        if stamp is None:
            log.info("Cache has no usable timestamp, treating as expired")
            return None
        age = (self._clock() - stamp).total_seconds()
        if age > self._ttl:
            log.info("Cache expired (age %.0fs > ttl %.0fs)", age, self._ttl)
            return None
        records = [
            record
            for record in (RawListingRecord.from_payload(entry) for entry in entries)
            if record is not None
        ]
        if not records:
            log.warning("Cache invalid (no usable token records), skipping")
            return None
        log.info("Data loaded from cache (%d tokens)", len(records))
        return records

    def save(self, records: Sequence[RawListingRecord]) -> bool:
        document = {
            "tokens": [record.to_payload() for record in records],
            "cache_timestamp": _format_timestamp(self._clock()),
        }
        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle)
            os.replace(tmp_name, self._path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            log.error("Error saving cache %s: %s", self._path, exc)
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
        log.info("Cache saved (%d tokens)", len(records))
        return True


__all__ = ["DEFAULT_TTL", "ListingCache"]
