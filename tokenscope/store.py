"""Holder of the currently served snapshot."""
from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

from .models import ProcessedToken


@dataclass(slots=True, frozen=True)
class Snapshot:
    tokens: Tuple[ProcessedToken, ...] = ()
    refreshed_at: dt.datetime | None = None
    _index: Dict[str, ProcessedToken] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def build(
        cls,
        tokens: Sequence[ProcessedToken],
        *,
        refreshed_at: dt.datetime | None = None,
    ) -> "Snapshot":
        frozen = tuple(tokens)
        index: Dict[str, ProcessedToken] = {}
        for token in frozen:
            index.setdefault(token.address, token)
        return cls(
            tokens=frozen,
            refreshed_at=refreshed_at or dt.datetime.now(dt.timezone.utc),
            _index=index,
        )

    def __len__(self) -> int:
        return len(self.tokens)

    def get(self, address: str) -> ProcessedToken | None:
        return self._index.get(address)

    def to_payload(self) -> List[dict]:
        return [token.to_dict() for token in self.tokens]


EMPTY_SNAPSHOT = Snapshot()


class SnapshotStore:
    """Single writer (the orchestrator), many readers (request handlers)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: Snapshot = EMPTY_SNAPSHOT

    def current(self) -> Snapshot:
        with self._lock:
            return self._snapshot

    def replace(self, snapshot: Snapshot) -> Snapshot:
        """Publish ``snapshot`` and return the one it replaced."""

        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
        return previous

    @property
    def is_empty(self) -> bool:
        return len(self.current()) == 0

    def select(self, addresses: Iterable[str]) -> List[ProcessedToken]:
        """Tokens of the current snapshot whose address is in ``addresses``, in snapshot order."""

        wanted = set(addresses)
        return [token for token in self.current().tokens if token.address in wanted]


__all__ = ["EMPTY_SNAPSHOT", "Snapshot", "SnapshotStore"]
