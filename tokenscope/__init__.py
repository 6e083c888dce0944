"""Birdeye token listing enriched with DexScreener metrics, served as a dashboard API."""

from .orchestrator import RefreshResult, SnapshotOrchestrator, SnapshotState
from .processor import PerformanceWeights, process, rederive
from .store import Snapshot, SnapshotStore

__all__ = [
    "PerformanceWeights",
    "RefreshResult",
    "Snapshot",
    "SnapshotOrchestrator",
    "SnapshotState",
    "SnapshotStore",
    "process",
    "rederive",
]
