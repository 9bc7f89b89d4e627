"""Pipeline module: sync passes and polling loops."""

from agent_ledger.pipeline.sync import IngestCoordinator, SyncReport, run_sync
from agent_ledger.pipeline.watch import StoreSnapshot, observe, take_snapshot, watch

__all__ = [
    "IngestCoordinator",
    "SyncReport",
    "run_sync",
    "StoreSnapshot",
    "observe",
    "take_snapshot",
    "watch",
]
