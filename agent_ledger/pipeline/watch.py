"""
Polling loops.

Changes are detected by re-scanning, so watch mode is a sync pass every
``interval`` seconds. A process without the ingest role runs the observer
loop instead, which only re-reads the store.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import logging
import threading

from sqlalchemy.exc import OperationalError

from agent_ledger.config import LedgerConfig
from agent_ledger.db.queries import latest_message_id, store_counts
from agent_ledger.db.schema import get_session
from agent_ledger.ingest.types import utc_now
from agent_ledger.pipeline.sync import IngestCoordinator, SyncReport

logger = logging.getLogger("agent_ledger.watch")


@dataclass
class StoreSnapshot:
    """What an observer sees on each refresh."""
    taken_at: datetime
    counts: dict[str, int]
    latest_message_id: int


def take_snapshot(config: LedgerConfig) -> StoreSnapshot:
    """Read-only view of the store; empty until the ingest process creates it."""
    if not config.store_path.exists():
        return StoreSnapshot(taken_at=utc_now(), counts={}, latest_message_id=0)
    db = get_session(config.db_path)
    try:
        return StoreSnapshot(
            taken_at=utc_now(),
            counts=store_counts(db),
            latest_message_id=latest_message_id(db),
        )
    except OperationalError as e:
        logger.debug("Store %s not initialized yet: %s", config.store_path, e)
        return StoreSnapshot(taken_at=utc_now(), counts={}, latest_message_id=0)
    finally:
        db.close()


def watch(
    coordinator: IngestCoordinator,
    interval: float,
    on_report: Optional[Callable[[SyncReport], None]] = None,
    stop: Optional[threading.Event] = None,
    max_passes: Optional[int] = None,
) -> int:
    """
    Run sync passes until ``stop`` is set or ``max_passes`` is reached.

    Returns:
        Number of passes run
    """
    stop = stop or threading.Event()
    passes = 0
    while not stop.is_set():
        report = coordinator.sync_pass()
        passes += 1
        if on_report is not None:
            on_report(report)
        if max_passes is not None and passes >= max_passes:
            break
        stop.wait(interval)
    return passes


def observe(
    config: LedgerConfig,
    interval: float,
    on_refresh: Optional[Callable[[StoreSnapshot], None]] = None,
    stop: Optional[threading.Event] = None,
    max_refreshes: Optional[int] = None,
) -> int:
    """
    Read-only refresh loop for processes that do not hold the ingest role.

    Returns:
        Number of refreshes
    """
    stop = stop or threading.Event()
    refreshes = 0
    last_id = -1
    while not stop.is_set():
        snapshot = take_snapshot(config)
        refreshes += 1
        if snapshot.latest_message_id != last_id:
            logger.debug("Observed store at message id %d", snapshot.latest_message_id)
            last_id = snapshot.latest_message_id
        if on_refresh is not None:
            on_refresh(snapshot)
        if max_refreshes is not None and refreshes >= max_refreshes:
            break
        stop.wait(interval)
    return refreshes
