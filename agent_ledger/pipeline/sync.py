"""
Ingest coordinator: one sync pass over every enabled dialect.

A pass runs:
1. Snapshot stored checkpoints
2. Discover sources
3. Keep those changed since their checkpoint (size/mtime)
4. Parse each changed source
5. Correlate spawned threads across this pass and the pending queue
6. Write each source in its own transaction, checkpoint last
7. Apply late thread links for threads committed in earlier passes
8. Hand newly committed messages to sinks, one batch per source

A coordinator instance is one run. Unlinked spawned threads stay queued
across its passes; ``close()`` reports what is still unlinked as orphaned.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional
import logging

from agent_ledger.config import LedgerConfig
from agent_ledger.db.checkpoints import load_checkpoints, source_changed
from agent_ledger.db.queries import SpawnLookup, unresolved_agent_threads
from agent_ledger.db.schema import get_session, init_db
from agent_ledger.db.writer import StoreWriter, WriteOutcome
from agent_ledger.errors import ReadOnlyStoreError, SourceReadError, UnknownDialectError
from agent_ledger.ingest.correlator import PendingThread, ThreadCorrelator, pending_from_threads
from agent_ledger.ingest.discovery import discover_sources
from agent_ledger.ingest.parsers import DialectParser, create_all_parsers, parser_for
from agent_ledger.ingest.types import Checkpoint, ParseResult, SkipReason, SourceRecord, utc_now
from agent_ledger.process_lock import IngestLock
from agent_ledger.publish import MessageSink, make_batch

logger = logging.getLogger("agent_ledger.sync")

# (index, total, source) before each source is parsed
ProgressCallback = Callable[[int, int, SourceRecord], None]


@dataclass
class SyncReport:
    """Summary of one sync pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    sources_discovered: int = 0
    sources_changed: int = 0
    sources_parsed: int = 0
    sources_committed: int = 0
    messages_inserted: int = 0
    threads_inserted: int = 0
    threads_linked: int = 0
    plans_written: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    pending_threads: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def wrote_anything(self) -> bool:
        return self.sources_committed > 0 or self.threads_linked > 0

    def count_skip(self, reason: SkipReason, n: int = 1) -> None:
        if n:
            self.skipped[reason.value] = self.skipped.get(reason.value, 0) + n

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "sources_discovered": self.sources_discovered,
            "sources_changed": self.sources_changed,
            "sources_parsed": self.sources_parsed,
            "sources_committed": self.sources_committed,
            "messages_inserted": self.messages_inserted,
            "threads_inserted": self.threads_inserted,
            "threads_linked": self.threads_linked,
            "plans_written": self.plans_written,
            "skipped": dict(self.skipped),
            "pending_threads": list(self.pending_threads),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


class IngestCoordinator:
    """
    Drives sync passes against one store.

    The coordinator only writes while ``lock`` holds the ingest role; a
    wrapping CLI checks ``holds_ingest_capability`` to decide between
    ingesting and read-only refresh.
    """

    def __init__(
        self,
        config: LedgerConfig,
        lock: Optional[IngestLock] = None,
        parsers: Optional[list[DialectParser]] = None,
        writer: Optional[StoreWriter] = None,
        sinks: Iterable[MessageSink] = (),
    ):
        self.config = config
        self.lock = lock
        self.parsers = parsers if parsers is not None else create_all_parsers(config)
        self.writer = writer or StoreWriter(config.db_path)
        self.sinks = list(sinks)
        self.correlator = ThreadCorrelator()
        self.passes = 0
        self._initialized = False

    @property
    def holds_ingest_capability(self) -> bool:
        return self.lock is not None and self.lock.held

    def sync_pass(self, progress: Optional[ProgressCallback] = None) -> SyncReport:
        """
        Run one full pass.

        Raises:
            ReadOnlyStoreError: this process does not hold the ingest role
            StoreWriteError: a source's transaction failed; sources committed
                earlier in the pass stay committed
        """
        if not self.holds_ingest_capability:
            raise ReadOnlyStoreError(self.config.store_path)

        self._initialize()
        self.passes += 1
        report = SyncReport(started_at=utc_now())

        db = get_session(self.config.db_path)
        try:
            checkpoints = load_checkpoints(db)
        finally:
            db.close()

        sources = discover_sources(p.dialect_root() for p in self.parsers)
        report.sources_discovered = len(sources)
        changed = [s for s in sources if source_changed(s, checkpoints.get(s.key))]
        report.sources_changed = len(changed)
        report.count_skip(SkipReason.UNCHANGED, len(sources) - len(changed))

        parsed = self._parse_all(changed, checkpoints, report, progress)

        db = get_session(self.config.db_path)
        try:
            correlation = self.correlator.correlate([result for result, _ in parsed], SpawnLookup(db))
        finally:
            db.close()

        # Primary sources first so spawn links are stored before the threads they link.
        parsed.sort(key=lambda item: 0 if item[0].spawn_links else 1)
        for result, previous in parsed:
            outcome = self.writer.write(result, previous)
            if outcome.committed:
                self._record_outcome(report, outcome)
                self._notify(outcome, report)

        for link in correlation.late_links:
            if self.writer.link_thread(link.thread_id, link.parent_thread_id, link.spawned_by_seq):
                report.threads_linked += 1

        report.pending_threads = [item.thread_id for item in correlation.deferred]
        report.finished_at = utc_now()

        if report.wrote_anything:
            logger.info(
                "Pass %d: %d/%d source(s) committed, %d new message(s), %d thread link(s)",
                self.passes,
                report.sources_committed,
                report.sources_discovered,
                report.messages_inserted,
                report.threads_linked,
            )
        else:
            logger.debug("Pass %d: nothing to write (%d source(s) checked)", self.passes, len(sources))
        return report

    def close(self) -> list[PendingThread]:
        """End the run; returns the spawned threads left orphaned."""
        return self.correlator.drain_orphans()

    def _initialize(self) -> None:
        if self._initialized:
            return
        init_db(self.config.db_path)
        db = get_session(self.config.db_path)
        try:
            self.correlator.seed(pending_from_threads(unresolved_agent_threads(db)))
        finally:
            db.close()
        self._initialized = True

    def _parse_all(
        self,
        sources: list[SourceRecord],
        checkpoints: dict[str, Checkpoint],
        report: SyncReport,
        progress: Optional[ProgressCallback],
    ) -> list[tuple[ParseResult, Checkpoint]]:
        parsed: list[tuple[ParseResult, Checkpoint]] = []
        for index, source in enumerate(sources):
            if progress is not None:
                progress(index, len(sources), source)
            previous = checkpoints.get(source.key) or Checkpoint.empty(source.key)
            try:
                parser = parser_for(source, self.parsers)
                result = parser.parse(source, previous)
            except (SourceReadError, UnknownDialectError) as e:
                # Checkpoint untouched; retried next pass.
                logger.warning("Skipping %s: %s", source.path, e)
                report.errors.append(str(e))
                continue

            report.sources_parsed += 1
            report.warnings.extend(result.warnings)
            if result.skip_reason is not None:
                logger.debug("%s: %s", source.path, result.skip_reason.value)
                report.count_skip(result.skip_reason)
            parsed.append((result, previous))
        return parsed

    def _record_outcome(self, report: SyncReport, outcome: WriteOutcome) -> None:
        report.sources_committed += 1
        report.messages_inserted += len(outcome.inserted_messages)
        report.threads_inserted += outcome.threads_inserted
        report.threads_linked += outcome.threads_linked
        report.plans_written += outcome.plans_written

    def _notify(self, outcome: WriteOutcome, report: SyncReport) -> None:
        if not outcome.inserted_messages or not self.sinks:
            return
        batch = make_batch(outcome.source_path, outcome.inserted_messages)
        for sink in self.sinks:
            try:
                sink.publish(batch)
            except Exception as e:
                # Store is already committed; consumers can catch up via messages_since.
                logger.error("Sink %r failed for %s: %s", sink, outcome.source_path, e)
                report.errors.append(f"sink {sink!r} failed for {outcome.source_path}: {e}")


def run_sync(
    config: LedgerConfig,
    lock: IngestLock,
    sinks: Iterable[MessageSink] = (),
    progress: Optional[ProgressCallback] = None,
) -> tuple[SyncReport, list[PendingThread]]:
    """Single-pass run: one pass, then close the run."""
    coordinator = IngestCoordinator(config, lock=lock, sinks=sinks)
    report = coordinator.sync_pass(progress=progress)
    orphans = coordinator.close()
    for item in orphans:
        report.warnings.append(
            f"orphaned thread {item.thread_id}: spawn {item.spawn_id} never completed ({item.source_path})"
        )
    return report, orphans
