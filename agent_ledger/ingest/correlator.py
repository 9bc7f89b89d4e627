"""
Thread/agent correlation.

Links a spawned thread (its own source file) to the message that spawned
it. Inputs per pass are the spawn links extracted from primary sources and
the spawned threads parsed from agent sources; files can arrive in any
order, so threads that cannot be linked yet go into a pending queue that
lives for one coordinator run. Each pass tries every pending item once.

The correlator keeps no durable state. Anything that must survive a run is
in the store (``agent_spawns`` and the unlinked thread rows), and the
coordinator re-seeds the queue from there.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol
import logging

from agent_ledger.ingest.types import (
    MessageType,
    ParseResult,
    SpawnLink,
)

logger = logging.getLogger("agent_ledger.correlator")


class SpawnSource(Protocol):
    """Where to look for spawn links committed in earlier passes or runs."""

    def spawn_for(self, session_id: str, spawn_id: str) -> Optional[SpawnLink]: ...

    def spawning_seq_for(
        self,
        thread_id: str,
        call_id: Optional[str] = None,
        record_uuid: Optional[str] = None,
    ) -> Optional[int]: ...


@dataclass
class PendingThread:
    """A spawned thread waiting for its spawn completion to show up."""
    thread_id: str
    session_id: str
    spawn_id: str
    source_path: str
    attempts: int = 0


@dataclass(frozen=True)
class ThreadLink:
    """Resolved spawn references for a thread."""
    thread_id: str
    parent_thread_id: str
    spawned_by_seq: int


@dataclass
class CorrelationReport:
    """
    Outcome of one correlation pass.

    ``linked`` threads were parsed this pass and carry their references in
    the ParseResult. ``late_links`` are for threads committed in an earlier
    pass that must be updated in the store.
    """
    linked: list[ThreadLink] = field(default_factory=list)
    late_links: list[ThreadLink] = field(default_factory=list)
    deferred: list[PendingThread] = field(default_factory=list)
    unresolved_links: list[SpawnLink] = field(default_factory=list)


class ThreadCorrelator:
    """Correlator with a pending-resolution queue for one coordinator run."""

    def __init__(self):
        self._pending: dict[str, PendingThread] = {}

    @property
    def pending(self) -> list[PendingThread]:
        return sorted(self._pending.values(), key=lambda p: p.thread_id)

    def seed(self, items: Iterable[PendingThread]) -> None:
        """Queue threads left unlinked by earlier runs."""
        for item in items:
            self._pending.setdefault(item.thread_id, item)

    def correlate(
        self,
        results: list[ParseResult],
        store: Optional[SpawnSource] = None,
    ) -> CorrelationReport:
        """
        Correlate everything parsed this pass, then retry the pending queue.

        Mutates the ``ParsedThread`` objects in ``results`` in place. Already
        linked threads are left alone, so running this twice is a no-op.
        """
        report = CorrelationReport()
        spawn_map = self._build_spawn_map(results, store, report)

        seen_this_pass: set[str] = set()
        for result in results:
            for thread in result.threads:
                if thread.spawn_id is None:
                    continue
                seen_this_pass.add(thread.id)
                if thread.is_linked:
                    self._pending.pop(thread.id, None)
                    continue
                link = self._lookup(thread.session_id, thread.spawn_id, spawn_map, store)
                if link is not None:
                    thread.parent_thread_id = link.parent_thread_id
                    thread.spawned_by_seq = link.spawning_seq
                    report.linked.append(ThreadLink(thread.id, link.parent_thread_id, link.spawning_seq))
                    self._pending.pop(thread.id, None)
                    continue
                item = self._pending.get(thread.id)
                if item is None:
                    item = PendingThread(
                        thread_id=thread.id,
                        session_id=thread.session_id,
                        spawn_id=thread.spawn_id,
                        source_path=thread.source_path,
                    )
                    self._pending[thread.id] = item
                item.attempts += 1
                report.deferred.append(item)

        # Items carried over from earlier passes: one attempt each.
        for item in list(self._pending.values()):
            if item.thread_id in seen_this_pass:
                continue
            item.attempts += 1
            link = self._lookup(item.session_id, item.spawn_id, spawn_map, store)
            if link is None:
                report.deferred.append(item)
                continue
            report.late_links.append(ThreadLink(item.thread_id, link.parent_thread_id, link.spawning_seq))
            del self._pending[item.thread_id]

        for item in report.deferred:
            logger.debug(
                "Thread %s (spawn %s) not linked yet, attempt %d",
                item.thread_id, item.spawn_id, item.attempts,
            )
        return report

    def drain_orphans(self) -> list[PendingThread]:
        """
        End the run: everything still pending is orphaned.

        Orphans keep unset references in the store and are re-seeded by the
        next run.
        """
        orphans = self.pending
        for item in orphans:
            logger.warning(
                "Orphaned thread %s: no spawn completion found for spawn id %s (source %s)",
                item.thread_id, item.spawn_id, item.source_path,
            )
        self._pending.clear()
        return orphans

    def _build_spawn_map(
        self,
        results: list[ParseResult],
        store: Optional[SpawnSource],
        report: CorrelationReport,
    ) -> dict[tuple[str, str], SpawnLink]:
        """One linear scan: (session_id, spawn_id) -> spawning message."""
        # Tool calls parsed this pass, for links whose request was not in the parser's scan.
        calls: dict[tuple[str, str], int] = {}
        uuids: dict[tuple[str, str], list[int]] = {}
        for result in results:
            for message in result.messages:
                if message.message_type != MessageType.TOOL_CALL:
                    continue
                if message.call_id:
                    calls.setdefault((message.thread_id, message.call_id), message.seq)
                if message.record_uuid:
                    uuids.setdefault((message.thread_id, message.record_uuid), []).append(message.seq)

        spawn_map: dict[tuple[str, str], SpawnLink] = {}
        for result in results:
            for link in result.spawn_links:
                if not link.is_resolved:
                    link.spawning_seq = self._resolve_request(link, calls, uuids, store)
                if not link.is_resolved:
                    report.unresolved_links.append(link)
                    logger.debug("Spawn %s: request not found for completion", link.spawn_id)
                    continue
                spawn_map.setdefault((link.session_id, link.spawn_id), link)
        return spawn_map

    @staticmethod
    def _resolve_request(
        link: SpawnLink,
        calls: dict[tuple[str, str], int],
        uuids: dict[tuple[str, str], list[int]],
        store: Optional[SpawnSource],
    ) -> Optional[int]:
        if link.request_call_id:
            seq = calls.get((link.parent_thread_id, link.request_call_id))
            if seq is not None:
                return seq
        if link.request_uuid:
            seqs = uuids.get((link.parent_thread_id, link.request_uuid), [])
            if len(seqs) == 1:
                return seqs[0]
        if store is not None:
            return store.spawning_seq_for(link.parent_thread_id, link.request_call_id, link.request_uuid)
        return None

    @staticmethod
    def _lookup(
        session_id: str,
        spawn_id: str,
        spawn_map: dict[tuple[str, str], SpawnLink],
        store: Optional[SpawnSource],
    ) -> Optional[SpawnLink]:
        link = spawn_map.get((session_id, spawn_id))
        if link is None and store is not None:
            link = store.spawn_for(session_id, spawn_id)
        if link is None or not link.is_resolved:
            return None
        return link


def pending_from_threads(threads: Iterable) -> list[PendingThread]:
    """PendingThread items for unlinked thread rows or ParsedThreads."""
    return [
        PendingThread(
            thread_id=thread.id,
            session_id=thread.session_id,
            spawn_id=thread.spawn_id,
            source_path=thread.source_path,
        )
        for thread in threads
        if thread.spawn_id is not None
    ]
