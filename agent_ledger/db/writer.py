"""
Canonical store writer.

Persists one ``ParseResult`` per transaction:

- sessions, threads, projects and plans are upserted by natural key;
  ``last_activity_at`` only moves forward and ``started_at`` only back
- messages are insert-only, keyed by (thread_id, seq); rows already present
  are left untouched
- a thread's parent/spawned-by references can be filled in once, never
  rewritten
- the source checkpoint is the last write of the same transaction

A failed transaction is rolled back and raised as ``StoreWriteError``;
sources committed before it stay valid.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from agent_ledger.db.checkpoints import stage_checkpoint
from agent_ledger.db.schema import (
    AgentSpawn,
    Message,
    Plan,
    Project,
    Session,
    SessionPlan,
    Thread,
    get_session,
)
from agent_ledger.errors import StoreWriteError
from agent_ledger.ingest.types import (
    Checkpoint,
    ParsedMessage,
    ParsedPlan,
    ParsedProject,
    ParsedSession,
    ParsedThread,
    ParseResult,
    SpawnLink,
    utc_now,
)

logger = logging.getLogger("agent_ledger.writer")


@dataclass
class WriteOutcome:
    """What one source's transaction did."""
    source_path: str
    checkpoint: Checkpoint
    committed: bool = False
    inserted_messages: list[ParsedMessage] = field(default_factory=list)
    duplicate_messages: int = 0
    threads_inserted: int = 0
    threads_linked: int = 0
    plans_written: int = 0
    spawns_recorded: int = 0


def _later(current: Optional[datetime], proposed: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return proposed
    if proposed is None or proposed <= current:
        return current
    return proposed


def _earlier(current: Optional[datetime], proposed: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return proposed
    if proposed is None or proposed >= current:
        return current
    return proposed


def _merge_meta(stored: Optional[dict], proposed: dict) -> dict:
    merged = dict(stored or {})
    merged.update({k: v for k, v in proposed.items() if v is not None})
    return merged


def needs_write(result: ParseResult, previous: Checkpoint) -> bool:
    """False when the result has nothing to persist, not even a moved marker."""
    if result.has_entities or previous.is_empty:
        return True
    new = result.new_checkpoint
    return not (
        new.same_position(previous)
        and new.size_bytes == previous.size_bytes
        and new.modified_at == previous.modified_at
    )


class StoreWriter:
    """Transactional writer bound to one store path."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)

    def write(self, result: ParseResult, previous: Optional[Checkpoint] = None) -> WriteOutcome:
        """
        Commit ``result`` and its checkpoint in one transaction.

        Args:
            result: Parser output for one source
            previous: Checkpoint the parse started from

        Returns:
            WriteOutcome listing the messages actually inserted

        Raises:
            StoreWriteError: the transaction failed and was rolled back
        """
        previous = previous or Checkpoint.empty(result.source.path)
        outcome = WriteOutcome(source_path=result.source.key, checkpoint=previous)
        if not needs_write(result, previous):
            return outcome

        db = get_session(self.db_path)
        try:
            self._apply(db, result, outcome)
            outcome.checkpoint = stage_checkpoint(db, result.source, result.new_checkpoint)
            db.commit()
            outcome.committed = True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Rolled back %s: %s", result.source.path, e)
            raise StoreWriteError(result.source.path, e) from e
        finally:
            db.close()

        logger.debug(
            "Committed %s: %d new message(s), %d duplicate(s), offset %d",
            result.source.path,
            len(outcome.inserted_messages),
            outcome.duplicate_messages,
            outcome.checkpoint.offset,
        )
        return outcome

    def link_thread(self, thread_id: str, parent_thread_id: str, spawned_by_seq: int) -> bool:
        """
        Fill in the spawn references of an already committed thread.

        Returns:
            True if the row changed; False if it was already linked or is missing
        """
        db = get_session(self.db_path)
        try:
            row = db.get(Thread, thread_id)
            if row is None:
                return False
            changed = _fill_link(row, parent_thread_id, spawned_by_seq)
            db.commit()
            return changed
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(thread_id, e) from e
        finally:
            db.close()

    def _apply(self, db: DBSession, result: ParseResult, outcome: WriteOutcome) -> None:
        if result.project is not None:
            self._upsert_project(db, result.project)
        if result.session is not None:
            self._upsert_session(db, result.session)
        db.flush()

        for thread in result.threads:
            self._upsert_thread(db, thread, outcome)
        db.flush()

        self._insert_messages(db, result.messages, outcome)

        for plan in result.plans:
            self._upsert_plan(db, plan)
            outcome.plans_written += 1

        if result.session is not None:
            for slug in result.plan_refs:
                if db.get(SessionPlan, (result.session.id, slug)) is None:
                    db.add(SessionPlan(session_id=result.session.id, plan_id=slug, linked_at=utc_now()))

        for link in result.spawn_links:
            if self._record_spawn(db, link):
                outcome.spawns_recorded += 1
        db.flush()

    def _upsert_project(self, db: DBSession, project: ParsedProject) -> None:
        row = db.get(Project, project.id)
        if row is None:
            db.add(Project(
                id=project.id,
                path=project.path,
                name=project.name,
                created_at=project.created_at,
                last_activity_at=project.last_activity_at,
            ))
            return
        row.created_at = _earlier(row.created_at, project.created_at)
        row.last_activity_at = _later(row.last_activity_at, project.last_activity_at)
        row.name = row.name or project.name

    def _upsert_session(self, db: DBSession, session: ParsedSession) -> None:
        row = db.get(Session, session.id)
        if row is None:
            db.add(Session(
                id=session.id,
                assistant=session.assistant.value,
                project_id=session.project_id,
                backing_model=session.backing_model,
                started_at=session.started_at,
                last_activity_at=session.last_activity_at,
                source_path=session.source_path,
                source_offset=session.source_offset,
                meta=_merge_meta(None, session.metadata),
            ))
            return
        row.started_at = _earlier(row.started_at, session.started_at)
        row.last_activity_at = _later(row.last_activity_at, session.last_activity_at)
        row.project_id = row.project_id or session.project_id
        row.backing_model = row.backing_model or session.backing_model
        row.meta = _merge_meta(row.meta, session.metadata)

    def _upsert_thread(self, db: DBSession, thread: ParsedThread, outcome: WriteOutcome) -> None:
        row = db.get(Thread, thread.id)
        if row is None:
            db.add(Thread(
                id=thread.id,
                session_id=thread.session_id,
                thread_type=thread.thread_type.value,
                spawn_id=thread.spawn_id,
                parent_thread_id=thread.parent_thread_id,
                spawned_by_seq=thread.spawned_by_seq,
                started_at=thread.started_at,
                last_activity_at=thread.last_activity_at,
                source_path=thread.source_path,
                source_offset=thread.source_offset,
                meta=dict(thread.metadata),
            ))
            outcome.threads_inserted += 1
            if thread.is_linked:
                outcome.threads_linked += 1
            return
        row.last_activity_at = _later(row.last_activity_at, thread.last_activity_at)
        if thread.is_linked and _fill_link(row, thread.parent_thread_id, thread.spawned_by_seq):
            outcome.threads_linked += 1

    def _insert_messages(self, db: DBSession, messages: list[ParsedMessage], outcome: WriteOutcome) -> None:
        if not messages:
            return

        by_thread: dict[str, list[ParsedMessage]] = {}
        for message in messages:
            by_thread.setdefault(message.thread_id, []).append(message)

        existing: set[tuple[str, int]] = set()
        for thread_id, batch in by_thread.items():
            seqs = [m.seq for m in batch]
            rows = db.query(Message.thread_id, Message.seq).filter(
                Message.thread_id == thread_id,
                Message.seq >= min(seqs),
                Message.seq <= max(seqs),
            ).all()
            existing.update((row.thread_id, row.seq) for row in rows)

        for message in messages:
            if message.key in existing:
                outcome.duplicate_messages += 1
                continue
            existing.add(message.key)
            db.add(Message(
                session_id=message.session_id,
                thread_id=message.thread_id,
                seq=message.seq,
                emitted_at=message.emitted_at,
                observed_at=message.observed_at,
                author_role=message.author_role.value,
                author_name=message.author_name,
                message_type=message.message_type.value,
                content=message.content,
                content_type=message.content_type,
                tool_name=message.tool_name,
                tool_input=message.tool_input,
                tool_result=message.tool_result,
                call_id=message.call_id,
                record_uuid=message.record_uuid,
                tokens_in=message.tokens_in,
                tokens_out=message.tokens_out,
                source_path=message.source_path,
                source_offset=message.source_offset,
                source_line=message.source_line,
                raw_data=message.raw_data,
                meta=dict(message.metadata),
            ))
            outcome.inserted_messages.append(message)

        if outcome.duplicate_messages:
            logger.debug("Skipped %d already stored message(s)", outcome.duplicate_messages)

    def _upsert_plan(self, db: DBSession, plan: ParsedPlan) -> None:
        row = db.get(Plan, plan.id)
        if row is None:
            db.add(Plan(
                id=plan.id,
                path=plan.path,
                title=plan.title,
                content=plan.content,
                content_hash=plan.content_hash,
                created_at=plan.created_at,
                modified_at=plan.modified_at,
                source_path=plan.source_path,
                meta=dict(plan.metadata),
            ))
            return
        row.created_at = _earlier(row.created_at, plan.created_at)
        if row.content_hash != plan.content_hash:
            row.title = plan.title
            row.content = plan.content
            row.content_hash = plan.content_hash
            row.meta = dict(plan.metadata)
        row.modified_at = _later(row.modified_at, plan.modified_at)

    def _record_spawn(self, db: DBSession, link: SpawnLink) -> bool:
        row = db.get(AgentSpawn, (link.session_id, link.spawn_id))
        if row is None:
            db.add(AgentSpawn(
                session_id=link.session_id,
                spawn_id=link.spawn_id,
                parent_thread_id=link.parent_thread_id,
                spawning_seq=link.spawning_seq,
                request_call_id=link.request_call_id,
                request_uuid=link.request_uuid,
                source_path=link.location.path if link.location else None,
                source_offset=link.location.offset if link.location else None,
                created_at=utc_now(),
            ))
            return True
        if row.spawning_seq is None and link.spawning_seq is not None:
            row.spawning_seq = link.spawning_seq
            return True
        return False


def _fill_link(row: Thread, parent_thread_id: Optional[str], spawned_by_seq: Optional[int]) -> bool:
    """Set spawn references on an unlinked thread row. Linked rows never change."""
    if parent_thread_id is None or spawned_by_seq is None:
        return False
    if row.parent_thread_id is not None or row.spawned_by_seq is not None:
        if (row.parent_thread_id, row.spawned_by_seq) != (parent_thread_id, spawned_by_seq):
            logger.debug(
                "Thread %s already linked to %s#%s, ignoring %s#%s",
                row.id, row.parent_thread_id, row.spawned_by_seq, parent_thread_id, spawned_by_seq,
            )
        return False
    row.parent_thread_id = parent_thread_id
    row.spawned_by_seq = spawned_by_seq
    return True
