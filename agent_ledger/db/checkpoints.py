"""
Checkpoint store: durable map from source path to resumption marker.

Markers are staged inside the writer's per-source transaction and only
become visible when that transaction commits.
"""

from typing import Optional

from sqlalchemy.orm import Session as DBSession

from agent_ledger.db.schema import SourceFile
from agent_ledger.ingest.types import Checkpoint, SourceRecord, utc_now


def _to_checkpoint(row: SourceFile) -> Checkpoint:
    return Checkpoint(
        source_path=row.path,
        offset=row.byte_offset or 0,
        content_hash=row.content_hash,
        state=dict(row.parser_state or {}),
        size_bytes=row.size_bytes,
        modified_at=row.modified_at,
        updated_at=row.updated_at,
    )


def load_checkpoints(db: DBSession) -> dict[str, Checkpoint]:
    """Snapshot every stored checkpoint, keyed by source path."""
    rows = db.query(SourceFile).all()
    return {row.path: _to_checkpoint(row) for row in rows}


def get_checkpoint(db: DBSession, path: str) -> Checkpoint:
    """Stored checkpoint for ``path`` or an empty one."""
    row = db.get(SourceFile, path)
    if row is None:
        return Checkpoint.empty(path)
    return _to_checkpoint(row)


def stage_checkpoint(db: DBSession, source: SourceRecord, checkpoint: Checkpoint) -> Checkpoint:
    """
    Add the checkpoint update to the open transaction without committing.

    Returns the checkpoint with ``updated_at`` set.
    """
    now = utc_now()
    row: Optional[SourceFile] = db.get(SourceFile, source.key)
    if row is None:
        row = SourceFile(path=source.key)
        db.add(row)
    row.assistant = source.assistant.value
    row.entity_kind = source.entity_kind.value
    row.wire_format = source.wire_format.value
    row.checkpoint_kind = checkpoint.kind
    row.byte_offset = checkpoint.offset
    row.content_hash = checkpoint.content_hash
    row.parser_state = dict(checkpoint.state)
    row.size_bytes = checkpoint.size_bytes
    row.modified_at = checkpoint.modified_at
    row.updated_at = now
    return checkpoint.advanced(updated_at=now)


def source_changed(source: SourceRecord, checkpoint: Optional[Checkpoint]) -> bool:
    """
    Size/mtime heuristic: does ``source`` need parsing this pass?

    Unknown sources, size changes (growth or truncation) and newer mtimes
    all count as changed. Rewritten sources are confirmed by content hash
    inside the parser.
    """
    if checkpoint is None or checkpoint.is_empty:
        return True
    if checkpoint.size_bytes is None or checkpoint.size_bytes != source.size_bytes:
        return True
    if checkpoint.modified_at is None or source.modified_at is None:
        return True
    return source.modified_at > checkpoint.modified_at
