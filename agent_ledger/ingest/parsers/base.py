"""
Dialect parser contract.

A parser is a stateless transform: ``parse(source, checkpoint)`` returns the
normalized entities appended since the checkpoint together with the new
checkpoint. Everything a parser needs to continue where it stopped lives in
``Checkpoint.state``; nothing is kept on the parser instance between calls.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
import hashlib
import json
import logging

from agent_ledger.ingest.discovery import DialectRoot, SourcePattern
from agent_ledger.ingest.line_reader import decode_records, read_new_lines
from agent_ledger.ingest.types import (
    Assistant,
    Checkpoint,
    EntityKind,
    ParsedProject,
    ParseResult,
    RawRecord,
    SkipReason,
    SourceRecord,
    utc_now,
)

logger = logging.getLogger("agent_ledger.parsers")

# Raised by well-formed JSON whose fields have an unexpected shape.
MALFORMED_RECORD_ERRORS = (KeyError, IndexError, TypeError, AttributeError, ValueError)


class DialectParser(ABC):
    """Base class for every log dialect."""

    assistant: Assistant
    entity_kind: EntityKind = EntityKind.SESSION

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser()

    @abstractmethod
    def source_patterns(self) -> list[SourcePattern]:
        """Patterns relative to ``self.root``."""

    @abstractmethod
    def parse(self, source: SourceRecord, checkpoint: Checkpoint) -> ParseResult:
        """Parse everything after ``checkpoint``."""

    def dialect_root(self) -> DialectRoot:
        return DialectRoot(
            assistant=self.assistant,
            root=self.root,
            patterns=self.source_patterns(),
        )

    def handles(self, source: SourceRecord) -> bool:
        if source.assistant != self.assistant or source.entity_kind != self.entity_kind:
            return False
        try:
            source.path.relative_to(self.root.absolute())
        except ValueError:
            return False
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(root={str(self.root)!r})"


class AppendOnlyParser(DialectParser):
    """
    Shared resume mechanics for line-delimited, append-only dialects.

    Subclasses implement ``parse_records`` and mutate ``state`` in place;
    this class handles seeking, partial tails, truncation and the marker.
    """

    # State keys that survive a truncation reset so sequence numbers keep
    # increasing within a thread.
    SURVIVES_TRUNCATION = ("seq",)

    def parse(self, source: SourceRecord, checkpoint: Checkpoint) -> ParseResult:
        observed_at = utc_now()
        state: dict[str, Any] = dict(checkpoint.state)

        batch = read_new_lines(source.path, checkpoint.offset, int(state.get("line", 0)))
        if batch.truncated:
            state = {k: v for k, v in state.items() if k in self.SURVIVES_TRUNCATION}

        result = ParseResult(
            source=source,
            new_checkpoint=checkpoint,
            truncated=batch.truncated,
        )

        if batch.lines:
            records = decode_records(source.path, batch)
            self.parse_records(source, records, state, observed_at, result)
        # decode_records appends to batch.warnings while it is consumed
        result.warnings[:0] = batch.warnings

        state["line"] = batch.end_line
        result.new_checkpoint = checkpoint.advanced(
            offset=batch.end_offset,
            state=state,
            size_bytes=batch.file_size,
            modified_at=source.modified_at,
        )

        if not result.has_entities:
            if batch.file_size == 0:
                result.skip_reason = SkipReason.EMPTY_FILE
            elif not batch.truncated and checkpoint.offset >= batch.file_size:
                result.skip_reason = SkipReason.ALREADY_PARSED
            else:
                result.skip_reason = SkipReason.NO_NEW_CONTENT

        return result

    @abstractmethod
    def parse_records(
        self,
        source: SourceRecord,
        records,
        state: dict[str, Any],
        observed_at: datetime,
        result: ParseResult,
    ) -> None:
        """Turn decoded records into entities on ``result``."""

    def skip_malformed(
        self,
        source: SourceRecord,
        record: RawRecord,
        error: Exception,
        result: ParseResult,
    ) -> None:
        """Record a warning for a record that could not be converted; the file continues."""
        msg = (
            f"{source.path}:{record.location.line} (offset {record.location.offset}): "
            f"malformed {record.kind!r} record skipped: {type(error).__name__}: {error}"
        )
        logger.warning(msg)
        result.warnings.append(msg)


def project_id_for(cwd: str) -> str:
    """Deterministic project id: first 16 hex chars of sha256(cwd)."""
    return hashlib.sha256(cwd.encode("utf-8")).hexdigest()[:16]


def project_from_cwd(
    cwd: Optional[str],
    first_seen: datetime,
    last_seen: Optional[datetime],
) -> Optional[ParsedProject]:
    if not cwd:
        return None
    return ParsedProject(
        id=project_id_for(cwd),
        path=cwd,
        name=Path(cwd).name or cwd,
        created_at=first_seen,
        last_activity_at=last_seen,
    )


def text_or_none(value: Any) -> Optional[str]:
    """Accept a scalar field only when it is a string."""
    return value if isinstance(value, str) else None


def int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def as_text(value: Any) -> Optional[str]:
    """Strings pass through; any other JSON value is serialized."""
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def record_field(record: RawRecord, *keys: str) -> Any:
    """Walk nested dict keys of a raw record, returning ``None`` on any miss."""
    value: Any = record.raw
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value
