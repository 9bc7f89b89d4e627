"""
Plan documents written by Claude Code's plan mode.

Plans are markdown files at ``~/.claude/plans/<slug>.md``. The whole file is
rewritten as the plan evolves, so the checkpoint is a content hash rather
than a byte offset. Sessions reference a plan through the ``slug`` field on
their records; the writer links the two in ``session_plans``.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import hashlib
import logging

from agent_ledger.errors import SourceReadError
from agent_ledger.ingest.discovery import SourcePattern
from agent_ledger.ingest.parsers.base import DialectParser
from agent_ledger.ingest.types import (
    Assistant,
    Checkpoint,
    EntityKind,
    ParsedPlan,
    ParseResult,
    SkipReason,
    SourceRecord,
    WireFormat,
    utc_now,
)

logger = logging.getLogger("agent_ledger.parsers.plans")


def extract_title(content: str) -> Optional[str]:
    """First level-one markdown heading, if any."""
    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip() or None
    return None


class PlanParser(DialectParser):
    """Parser for whole-file plan documents."""

    assistant = Assistant.CLAUDE_CODE
    entity_kind = EntityKind.DOCUMENT

    def __init__(self, root: Optional[Path | str] = None):
        super().__init__(root if root is not None else Path.home() / ".claude")

    def source_patterns(self) -> list[SourcePattern]:
        return [
            SourcePattern(
                pattern="plans/*.md",
                entity_kind=EntityKind.DOCUMENT,
                wire_format=WireFormat.REWRITTEN,
                description="Claude Code plan documents",
            ),
        ]

    def parse(self, source: SourceRecord, checkpoint: Checkpoint) -> ParseResult:
        try:
            data = source.path.read_bytes()
            stat = source.path.stat()
        except OSError as e:
            raise SourceReadError(source.path, str(e)) from e

        content_hash = hashlib.sha256(data).hexdigest()
        result = ParseResult(
            source=source,
            new_checkpoint=checkpoint.advanced(
                content_hash=content_hash,
                size_bytes=len(data),
                modified_at=source.modified_at,
            ),
        )

        if not data:
            result.skip_reason = SkipReason.EMPTY_FILE
            return result
        if content_hash == checkpoint.content_hash:
            result.skip_reason = SkipReason.ALREADY_PARSED
            return result

        try:
            content = data.decode("utf-8")
        except UnicodeDecodeError as e:
            msg = f"{source.path}: invalid UTF-8 in plan ({e}), undecodable bytes replaced"
            logger.warning(msg)
            result.warnings.append(msg)
            content = data.decode("utf-8", errors="replace")

        modified_at = source.modified_at or utc_now()
        created_at = datetime.fromtimestamp(
            min(stat.st_ctime, stat.st_mtime), tz=timezone.utc,
        ).replace(tzinfo=None)

        slug = source.path.stem
        result.plans.append(ParsedPlan(
            id=slug,
            path=str(source.path),
            title=extract_title(content),
            content=content,
            content_hash=content_hash,
            created_at=created_at,
            modified_at=modified_at,
            source_path=str(source.path),
            metadata={"size_bytes": len(data)},
        ))
        return result
