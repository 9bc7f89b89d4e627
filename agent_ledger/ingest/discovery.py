"""
Source discovery: scan assistant roots for files matching dialect patterns.

Discovery is side-effect free and safe to call every pass. A root that does
not exist yields no sources.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable
import logging

from agent_ledger.ingest.types import (
    Assistant,
    EntityKind,
    SourceRecord,
    WireFormat,
)

logger = logging.getLogger("agent_ledger.discovery")


@dataclass(frozen=True)
class SourcePattern:
    """Glob pattern (relative to a dialect root) with its entity kind and format."""
    pattern: str
    entity_kind: EntityKind
    wire_format: WireFormat
    description: str = ""


@dataclass
class DialectRoot:
    """Where one dialect keeps its files and which patterns to look for."""
    assistant: Assistant
    root: Path
    patterns: list[SourcePattern] = field(default_factory=list)

    @property
    def is_installed(self) -> bool:
        return self.root.is_dir()


def discover_sources(targets: Iterable[DialectRoot]) -> list[SourceRecord]:
    """
    Find every source file for the given dialect roots.

    Args:
        targets: Dialect roots with their patterns

    Returns:
        Source records sorted by path. A path matched by several patterns is
        reported once, with the first matching pattern's kind and format.
    """
    seen: dict[Path, SourceRecord] = {}

    for target in targets:
        if not target.is_installed:
            logger.debug("Root %s for %s not found, skipping", target.root, target.assistant.value)
            continue

        found = 0
        for pattern in target.patterns:
            for path in target.root.glob(pattern.pattern):
                path = path.absolute()
                if path in seen or not path.is_file():
                    continue
                record = _stat_source(path, target.assistant, pattern)
                if record is None:
                    continue
                seen[path] = record
                found += 1

        logger.debug("Discovered %d source(s) for %s under %s", found, target.assistant.value, target.root)

    return sorted(seen.values(), key=lambda s: s.key)


def _stat_source(path: Path, assistant: Assistant, pattern: SourcePattern) -> SourceRecord | None:
    try:
        stat = path.stat()
    except OSError as e:
        # Vanished between glob and stat; picked up next pass if it returns.
        logger.debug("Could not stat %s: %s", path, e)
        return None
    return SourceRecord(
        path=path,
        assistant=assistant,
        entity_kind=pattern.entity_kind,
        wire_format=pattern.wire_format,
        size_bytes=stat.st_size,
        modified_at=_mtime(stat.st_mtime),
    )


def _mtime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
