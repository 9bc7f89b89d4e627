"""
Append-only line reader: resume a line-delimited file at an exact byte offset.

Only complete lines (terminated by ``\\n``) are consumed. A trailing partial
line is left on disk for the next pass and the returned end offset covers
fully consumed bytes only. A file that shrank below the stored offset is
treated as truncated/rotated and read again from the start.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator
import json
import logging

from agent_ledger.errors import SourceReadError
from agent_ledger.ingest.types import RawRecord, SourceLocation

logger = logging.getLogger("agent_ledger.reader")


@dataclass
class Line:
    """One complete line and where it sits in the file."""
    text: str
    offset: int
    line_number: int


@dataclass
class LineBatch:
    """Lines appended since the last marker."""
    lines: list[Line]
    start_offset: int
    end_offset: int
    end_line: int
    file_size: int
    truncated: bool = False
    has_partial_tail: bool = False
    warnings: list[str] = field(default_factory=list)


def read_new_lines(path: Path, offset: int = 0, line_number: int = 0) -> LineBatch:
    """
    Read the complete lines appended after ``offset``.

    Args:
        path: Source file
        offset: Byte offset of the first unread byte
        line_number: Number of lines already consumed before ``offset``

    Returns:
        LineBatch with 1-based absolute line numbers

    Raises:
        SourceReadError: the file cannot be opened or read
    """
    try:
        with open(path, "rb") as f:
            f.seek(0, 2)
            size = f.tell()
            batch = LineBatch(
                lines=[],
                start_offset=offset,
                end_offset=offset,
                end_line=line_number,
                file_size=size,
            )

            if offset > size:
                msg = (
                    f"{path}: file truncated (checkpoint {offset} > size {size}), "
                    "re-reading from start"
                )
                logger.warning(msg)
                batch.warnings.append(msg)
                batch.truncated = True
                batch.start_offset = batch.end_offset = 0
                batch.end_line = 0

            f.seek(batch.start_offset)
            current = batch.start_offset
            current_line = batch.end_line
            for raw in f:
                if not raw.endswith(b"\n"):
                    batch.has_partial_tail = True
                    break
                line_offset = current
                current += len(raw)
                current_line += 1
                batch.end_offset = current
                batch.end_line = current_line

                try:
                    text = raw.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError as e:
                    msg = f"{path}:{current_line} (offset {line_offset}): invalid UTF-8: {e}"
                    logger.warning(msg)
                    batch.warnings.append(msg)
                    continue
                batch.lines.append(Line(text=text, offset=line_offset, line_number=current_line))
    except OSError as e:
        raise SourceReadError(path, str(e)) from e

    return batch


def decode_records(path: Path, batch: LineBatch) -> Iterator[RawRecord]:
    """
    Decode each line of a batch as a JSON object.

    Blank lines are ignored. Malformed lines are skipped with a warning
    appended to ``batch.warnings``; one bad line never stops the file.
    """
    source = str(path)
    for line in batch.lines:
        if not line.text.strip():
            continue
        try:
            data = json.loads(line.text)
        except json.JSONDecodeError as e:
            msg = f"{path}:{line.line_number} (offset {line.offset}): JSON parse error: {e}"
            logger.warning(msg)
            batch.warnings.append(msg)
            continue
        if not isinstance(data, dict):
            msg = f"{path}:{line.line_number} (offset {line.offset}): expected a JSON object"
            logger.warning(msg)
            batch.warnings.append(msg)
            continue
        kind = data.get("type")
        yield RawRecord(
            kind=kind if isinstance(kind, str) else "unknown",
            raw=data,
            location=SourceLocation(path=source, offset=line.offset, line=line.line_number),
        )
