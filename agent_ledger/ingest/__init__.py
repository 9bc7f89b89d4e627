"""Ingest module: discover assistant logs, parse them, correlate threads."""

from agent_ledger.ingest.correlator import PendingThread, ThreadCorrelator, ThreadLink
from agent_ledger.ingest.discovery import DialectRoot, SourcePattern, discover_sources
from agent_ledger.ingest.line_reader import read_new_lines
from agent_ledger.ingest.types import Checkpoint, ParseResult, SourceRecord

__all__ = [
    "Checkpoint",
    "DialectRoot",
    "ParseResult",
    "PendingThread",
    "SourcePattern",
    "SourceRecord",
    "ThreadCorrelator",
    "ThreadLink",
    "discover_sources",
    "read_new_lines",
]
