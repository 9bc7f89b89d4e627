"""Dialect parsers and the registry that picks one per source."""

from typing import Iterable, Optional

from agent_ledger.config import LedgerConfig
from agent_ledger.errors import UnknownDialectError
from agent_ledger.ingest.parsers.base import AppendOnlyParser, DialectParser
from agent_ledger.ingest.parsers.claude import ClaudeCodeParser
from agent_ledger.ingest.parsers.codex import CodexParser
from agent_ledger.ingest.parsers.plans import PlanParser
from agent_ledger.ingest.types import SourceRecord


def create_all_parsers(config: Optional[LedgerConfig] = None) -> list[DialectParser]:
    """Instantiate the parsers enabled in ``config``."""
    config = config or LedgerConfig.from_env()
    parsers: list[DialectParser] = []
    if config.enable_claude:
        parsers.append(ClaudeCodeParser(config.claude_root))
    if config.enable_plans:
        parsers.append(PlanParser(config.claude_root))
    if config.enable_codex:
        parsers.append(CodexParser(config.codex_root))
    return parsers


def parser_for(source: SourceRecord, parsers: Iterable[DialectParser]) -> DialectParser:
    """
    Return the parser responsible for ``source``.

    Raises:
        UnknownDialectError: no parser handles it
    """
    for parser in parsers:
        if parser.handles(source):
            return parser
    raise UnknownDialectError(source.path)


__all__ = [
    "AppendOnlyParser",
    "ClaudeCodeParser",
    "CodexParser",
    "DialectParser",
    "PlanParser",
    "create_all_parsers",
    "parser_for",
]
