"""Tests for source discovery, the parser registry and the plan parser."""

import pytest

from agent_ledger.errors import UnknownDialectError
from agent_ledger.ingest.discovery import discover_sources
from agent_ledger.ingest.parsers import (
    ClaudeCodeParser,
    CodexParser,
    PlanParser,
    create_all_parsers,
    parser_for,
)
from agent_ledger.ingest.parsers.plans import extract_title
from agent_ledger.ingest.types import (
    Assistant,
    Checkpoint,
    EntityKind,
    SkipReason,
    WireFormat,
)

from conftest import make_source


class TestDiscoverSources:
    """Scanning dialect roots."""

    def test_missing_roots_yield_nothing(self, config):
        parsers = create_all_parsers(config)
        assert discover_sources(p.dialect_root() for p in parsers) == []

    def test_finds_every_layout(self, config, fake_home):
        main = fake_home.install_claude_main()
        nested_agent = fake_home.install_claude_agent()
        flat_agent = fake_home.install_orphan_agent()
        rollout = fake_home.install_codex_rollout()
        plan = fake_home.install_plan()

        sources = discover_sources(p.dialect_root() for p in create_all_parsers(config))
        by_path = {s.path: s for s in sources}

        assert set(by_path) == {
            p.absolute() for p in (main, nested_agent, flat_agent, rollout, plan)
        }
        assert by_path[plan.absolute()].entity_kind == EntityKind.DOCUMENT
        assert by_path[plan.absolute()].wire_format == WireFormat.REWRITTEN
        assert by_path[rollout.absolute()].assistant == Assistant.CODEX
        assert by_path[main.absolute()].size_bytes == main.stat().st_size

    def test_idempotent(self, config, fake_home):
        fake_home.install_claude_main()
        fake_home.install_codex_rollout()
        targets = [p.dialect_root() for p in create_all_parsers(config)]

        assert discover_sources(targets) == discover_sources(targets)

    def test_disabled_dialect_not_scanned(self, config, fake_home):
        fake_home.install_codex_rollout()
        config.enable_codex = False

        sources = discover_sources(p.dialect_root() for p in create_all_parsers(config))

        assert sources == []


class TestParserFor:
    def test_routes_by_assistant_and_kind(self, config, fake_home):
        parsers = create_all_parsers(config)
        plan = fake_home.install_plan()
        rollout = fake_home.install_codex_rollout()

        plan_source = make_source(plan, entity_kind=EntityKind.DOCUMENT, wire_format=WireFormat.REWRITTEN)
        rollout_source = make_source(rollout, assistant=Assistant.CODEX)

        assert isinstance(parser_for(plan_source, parsers), PlanParser)
        assert isinstance(parser_for(rollout_source, parsers), CodexParser)

    def test_unknown_source_raises(self, config, tmp_path):
        stray = tmp_path / "elsewhere.jsonl"
        stray.write_text("{}\n")

        with pytest.raises(UnknownDialectError):
            parser_for(make_source(stray), [ClaudeCodeParser(config.claude_root)])


class TestPlanParser:
    """Whole-file plan documents with content-hash checkpoints."""

    def _source(self, path):
        return make_source(path, entity_kind=EntityKind.DOCUMENT, wire_format=WireFormat.REWRITTEN)

    def test_parses_title_and_hash(self, fake_home):
        path = fake_home.install_plan()
        result = PlanParser(fake_home.claude_root).parse(self._source(path), Checkpoint.empty(path))

        (plan,) = result.plans
        assert plan.id == "brave-plan"
        assert plan.title == "Refresh login fixtures"
        assert result.new_checkpoint.content_hash == plan.content_hash
        assert result.new_checkpoint.kind == "content_hash"

    def test_same_content_is_already_parsed(self, fake_home):
        path = fake_home.install_plan()
        parser = PlanParser(fake_home.claude_root)
        first = parser.parse(self._source(path), Checkpoint.empty(path))

        again = parser.parse(self._source(path), first.new_checkpoint)

        assert again.plans == []
        assert again.skip_reason == SkipReason.ALREADY_PARSED

    def test_rewrite_produces_new_version(self, fake_home):
        path = fake_home.install_plan()
        parser = PlanParser(fake_home.claude_root)
        first = parser.parse(self._source(path), Checkpoint.empty(path))

        path.write_text("# Rewritten plan\n\nShorter.\n")
        second = parser.parse(self._source(path), first.new_checkpoint)

        assert second.plans[0].title == "Rewritten plan"
        assert second.new_checkpoint.content_hash != first.new_checkpoint.content_hash

    def test_extract_title(self):
        assert extract_title("intro\n# Title here\n## sub") == "Title here"
        assert extract_title("no heading") is None
