"""
Integration tests that can use real assistant logs.

These tests are marked with @pytest.mark.integration and read from the
real ~/.claude and ~/.codex directories. The store is always a scratch
file under tmp_path.
"""

import pytest
from pathlib import Path
import json

from agent_ledger.config import LedgerConfig
from agent_ledger.db import get_session
from agent_ledger.db.queries import store_counts
from agent_ledger.ingest.discovery import discover_sources
from agent_ledger.ingest.parsers import create_all_parsers
from agent_ledger.pipeline import IngestCoordinator
from agent_ledger.process_lock import IngestLock


def _real_config(tmp_path):
    return LedgerConfig(
        db_path=tmp_path / "real.db",
        lock_dir=tmp_path / "locks",
    )


@pytest.mark.integration
def test_real_rollout_structure():
    """
    Verify structure of real Codex rollouts from ~/.codex.

    Skips if no rollouts available.
    """
    sessions_dir = Path.home() / ".codex" / "sessions"
    rollouts = sorted(sessions_dir.glob("*/*/*/rollout-*.jsonl")) if sessions_dir.exists() else []
    if not rollouts:
        pytest.skip("No Codex rollouts found")

    latest = max(rollouts, key=lambda p: p.stat().st_mtime)
    records = [json.loads(line) for line in latest.read_text().splitlines() if line.strip()]

    assert len(records) > 0, f"No records in {latest}"
    for record in records:
        assert "type" in record
        assert "timestamp" in record


@pytest.mark.integration
def test_real_discovery(tmp_path):
    """Discovery over the real homes finds only files under the roots."""
    config = _real_config(tmp_path)
    parsers = create_all_parsers(config)

    sources = discover_sources(p.dialect_root() for p in parsers)
    if not sources:
        pytest.skip("No Claude Code or Codex logs found")

    roots = [config.claude_root.absolute(), config.codex_root.absolute()]
    for source in sources:
        assert any(source.path.is_relative_to(root) for root in roots)


@pytest.mark.integration
def test_real_sync_is_idempotent(tmp_path):
    """
    Ingest the real logs into a scratch store twice.

    The second pass may only pick up lines appended in between.
    """
    config = _real_config(tmp_path)
    if not (config.claude_root.exists() or config.codex_root.exists()):
        pytest.skip("No assistant homes found")

    with IngestLock(config.store_path, config.lock_dir) as lock:
        coordinator = IngestCoordinator(config, lock=lock)
        first = coordinator.sync_pass()
        if first.sources_discovered == 0:
            pytest.skip("No sources found")
        second = coordinator.sync_pass()
        orphans = coordinator.close()

    assert first.errors == []
    assert second.sources_committed <= second.sources_changed
    print(f"\nIngested {first.messages_inserted} messages from {first.sources_committed} sources")
    print(f"Orphaned threads: {len(orphans)}")

    db = get_session(config.db_path)
    try:
        counts = store_counts(db)
    finally:
        db.close()
    assert counts["messages"] >= first.messages_inserted
    assert counts["source_files"] <= first.sources_discovered + second.sources_discovered
