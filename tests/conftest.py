"""Shared fixtures: fake assistant homes built in tmp_path and a scratch store."""

from pathlib import Path
import json
import shutil

import pytest

from agent_ledger.config import LedgerConfig
from agent_ledger.db import dispose_engine, get_session, init_db
from agent_ledger.ingest.types import Assistant, EntityKind, SourceRecord, WireFormat
from agent_ledger.pipeline.sync import IngestCoordinator
from agent_ledger.process_lock import IngestLock


FIXTURES_DIR = Path(__file__).parent / "fixtures"

CLAUDE_PROJECT_DIR = "-home-dev-proj"
CLAUDE_SESSION_ID = "sess-1111"
CLAUDE_AGENT_ID = "a1b2c3"
CODEX_SESSION_ID = "019aeb2a-1111-7222-8333-944455556666"
CODEX_ROLLOUT_NAME = f"rollout-2025-12-04T21-56-52-{CODEX_SESSION_ID}.jsonl"


class FakeHome:
    """Builds ~/.claude and ~/.codex layouts from the fixture files."""

    def __init__(self, root: Path):
        self.claude_root = root / ".claude"
        self.codex_root = root / ".codex"

    @property
    def claude_project(self) -> Path:
        path = self.claude_root / "projects" / CLAUDE_PROJECT_DIR
        path.mkdir(parents=True, exist_ok=True)
        return path

    def install_claude_main(self) -> Path:
        dest = self.claude_project / f"{CLAUDE_SESSION_ID}.jsonl"
        shutil.copy(FIXTURES_DIR / "claude_main_session.jsonl", dest)
        return dest

    def install_claude_agent(self, layout: str = "subagents") -> Path:
        if layout == "subagents":
            folder = self.claude_project / CLAUDE_SESSION_ID / "subagents"
            folder.mkdir(parents=True, exist_ok=True)
        else:
            folder = self.claude_project
        dest = folder / f"agent-{CLAUDE_AGENT_ID}.jsonl"
        shutil.copy(FIXTURES_DIR / "claude_agent.jsonl", dest)
        return dest

    def install_orphan_agent(self, agent_id: str = "zz9999") -> Path:
        """An agent file whose spawn completion never appears anywhere."""
        dest = self.claude_project / f"agent-{agent_id}.jsonl"
        text = (FIXTURES_DIR / "claude_agent.jsonl").read_text().replace(CLAUDE_AGENT_ID, agent_id)
        dest.write_text(text)
        return dest

    def install_codex_rollout(self) -> Path:
        folder = self.codex_root / "sessions" / "2025" / "12" / "04"
        folder.mkdir(parents=True, exist_ok=True)
        dest = folder / CODEX_ROLLOUT_NAME
        shutil.copy(FIXTURES_DIR / "codex_rollout.jsonl", dest)
        return dest

    def install_plan(self, slug: str = "brave-plan") -> Path:
        folder = self.claude_root / "plans"
        folder.mkdir(parents=True, exist_ok=True)
        dest = folder / f"{slug}.md"
        shutil.copy(FIXTURES_DIR / "plan_brave.md", dest)
        return dest


def append_records(path: Path, *records: dict) -> None:
    with open(path, "a") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")


def fixture_lines(name: str) -> list[bytes]:
    """Fixture file split into complete lines, terminators kept."""
    return (FIXTURES_DIR / name).read_bytes().splitlines(keepends=True)


def make_source(
    path: Path,
    assistant: Assistant = Assistant.CLAUDE_CODE,
    entity_kind: EntityKind = EntityKind.SESSION,
    wire_format: WireFormat = WireFormat.APPEND_LINES,
) -> SourceRecord:
    return SourceRecord(
        path=path.absolute(),
        assistant=assistant,
        entity_kind=entity_kind,
        wire_format=wire_format,
        size_bytes=path.stat().st_size,
    )


@pytest.fixture
def fake_home(tmp_path):
    """Empty fake home; tests install the fixture files they need."""
    return FakeHome(tmp_path / "home")


@pytest.fixture
def config(tmp_path, fake_home):
    config = LedgerConfig(
        db_path=tmp_path / "ledger.db",
        claude_root=fake_home.claude_root,
        codex_root=fake_home.codex_root,
        lock_dir=tmp_path / "locks",
        poll_interval_seconds=0.01,
    )
    yield config
    dispose_engine(config.db_path)


@pytest.fixture
def db_session(config):
    """Create a test database."""
    init_db(config.db_path)
    session = get_session(config.db_path)
    yield session
    session.close()


@pytest.fixture
def ingest_lock(config):
    lock = IngestLock(config.store_path, config.lock_dir)
    assert lock.try_acquire()
    yield lock
    lock.release()


@pytest.fixture
def coordinator(config, ingest_lock):
    coordinator = IngestCoordinator(config, lock=ingest_lock)
    yield coordinator
    coordinator.close()
