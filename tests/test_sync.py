"""
End-to-end tests for the ingest coordinator.

Builds fake ~/.claude and ~/.codex trees in tmp_path and runs real sync
passes against a scratch store.
"""

from dataclasses import replace

import pytest

from agent_ledger.db import Message, Thread, get_session
from agent_ledger.db.checkpoints import load_checkpoints
from agent_ledger.db.queries import messages_since, store_counts, thread_messages
from agent_ledger.db.writer import StoreWriter
from agent_ledger.errors import ReadOnlyStoreError, StoreWriteError
from agent_ledger.pipeline import IngestCoordinator, observe, run_sync, take_snapshot, watch
from agent_ledger.pipeline import sync as sync_module
from agent_ledger.process_lock import IngestLock
from agent_ledger.publish import CollectingSink, JsonlOutboxSink

from conftest import CLAUDE_AGENT_ID, CLAUDE_SESSION_ID, CODEX_SESSION_ID, append_records, fixture_lines

AGENT_THREAD = f"{CLAUDE_SESSION_ID}-agent-{CLAUDE_AGENT_ID}"
MAIN_THREAD = f"{CLAUDE_SESSION_ID}-main"


def _counts(config):
    db = get_session(config.db_path)
    try:
        return store_counts(db)
    finally:
        db.close()


def _message_rows(config):
    """Stored messages minus row id and observed_at."""
    db = get_session(config.db_path)
    try:
        rows = db.query(Message).order_by(Message.thread_id, Message.seq).all()
        return [
            (
                m.thread_id, m.seq, m.emitted_at, m.author_role, m.message_type,
                m.content, m.tool_name, m.call_id, m.tokens_in, m.tokens_out,
                m.source_path, m.source_offset, m.source_line, m.raw_data,
            )
            for m in rows
        ]
    finally:
        db.close()


def _thread(config, thread_id):
    db = get_session(config.db_path)
    try:
        row = db.get(Thread, thread_id)
        return None if row is None else (row.parent_thread_id, row.spawned_by_seq)
    finally:
        db.close()


def _install_all(fake_home):
    fake_home.install_claude_main()
    fake_home.install_claude_agent()
    fake_home.install_codex_rollout()
    fake_home.install_plan()


class FlakyWriter(StoreWriter):
    """Fails the transaction for paths containing ``fail_on`` until disarmed."""

    def __init__(self, db_path, fail_on):
        super().__init__(db_path)
        self.fail_on = fail_on

    def write(self, result, previous=None):
        if self.fail_on and self.fail_on in result.source.key:
            raise StoreWriteError(result.source.path, RuntimeError("simulated crash"))
        return super().write(result, previous)


class TestSyncPass:
    """A full pass over every dialect."""

    def test_ingests_everything(self, config, fake_home, coordinator):
        _install_all(fake_home)

        report = coordinator.sync_pass()

        assert report.sources_discovered == 4
        assert report.sources_committed == 4
        assert report.messages_inserted == 6 + 5 + 7
        assert report.plans_written == 1
        assert report.threads_linked == 1
        assert report.pending_threads == []
        assert report.errors == []

        counts = _counts(config)
        assert counts["sessions"] == 2
        assert counts["threads"] == 3
        assert counts["plans"] == 1
        assert counts["source_files"] == 4
        assert _thread(config, AGENT_THREAD) == (MAIN_THREAD, 3)

    def test_second_pass_is_noop(self, config, fake_home, coordinator):
        _install_all(fake_home)
        coordinator.sync_pass()
        db = get_session(config.db_path)
        before = load_checkpoints(db)
        db.close()

        report = coordinator.sync_pass()

        assert report.sources_changed == 0
        assert report.sources_committed == 0
        assert report.messages_inserted == 0
        assert report.skipped == {"unchanged": 4}
        db = get_session(config.db_path)
        after = load_checkpoints(db)
        db.close()
        assert after == before

    def test_appended_lines_picked_up(self, config, fake_home, coordinator):
        path = fake_home.install_claude_main()
        lines = fixture_lines("claude_main_session.jsonl")
        path.write_bytes(b"".join(lines[:2]))
        first = coordinator.sync_pass()

        path.write_bytes(b"".join(lines))
        second = coordinator.sync_pass()

        assert first.messages_inserted == 3
        assert second.messages_inserted == 3
        assert [row[1] for row in _message_rows(config)] == [1, 2, 3, 4, 5, 6]

    def test_split_ingest_matches_single_pass(self, config, fake_home, tmp_path, ingest_lock):
        path = fake_home.install_claude_main()
        lines = fixture_lines("claude_main_session.jsonl")

        path.write_bytes(b"".join(lines[:3]))
        IngestCoordinator(config, lock=ingest_lock).sync_pass()
        path.write_bytes(b"".join(lines))
        IngestCoordinator(config, lock=ingest_lock).sync_pass()

        single = replace(config, db_path=tmp_path / "single.db")
        with IngestLock(single.store_path, single.lock_dir) as lock:
            IngestCoordinator(single, lock=lock).sync_pass()

        assert _message_rows(config) == _message_rows(single)
        assert _thread(config, MAIN_THREAD) == _thread(single, MAIN_THREAD)

    def test_truncated_source_restarts_from_zero(self, config, fake_home, coordinator):
        path = fake_home.install_claude_main()
        lines = fixture_lines("claude_main_session.jsonl")
        coordinator.sync_pass()

        path.write_bytes(lines[0])
        report = coordinator.sync_pass()

        assert report.sources_committed == 1
        assert any("truncated" in w for w in report.warnings)
        seqs = [row[1] for row in _message_rows(config)]
        assert seqs == [1, 2, 3, 4, 5, 6, 7]
        db = get_session(config.db_path)
        checkpoint = load_checkpoints(db)[str(path.absolute())]
        db.close()
        assert checkpoint.offset == len(lines[0])

    def test_progress_callback(self, fake_home, coordinator):
        _install_all(fake_home)
        calls = []

        coordinator.sync_pass(progress=lambda i, total, source: calls.append((i, total)))

        assert calls == [(0, 4), (1, 4), (2, 4), (3, 4)]

    def test_vanished_source_skipped_and_retried(self, config, fake_home, coordinator, monkeypatch):
        _install_all(fake_home)
        rollout = fake_home.install_codex_rollout()

        real_discover = sync_module.discover_sources

        def discover_then_delete(targets):
            sources = real_discover(targets)
            rollout.unlink()
            return sources

        monkeypatch.setattr(sync_module, "discover_sources", discover_then_delete)
        report = coordinator.sync_pass()

        assert report.sources_committed == 3
        assert len(report.errors) == 1
        assert "rollout" in report.errors[0]
        db = get_session(config.db_path)
        assert str(rollout.absolute()) not in load_checkpoints(db)
        db.close()

    def test_report_serializes(self, fake_home, coordinator):
        _install_all(fake_home)
        data = coordinator.sync_pass().to_dict()

        assert data["messages_inserted"] == 18
        assert data["finished_at"] is not None
        assert isinstance(data["skipped"], dict)

    def test_oddly_shaped_records_do_not_block_ingest(self, config, fake_home, coordinator):
        main = fake_home.install_claude_main()
        rollout = fake_home.install_codex_rollout()
        append_records(main, {"type": "summary", "summary": {"title": "x"}})
        append_records(rollout, {
            "timestamp": "2025-12-04T21:59:00Z",
            "type": "response_item",
            "payload": {"type": "reasoning", "summary": {"text": "x"}},
        })

        report = coordinator.sync_pass()

        assert report.errors == []
        assert report.sources_committed == 2
        assert report.messages_inserted == 7 + 8
        db = get_session(config.db_path)
        try:
            rows = thread_messages(db, MAIN_THREAD)
            assert [m.seq for m in rows] == [1, 2, 3, 4, 5, 6, 7]
            assert rows[-1].content == '{"title": "x"}'
            assert len(thread_messages(db, f"{CODEX_SESSION_ID}-main")) == 8
            assert set(load_checkpoints(db)) == {str(main.absolute()), str(rollout.absolute())}
        finally:
            db.close()

        assert coordinator.sync_pass().sources_committed == 0


class TestCorrelationAcrossPasses:
    """Spawned threads linked regardless of discovery order."""

    def test_agent_before_primary(self, config, fake_home, coordinator):
        fake_home.install_claude_agent()
        first = coordinator.sync_pass()
        assert first.pending_threads == [AGENT_THREAD]
        assert _thread(config, AGENT_THREAD) == (None, None)

        fake_home.install_claude_main()
        second = coordinator.sync_pass()

        assert second.threads_linked == 1
        assert second.pending_threads == []
        assert _thread(config, AGENT_THREAD) == (MAIN_THREAD, 3)
        assert coordinator.close() == []

    def test_link_survives_run_boundary(self, config, fake_home, ingest_lock):
        fake_home.install_claude_agent()
        first_run = IngestCoordinator(config, lock=ingest_lock)
        first_run.sync_pass()
        assert [o.thread_id for o in first_run.close()] == [AGENT_THREAD]

        fake_home.install_claude_main()
        second_run = IngestCoordinator(config, lock=ingest_lock)
        second_run.sync_pass()

        assert _thread(config, AGENT_THREAD) == (MAIN_THREAD, 3)
        assert second_run.close() == []

    def test_primary_before_agent(self, config, fake_home, coordinator):
        fake_home.install_claude_main()
        coordinator.sync_pass()

        fake_home.install_claude_agent()
        report = coordinator.sync_pass()

        assert report.threads_linked == 1
        assert _thread(config, AGENT_THREAD) == (MAIN_THREAD, 3)

    def test_orphan_does_not_block(self, config, fake_home, coordinator):
        _install_all(fake_home)
        orphan_path = fake_home.install_orphan_agent()

        report = coordinator.sync_pass()

        assert _thread(config, AGENT_THREAD) == (MAIN_THREAD, 3)
        (pending,) = report.pending_threads
        assert pending.endswith("agent-zz9999")
        assert _counts(config)["messages"] == 18 + 5

        (orphan,) = coordinator.close()
        assert orphan.source_path == str(orphan_path.absolute())

    def test_run_sync_reports_orphans(self, config, fake_home, ingest_lock):
        fake_home.install_orphan_agent()

        report, orphans = run_sync(config, ingest_lock)

        assert len(orphans) == 1
        assert any("orphaned thread" in w for w in report.warnings)


class TestFailures:
    def test_failed_source_does_not_undo_others(self, config, fake_home, ingest_lock):
        fake_home.install_claude_main()
        rollout = fake_home.install_codex_rollout()
        writer = FlakyWriter(config.db_path, fail_on="rollout-")
        coordinator = IngestCoordinator(config, lock=ingest_lock, writer=writer)

        with pytest.raises(StoreWriteError):
            coordinator.sync_pass()

        db = get_session(config.db_path)
        checkpoints = load_checkpoints(db)
        db.close()
        assert str(rollout.absolute()) not in checkpoints
        assert _counts(config)["messages"] == 6

        writer.fail_on = None
        report = coordinator.sync_pass()

        assert report.sources_committed == 1
        assert report.messages_inserted == 7
        assert _counts(config)["messages"] == 13

    def test_requires_ingest_role(self, config):
        with pytest.raises(ReadOnlyStoreError):
            IngestCoordinator(config).sync_pass()

        unheld = IngestLock(config.store_path, config.lock_dir)
        with pytest.raises(ReadOnlyStoreError):
            IngestCoordinator(config, lock=unheld).sync_pass()


class TestSinks:
    """Newly committed messages handed downstream."""

    def test_batches_per_committed_source(self, config, fake_home, ingest_lock):
        _install_all(fake_home)
        sink = CollectingSink()
        coordinator = IngestCoordinator(config, lock=ingest_lock, sinks=[sink])

        coordinator.sync_pass()
        coordinator.sync_pass()

        assert len(sink.batches) == 3
        assert len(sink.messages) == 18
        assert len({m.key for m in sink.messages}) == 18

    def test_failing_sink_does_not_fail_pass(self, config, fake_home, ingest_lock):
        class BrokenSink:
            def publish(self, batch):
                raise RuntimeError("downstream unavailable")

        fake_home.install_claude_main()
        coordinator = IngestCoordinator(config, lock=ingest_lock, sinks=[BrokenSink()])

        report = coordinator.sync_pass()

        assert report.messages_inserted == 6
        assert len(report.errors) == 1
        assert _counts(config)["messages"] == 6

    def test_outbox_written_and_store_catch_up(self, config, fake_home, ingest_lock, tmp_path):
        fake_home.install_claude_main()
        outbox = tmp_path / "outbox.jsonl"
        IngestCoordinator(config, lock=ingest_lock, sinks=[JsonlOutboxSink(outbox)]).sync_pass()

        assert len(outbox.read_text().splitlines()) == 6

        db = get_session(config.db_path)
        try:
            rows = messages_since(db, after_id=0)
            later = messages_since(db, after_id=rows[2].id)
        finally:
            db.close()
        assert len(rows) == 6
        assert [m.seq for m in later] == [4, 5, 6]


class TestLoops:
    def test_watch_runs_requested_passes(self, fake_home, coordinator):
        fake_home.install_claude_main()
        reports = []

        passes = watch(coordinator, interval=0, on_report=reports.append, max_passes=2)

        assert passes == 2
        assert [r.messages_inserted for r in reports] == [6, 0]

    def test_observer_sees_empty_store_before_init(self, config):
        snapshot = take_snapshot(config)

        assert snapshot.counts == {}
        assert snapshot.latest_message_id == 0
        assert not config.store_path.exists()

    def test_observer_sees_committed_messages(self, config, fake_home, coordinator):
        fake_home.install_claude_main()
        coordinator.sync_pass()
        snapshots = []

        refreshes = observe(config, interval=0, on_refresh=snapshots.append, max_refreshes=2)

        assert refreshes == 2
        assert snapshots[-1].counts["messages"] == 6
        assert snapshots[-1].latest_message_id >= 6
