"""Tests for the append-only line reader."""

import pytest

from agent_ledger.errors import SourceReadError
from agent_ledger.ingest.line_reader import decode_records, read_new_lines


class TestReadNewLines:
    """Offset resumption, partial tails and truncation."""

    def test_reads_complete_lines_with_offsets(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a":1}\n{"b":2}\n')

        batch = read_new_lines(path)

        assert [line.text for line in batch.lines] == ['{"a":1}', '{"b":2}']
        assert [line.offset for line in batch.lines] == [0, 8]
        assert [line.line_number for line in batch.lines] == [1, 2]
        assert batch.end_offset == 16
        assert batch.end_line == 2
        assert not batch.truncated

    def test_resumes_from_offset(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a":1}\n{"b":2}\n')

        batch = read_new_lines(path, offset=8, line_number=1)

        assert [line.text for line in batch.lines] == ['{"b":2}']
        assert batch.lines[0].line_number == 2
        assert batch.end_offset == 16

    def test_partial_tail_is_left_for_next_pass(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a":1}\n{"b":')

        batch = read_new_lines(path)

        assert len(batch.lines) == 1
        assert batch.has_partial_tail
        assert batch.end_offset == 8
        assert batch.file_size == 13

        with open(path, "ab") as f:
            f.write(b'2}\n')
        resumed = read_new_lines(path, batch.end_offset, batch.end_line)

        assert [line.text for line in resumed.lines] == ['{"b":2}']
        assert resumed.end_offset == 16

    def test_offset_past_end_is_truncation(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b"x" * 199 + b"\n")

        batch = read_new_lines(path, offset=500, line_number=12)

        assert batch.truncated
        assert batch.start_offset == 0
        assert batch.end_offset == 200
        assert batch.end_line == 1
        assert any("truncated" in w for w in batch.warnings)

    def test_offset_at_end_reads_nothing(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"a":1}\n')

        batch = read_new_lines(path, offset=8, line_number=1)

        assert batch.lines == []
        assert batch.end_offset == 8
        assert not batch.truncated

    def test_missing_file_raises_source_read_error(self, tmp_path):
        with pytest.raises(SourceReadError):
            read_new_lines(tmp_path / "gone.jsonl")

    def test_invalid_utf8_line_is_skipped(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'\xff\xfe\n{"ok":true}\n')

        batch = read_new_lines(path)

        assert [line.text for line in batch.lines] == ['{"ok":true}']
        assert batch.lines[0].line_number == 2
        assert batch.end_offset == path.stat().st_size
        assert len(batch.warnings) == 1


class TestDecodeRecords:
    """JSON decoding keeps going past bad lines."""

    def test_malformed_line_is_skipped_with_warning(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"type":"user"}\nnot json\n\n[1,2]\n{"type":"assistant"}\n')
        batch = read_new_lines(path)

        records = list(decode_records(path, batch))

        assert [r.kind for r in records] == ["user", "assistant"]
        assert records[1].location.line == 5
        assert records[1].location.offset == path.read_bytes().index(b'{"type":"assistant"}')
        assert len(batch.warnings) == 2

    def test_record_keeps_raw_payload(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"type":"x","nested":{"unknown_field":[1,2,3]}}\n')
        batch = read_new_lines(path)

        (record,) = decode_records(path, batch)

        assert record.raw == {"type": "x", "nested": {"unknown_field": [1, 2, 3]}}
        assert record.location.path == str(path)

    def test_missing_type_is_unknown(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_bytes(b'{"payload":1}\n')
        batch = read_new_lines(path)

        (record,) = decode_records(path, batch)

        assert record.kind == "unknown"
