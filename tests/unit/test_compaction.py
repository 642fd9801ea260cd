"""Tests for storesync.lib.compaction - reorder, dedup and truncate."""

import io
import json

import pytest

from storesync.lib import compaction
from storesync.lib.compaction import (
    DuplicatePolicy,
    OrderedRecordIndex,
    compact_file,
    compact_files,
    reorder,
)
from storesync.lib.errors import (
    ChangelogError,
    CompactionIOError,
    DecodingError,
    RunError,
)
from storesync.lib.records import Record


def _ids(path):
    return [json.loads(line)["id"] for line in path.read_text(encoding="utf-8").splitlines()]


class TestOrderedRecordIndex:
    """Tests for the ordered deduplicating index."""

    def test_orders_by_updated_at_unknown_last(self):
        index = OrderedRecordIndex()
        for payload in [
            {"id": 1, "updated_at": None},
            {"id": 2, "updated_at": "2020-01-02T00:00:00Z"},
            {"id": 3, "updated_at": "2020-01-01T00:00:00Z"},
        ]:
            index.insert(Record.from_payload(payload))

        assert [r.payload["id"] for r in index] == [3, 2, 1]

    def test_keep_first_drops_later_duplicate(self):
        index = OrderedRecordIndex(DuplicatePolicy.KEEP_FIRST)

        assert index.insert(Record.from_payload({"id": 1, "updated_at": "2020-01-01T00:00:00Z"}))
        assert not index.insert(Record.from_payload({"id": 2, "updated_at": "2020-01-01T00:00:00Z"}))
        assert [r.payload["id"] for r in index] == [1]
        assert index.duplicates == 1

    def test_keep_last_replaces_earlier_duplicate(self):
        index = OrderedRecordIndex(DuplicatePolicy.KEEP_LAST)
        index.insert(Record.from_payload({"id": 1, "updated_at": "2020-01-01T00:00:00Z"}))
        index.insert(Record.from_payload({"id": 2, "updated_at": "2020-01-01T00:00:00Z"}))

        assert [r.payload["id"] for r in index] == [2]
        assert len(index) == 1

    def test_equal_instants_in_other_zones_collide(self):
        index = OrderedRecordIndex()
        index.insert(Record.from_payload({"id": 1, "updated_at": "2020-01-01T05:00:00Z"}))
        index.insert(Record.from_payload({"id": 2, "updated_at": "2020-01-01T00:00:00-05:00"}))

        assert len(index) == 1

    def test_unparseable_timestamp_sorts_last(self):
        index = OrderedRecordIndex()
        index.insert(Record.from_payload({"id": 1, "updated_at": "2020-01-01 not a time"}))
        index.insert(Record.from_payload({"id": 2, "updated_at": "2020-01-01T00:00:00Z"}))

        assert [r.payload["id"] for r in index] == [2, 1]

    def test_unknown_timestamps_collapse(self):
        """Records without updated_at share one key."""
        index = OrderedRecordIndex()
        index.insert(Record.from_payload({"id": 1}))
        index.insert(Record.from_payload({"id": 2}))

        assert [r.payload["id"] for r in index] == [1]


class TestReorder:
    """Tests for reorder() on an open stream."""

    def test_sorts_in_place(self):
        stream = io.BytesIO(
            b'{"id":1,"updated_at":null}\n'
            b'{"id":2,"updated_at":"2020-01-02T00:00:00Z"}\n'
            b'{"id":3,"updated_at":"2020-01-01T00:00:00Z"}\n'
        )

        result = reorder(stream)

        lines = stream.getvalue().splitlines()
        assert [json.loads(line)["id"] for line in lines] == [3, 2, 1]
        assert result.records_read == 3
        assert result.records_written == 3
        assert result.new_size == result.original_size

    def test_shrinks_to_exact_length(self):
        """A shorter rewrite truncates the file to the new length."""
        stream = io.BytesIO(
            b'{"id": 1, "updated_at": "2020-01-02T00:00:00Z"}\n'
            b'{"id": 2, "updated_at": "2020-01-01T00:00:00Z"}\n'
            b'{"id": 1, "updated_at": "2020-01-02T00:00:00Z"}\n'
        )
        original_size = len(stream.getvalue())

        result = reorder(stream)

        expected = (
            b'{"id": 2, "updated_at": "2020-01-01T00:00:00Z"}\n'
            b'{"id": 1, "updated_at": "2020-01-02T00:00:00Z"}\n'
        )
        assert stream.getvalue() == expected
        assert result.new_size == len(expected)
        assert result.original_size == original_size
        assert result.truncated
        assert result.duplicates_dropped == 1

    def test_empty_stream(self):
        stream = io.BytesIO()

        result = reorder(stream)

        assert result.records_read == 0
        assert stream.getvalue() == b""

    def test_truncate_unsupported_fails(self):
        class NoTruncate(io.BytesIO):
            def truncate(self, size=None):
                raise io.UnsupportedOperation("truncate")

        stream = NoTruncate(
            b'{"id": 1, "updated_at": "2020-01-01T00:00:00Z"}\n'
            b'{"id": 1, "updated_at": "2020-01-01T00:00:00Z"}\n'
        )

        with pytest.raises(CompactionIOError, match="unable to truncate"):
            reorder(stream)

    def test_decode_failure_leaves_stream_untouched(self):
        content = b'{"id": 2, "updated_at": "2020-01-02T00:00:00Z"}\nnot json\n'
        stream = io.BytesIO(content)

        with pytest.raises(DecodingError):
            reorder(stream)

        assert stream.getvalue() == content

    def test_lines_written_back_verbatim(self):
        """Escapes UTF-8 cannot hold, such as lone surrogates, survive."""
        stream = io.BytesIO(
            b'{"id":2,"note":"\\ud800","updated_at":"2020-01-02T00:00:00Z"}\n'
            b'{"id":1,"updated_at":"2020-01-01T00:00:00Z"}\n'
        )

        reorder(stream)

        assert stream.getvalue() == (
            b'{"id":1,"updated_at":"2020-01-01T00:00:00Z"}\n'
            b'{"id":2,"note":"\\ud800","updated_at":"2020-01-02T00:00:00Z"}\n'
        )

    def test_unterminated_final_line_gets_newline(self):
        stream = io.BytesIO(
            b'{"id":2,"updated_at":"2020-01-02T00:00:00Z"}\n'
            b'{"id":1,"updated_at":"2020-01-01T00:00:00Z"}'
        )

        reorder(stream)

        assert stream.getvalue().splitlines(keepends=True) == [
            b'{"id":1,"updated_at":"2020-01-01T00:00:00Z"}\n',
            b'{"id":2,"updated_at":"2020-01-02T00:00:00Z"}\n',
        ]

    def test_encode_failure_is_compaction_error(self, monkeypatch):
        def failing_write(stream, record):
            raise UnicodeEncodeError("utf-8", "\ud800", 0, 1, "surrogates not allowed")

        monkeypatch.setattr(compaction, "write_record", failing_write)

        with pytest.raises(CompactionIOError, match="rewrite failed after 0 records"):
            reorder(io.BytesIO(b'{"id":1,"updated_at":"2020-01-01T00:00:00Z"}\n'))


class TestCompactFile:
    """Tests for compact_file() and compact_files()."""

    def test_ordering(self, write_changelog):
        path = write_changelog(
            [
                {"id": 1, "updated_at": None},
                {"id": 2, "updated_at": "2020-01-02T00:00:00Z"},
                {"id": 3, "updated_at": "2020-01-01T00:00:00Z"},
            ]
        )

        compact_file(path)

        assert _ids(path) == [3, 2, 1]

    def test_idempotent(self, write_changelog):
        """Compacting twice in a row yields byte-identical output."""
        path = write_changelog(
            [
                {"id": 3, "updated_at": "2020-01-03T00:00:00Z"},
                {"id": 1, "updated_at": "2020-01-01T00:00:00Z"},
                {"id": 2, "updated_at": "2020-01-02T00:00:00Z"},
            ]
        )

        compact_file(path)
        first = path.read_bytes()
        compact_file(path)

        assert path.read_bytes() == first

    def test_file_length_matches_after_shrink(self, write_changelog):
        record = {"id": 1, "updated_at": "2020-01-01T00:00:00Z"}
        path = write_changelog([record, record, record])

        result = compact_file(path)

        assert path.stat().st_size == result.new_size
        assert _ids(path) == [1]

    def test_backup_removed_on_success(self, write_changelog):
        path = write_changelog([{"id": 1, "updated_at": "2020-01-01T00:00:00Z"}])

        compact_file(path)

        assert not path.with_name(path.name + ".bak").exists()

    def test_backup_kept_on_failure(self, write_changelog, monkeypatch):
        """A failed rewrite leaves the original content in the backup."""
        path = write_changelog([{"id": 1, "updated_at": "2020-01-01T00:00:00Z"}])
        original = path.read_bytes()

        def failing_reorder(stream, policy):
            stream.write(b"partial")
            raise CompactionIOError("disk full")

        monkeypatch.setattr(compaction, "reorder", failing_reorder)

        with pytest.raises(CompactionIOError) as exc_info:
            compact_file(path)

        backup = path.with_name(path.name + ".bak")
        assert exc_info.value.backup_path == str(backup)
        assert backup.read_bytes() == original

    def test_no_backup(self, write_changelog, monkeypatch):
        path = write_changelog([{"id": 1, "updated_at": "2020-01-01T00:00:00Z"}])
        monkeypatch.setattr(
            compaction, "reorder", lambda stream, policy: (_ for _ in ()).throw(CompactionIOError("boom"))
        )

        with pytest.raises(CompactionIOError) as exc_info:
            compact_file(path, backup=False)

        assert exc_info.value.backup_path is None
        assert not path.with_name(path.name + ".bak").exists()

    def test_decode_failure_removes_backup(self, write_changelog):
        path = write_changelog(["not json"])

        with pytest.raises(DecodingError):
            compact_file(path)

        assert path.read_text() == "not json\n"
        assert not path.with_name(path.name + ".bak").exists()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ChangelogError, match="changelog not found"):
            compact_file(tmp_path / "missing.jsonl")

    def test_keep_last_policy(self, write_changelog):
        path = write_changelog(
            [
                {"id": 1, "updated_at": "2020-01-01T00:00:00Z"},
                {"id": 2, "updated_at": "2020-01-01T00:00:00Z"},
            ]
        )

        compact_file(path, DuplicatePolicy.KEEP_LAST)

        assert _ids(path) == [2]

    def test_compact_files_aggregates_failures(self, write_changelog, tmp_path):
        good = write_changelog(
            [
                {"id": 2, "updated_at": "2020-01-02T00:00:00Z"},
                {"id": 1, "updated_at": "2020-01-01T00:00:00Z"},
            ]
        )
        missing = tmp_path / "missing.jsonl"

        with pytest.raises(RunError) as exc_info:
            compact_files([good, missing])

        assert len(exc_info.value.errors) == 1
        assert isinstance(exc_info.value.errors[0], ChangelogError)
        assert _ids(good) == [1, 2]

    def test_compact_files_with_escaped_surrogate(self, write_changelog):
        odd = write_changelog(
            [
                '{"id":2,"note":"\\ud800","updated_at":"2020-01-02T00:00:00Z"}',
                '{"id":1,"updated_at":"2020-01-01T00:00:00Z"}',
            ],
            name="odd.jsonl",
        )
        other = write_changelog([{"id": 3, "updated_at": "2020-01-01T00:00:00Z"}], name="other.jsonl")

        results = compact_files([odd, other])

        assert set(results) == {str(odd), str(other)}
        assert odd.read_bytes() == (
            b'{"id":1,"updated_at":"2020-01-01T00:00:00Z"}\n'
            b'{"id":2,"note":"\\ud800","updated_at":"2020-01-02T00:00:00Z"}\n'
        )

    def test_encode_failure_keeps_backup(self, write_changelog, monkeypatch):
        path = write_changelog([{"id": 1, "updated_at": "2020-01-01T00:00:00Z"}])

        def failing_write(stream, record):
            raise ValueError("unencodable payload")

        monkeypatch.setattr(compaction, "write_record", failing_write)

        with pytest.raises(CompactionIOError) as exc_info:
            compact_file(path)

        assert exc_info.value.backup_path == str(path.with_name(path.name + ".bak"))

    def test_compact_files_success(self, write_changelog):
        a = write_changelog([{"id": 1, "updated_at": "2020-01-01T00:00:00Z"}], name="a.jsonl")
        b = write_changelog([{"id": 2, "updated_at": "2020-01-01T00:00:00Z"}], name="b.jsonl")

        results = compact_files([a, b], max_workers=2)

        assert set(results) == {str(a), str(b)}
