"""Tests for storesync.lib.records - changelog records and codec."""

import io
from datetime import datetime, timedelta, timezone

import pytest

from storesync.lib.errors import DecodingError
from storesync.lib.records import (
    Record,
    encode_record,
    format_timestamp,
    iter_records,
    parse_timestamp,
    write_record,
)


class TestParseTimestamp:
    """Tests for parse_timestamp()."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2020-01-05T00:00:00Z", datetime(2020, 1, 5, tzinfo=timezone.utc)),
            ("2020-01-05T00:00:00+00:00", datetime(2020, 1, 5, tzinfo=timezone.utc)),
            (
                "2020-01-05T10:30:00-05:00",
                datetime(2020, 1, 5, 10, 30, tzinfo=timezone(timedelta(hours=-5))),
            ),
            ("2020-01-05", datetime(2020, 1, 5, tzinfo=timezone.utc)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_timestamp(value) == expected

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "yesterday",
            42,
            ["2020-01-05"],
            "2020-01-01 not a time",
            "2020-01-01T00:00:00Zjunk",
            "2020-13-01T00:00:00Z",
        ],
    )
    def test_invalid_is_none(self, value):
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize(
        "value,microsecond",
        [
            ("2020-01-05T00:00:00.5Z", 500000),
            ("2020-01-05T00:00:00.12Z", 120000),
            ("2020-01-05T00:00:00.1234Z", 123400),
            ("2020-01-05T00:00:00.12345+00:00", 123450),
            ("2020-01-05T00:00:00.1234567Z", 123456),
        ],
    )
    def test_fractional_seconds(self, value, microsecond):
        assert parse_timestamp(value) == datetime(2020, 1, 5, 0, 0, 0, microsecond, tzinfo=timezone.utc)

    def test_naive_taken_as_utc(self):
        parsed = parse_timestamp("2020-01-05T12:00:00")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset() == timedelta(0)

    def test_format(self):
        assert format_timestamp(None) == "(null)"
        assert format_timestamp(datetime(2020, 1, 5, tzinfo=timezone.utc)) == "2020-01-05T00:00:00+00:00"


class TestRecord:
    """Tests for Record construction."""

    def test_from_line(self):
        record = Record.from_line(
            b'{"id": 1, "created_at": "2020-01-01T00:00:00Z", "updated_at": "2020-01-02T00:00:00Z"}\n'
        )

        assert record.payload["id"] == 1
        assert record.created_at == datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert record.updated_at == datetime(2020, 1, 2, tzinfo=timezone.utc)
        assert record.has_timestamp

    def test_missing_updated_at(self):
        record = Record.from_payload({"id": 1, "updated_at": None})
        assert record.updated_at is None
        assert not record.has_timestamp

    def test_invalid_json_keeps_line(self):
        with pytest.raises(DecodingError) as exc_info:
            Record.from_line(b'{"id": 1', line_number=7)

        assert exc_info.value.line == 7
        assert exc_info.value.body == b'{"id": 1'

    def test_non_object_line(self):
        with pytest.raises(DecodingError, match="expected a JSON object"):
            Record.from_line(b"[1, 2]\n")


class TestCodec:
    """Tests for encoding, writing and stream decoding."""

    def test_encode_is_compact_utf8_line(self):
        record = Record.from_payload({"id": 1, "title": "Café"})

        assert encode_record(record) == '{"id":1,"title":"Café"}\n'.encode("utf-8")

    def test_write_returns_byte_count(self):
        stream = io.BytesIO()
        written = write_record(stream, Record.from_payload({"name": "é"}))

        assert written == len(stream.getvalue())
        assert stream.getvalue().endswith(b"\n")

    def test_iter_records_skips_blank_lines(self):
        stream = io.BytesIO(b'{"id": 1}\n\n{"id": 2}\n')

        assert [r.payload["id"] for r in iter_records(stream)] == [1, 2]

    def test_iter_records_accepts_unterminated_final_line(self):
        stream = io.BytesIO(b'{"id": 1}\n{"id": 2}')

        assert [r.payload["id"] for r in iter_records(stream)] == [1, 2]

    def test_iter_records_truncated_line_fails(self):
        stream = io.BytesIO(b'{"id": 1}\n{"id": ')

        with pytest.raises(DecodingError) as exc_info:
            list(iter_records(stream))

        assert exc_info.value.line == 2

    def test_decoded_line_written_back_verbatim(self):
        line = b'{"id": 1, "note": "\\ud800", "title": "Caf\\u00e9"}\r\n'
        record = Record.from_line(line)

        assert encode_record(record) == b'{"id": 1, "note": "\\ud800", "title": "Caf\\u00e9"}\n'

    def test_lone_surrogate_payload_escaped(self):
        record = Record.from_payload({"id": 1, "note": "\ud800", "title": "Café"})

        assert encode_record(record) == b'{"id":1,"note":"\\ud800","title":"Caf\\u00e9"}\n'
