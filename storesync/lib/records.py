"""Changelog records and their line-oriented codec.

A changelog is UTF-8 text holding one JSON object per line, each line
terminated by ``\\n``, with no enclosing array. Payloads are opaque except
for their ``created_at`` and ``updated_at`` fields, which are parsed for
ordering and watermark detection.

Streams passed to this module are binary so byte offsets stay exact.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, Any, Dict, Iterator, Optional

from storesync.lib.errors import DecodingError

logger = logging.getLogger(__name__)

__all__ = [
    "Record",
    "encode_record",
    "format_timestamp",
    "iter_records",
    "parse_timestamp",
    "write_record",
]

_RFC3339 = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})?$"
)
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC3339 timestamp into an aware datetime.

    Naive values (including date-only strings) are taken as UTC so every
    parsed timestamp is comparable. Returns None for missing, null or
    unparseable values.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        match = _RFC3339.match(text)
        if match:
            date, time, fraction, offset = match.groups()
            # fromisoformat only takes 3 or 6 fractional digits before 3.11
            text = f"{date}T{time}"
            if fraction:
                text += "." + fraction[:6].ljust(6, "0")
            if offset:
                text += "+00:00" if offset in ("Z", "z") else offset
        elif not _DATE_ONLY.match(text):
            return None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> str:
    """Render a timestamp as RFC3339, or ``(null)`` when unknown."""
    if value is None:
        return "(null)"
    return value.isoformat()


@dataclass
class Record:
    """One API object as stored in a changelog.

    Attributes:
        payload: The decoded JSON object
        created_at: Parsed ``created_at`` (None when absent or invalid)
        updated_at: Parsed ``updated_at`` (None when absent or invalid)
        raw: The line a record was read from, without surrounding
            whitespace; written back unchanged
    """

    payload: Dict[str, Any]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    raw: Optional[bytes] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Record":
        if not isinstance(payload, dict):
            raise DecodingError(
                f"expected a JSON object, got {type(payload).__name__}",
                body=json.dumps(payload, default=str).encode("utf-8"),
            )
        return cls(
            payload=payload,
            created_at=parse_timestamp(payload.get("created_at")),
            updated_at=parse_timestamp(payload.get("updated_at")),
        )

    @classmethod
    def from_line(cls, line: bytes, *, line_number: Optional[int] = None) -> "Record":
        try:
            payload = json.loads(line)
        except ValueError as exc:
            raise DecodingError(
                f"invalid JSON: {exc}", body=bytes(line), line=line_number
            ) from exc
        if not isinstance(payload, dict):
            raise DecodingError(
                f"expected a JSON object, got {type(payload).__name__}",
                body=bytes(line),
                line=line_number,
            )
        return cls(
            payload=payload,
            created_at=parse_timestamp(payload.get("created_at")),
            updated_at=parse_timestamp(payload.get("updated_at")),
            raw=bytes(line).strip(),
        )

    @property
    def has_timestamp(self) -> bool:
        return self.updated_at is not None


def encode_record(record: Record) -> bytes:
    """Serialize a record as one changelog line, newline included.

    Records read from a changelog are written back byte for byte. Payloads
    holding strings UTF-8 cannot represent (lone surrogates) are written
    with ASCII escapes.
    """
    if record.raw is not None:
        return record.raw + b"\n"
    text = json.dumps(record.payload, ensure_ascii=False, separators=(",", ":"))
    try:
        return text.encode("utf-8") + b"\n"
    except UnicodeEncodeError:
        text = json.dumps(record.payload, ensure_ascii=True, separators=(",", ":"))
        return text.encode("ascii") + b"\n"


def write_record(stream: IO[bytes], record: Record) -> int:
    """Append one record to a binary stream; return the bytes written."""
    data = encode_record(record)
    stream.write(data)
    return len(data)


def iter_records(stream: IO[bytes]) -> Iterator[Record]:
    """Stream-decode records from the current position of a binary stream.

    Blank lines are skipped. A final line without a newline is accepted when
    it decodes; a line that is not a JSON object, including a truncated
    final line, raises ``DecodingError``.
    """
    for number, line in enumerate(stream, start=1):
        if not line.strip():
            continue
        if not line.endswith(b"\n"):
            logger.debug("final changelog line has no trailing newline")
        yield Record.from_line(line, line_number=number)
