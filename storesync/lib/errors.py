"""Structured exception hierarchy for store synchronization.

Provides specific exception types for the failure modes of a sync run,
with rich context for debugging, plus the normalization of the error
payloads returned by the remote API.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

__all__ = [
    "SyncError",
    "ConfigurationError",
    "OperationCancelled",
    "TransportError",
    "ResponseError",
    "ClientError",
    "RateLimitError",
    "ServerError",
    "DecodingError",
    "ChangelogError",
    "CompactionIOError",
    "RetryExhaustedError",
    "TaskError",
    "RunError",
    "ErrorKind",
    "ErrorText",
    "ErrorList",
    "ErrorMap",
    "parse_error_payload",
    "flatten_error_payload",
    "status_text",
]


class SyncError(Exception):
    """Base exception for all sync errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        store: Optional[str] = None,
        resource: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.store = store
        self.resource = resource
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if store or resource:
            context = f"{store or '?'}.{resource or '?'}"
            parts.insert(0, f"[{context}]")

        if self.details:
            parts.append("\nDetails:")
            parts.extend(f"  {k}: {v}" for k, v in self.details.items())

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        if len(parts) == 1:
            text = message
        elif len(parts) == 2 and (store or resource):
            text = " ".join(parts)
        else:
            text = "\n".join(parts)
        super().__init__(text)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "store": self.store,
            "resource": self.resource,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(SyncError):
    """Invalid runtime settings or store entries."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class OperationCancelled(SyncError):
    """Raised when work stops because its cancellation token fired.

    Cancellation is expected and is never reported as a task failure.
    """

    def __init__(self, message: str = "operation cancelled", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class TransportError(SyncError):
    """Network-level failure (connect, read, timeout) talking to the API."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.url = url
        self.cause = cause
        details = kwargs.pop("details", {})
        if url:
            details["url"] = url
        if cause is not None:
            details["cause_type"] = type(cause).__name__
        super().__init__(message, details=details, **kwargs)


def status_text(status: int) -> str:
    """Return the canonical reason phrase for an HTTP status code."""
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


class ResponseError(SyncError):
    """A non-2xx response from the API.

    The rendered message is ``"%03d: %s"`` built from, in order of
    preference, the explicit message, the flattened error list, or the
    canonical status text.
    """

    def __init__(
        self,
        status: int,
        message: str = "",
        errors: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.status = status
        self.api_message = message
        self.errors = list(errors or [])
        super().__init__(self._render(), **kwargs)

    def _render(self) -> str:
        msg = self.api_message
        if not msg:
            msg = ", ".join(self.errors)
        if not msg and self.status > 0:
            msg = status_text(self.status)
        if not msg:
            msg = "unknown error"
        if self.status > 0:
            return "%03d: %s" % (self.status, msg)
        return msg


class ClientError(ResponseError):
    """4xx response other than 429. Never retried."""


class ServerError(ResponseError):
    """5xx response. Retried with exponential backoff."""


class RateLimitError(ResponseError):
    """HTTP 429. Retried after the server supplied delay (seconds)."""

    def __init__(
        self,
        status: int,
        message: str = "",
        errors: Optional[Sequence[str]] = None,
        *,
        retry_after: float = 0.0,
        **kwargs: Any,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(status, message, errors, **kwargs)


class DecodingError(ResponseError):
    """A body or record that could not be decoded.

    Carries the raw bytes for diagnostics. ``status`` is 0 when the data
    did not come from an HTTP response (e.g. an on-disk changelog line).
    """

    def __init__(
        self,
        message: str,
        *,
        body: bytes = b"",
        status: int = 0,
        line: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        self.body = body
        self.line = line
        details = kwargs.pop("details", {})
        if line is not None:
            details["line"] = line
        if body:
            preview = body[:200].decode("utf-8", errors="replace")
            details["body"] = preview
        super().__init__(status, message, details=details, **kwargs)


class ChangelogError(SyncError):
    """Reading or writing the changelog file failed."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.path = path
        self.cause = cause
        details = kwargs.pop("details", {})
        if path:
            details["path"] = path
        if cause is not None:
            details["cause"] = str(cause)
        super().__init__(message, details=details, **kwargs)


class CompactionIOError(ChangelogError):
    """Compaction could not rewrite or truncate the changelog in place."""

    def __init__(
        self,
        message: str,
        *,
        backup_path: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.backup_path = backup_path
        suggestion = kwargs.pop("suggestion", None)
        if backup_path and not suggestion:
            suggestion = f"The original content was preserved at {backup_path}"
        details = kwargs.pop("details", {})
        if backup_path:
            details["backup_path"] = backup_path
        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class _MultiError(SyncError):
    """Base for errors that aggregate several constituent failures."""

    label = "error"

    def __init__(self, errors: Sequence[BaseException], **kwargs: Any) -> None:
        self.errors: List[BaseException] = list(errors)
        count = len(self.errors)
        lines = [f"{count} {self.label}(s) occurred:"]
        lines.extend(f"* {err}" for err in self.errors)
        super().__init__("\n".join(lines), **kwargs)

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None

    def _constituents(self) -> Sequence[BaseException]:
        return self.errors

    def iter_errors(self) -> Iterator[BaseException]:
        """Yield the leaf errors, expanding nested aggregates."""
        for _, _, err in self.iter_contexts():
            yield err

    def iter_contexts(
        self,
        store: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> Iterator[Tuple[Optional[str], Optional[str], BaseException]]:
        """Yield (store, resource, leaf error), inheriting context from aggregates."""
        store = self.store or store
        resource = self.resource or resource
        for err in self._constituents():
            if isinstance(err, _MultiError):
                yield from err.iter_contexts(store, resource)
            else:
                yield store, resource, err


class RetryExhaustedError(_MultiError):
    """Every attempt of a retried operation failed (or a failure was final)."""

    label = "attempt error"

    def __init__(
        self,
        errors: Sequence[BaseException],
        *,
        operation: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.operation = operation
        self.attempts = len(errors)
        details = kwargs.pop("details", {})
        details["attempts"] = self.attempts
        if operation:
            details["operation"] = operation
        super().__init__(errors, details=details, **kwargs)

    def _constituents(self) -> Sequence[BaseException]:
        # Report the final attempt only; earlier ones were retried away.
        return self.errors[-1:]


class TaskError(_MultiError):
    """All failures of one store task."""

    label = "task error"


class RunError(_MultiError):
    """Aggregate of every failed task in a run."""

    label = "failed task"

    def __init__(
        self,
        errors: Sequence[BaseException],
        *,
        report: Any = None,
        **kwargs: Any,
    ) -> None:
        self.report = report
        super().__init__(errors, **kwargs)


# ============================================
# Error payload normalization
# ============================================


class ErrorKind(Enum):
    """Tag of an error payload node."""

    TEXT = "text"
    LIST = "list"
    MAP = "map"


@dataclass(frozen=True)
class ErrorText:
    value: str
    kind: ErrorKind = ErrorKind.TEXT


@dataclass(frozen=True)
class ErrorList:
    items: Tuple["ErrorNode", ...]
    kind: ErrorKind = ErrorKind.LIST


@dataclass(frozen=True)
class ErrorMap:
    entries: Tuple[Tuple[str, "ErrorNode"], ...]
    kind: ErrorKind = ErrorKind.MAP


ErrorNode = Union[ErrorText, ErrorList, ErrorMap]


def parse_error_payload(value: Any) -> ErrorNode:
    """Build an error payload node from decoded JSON.

    Scalars that are not strings (numbers, booleans, null) become text.
    """
    if isinstance(value, dict):
        return ErrorMap(
            tuple((str(k), parse_error_payload(v)) for k, v in value.items())
        )
    if isinstance(value, list):
        return ErrorList(tuple(parse_error_payload(v) for v in value))
    if isinstance(value, str):
        return ErrorText(value)
    if value is None:
        return ErrorText("null")
    if isinstance(value, bool):
        return ErrorText("true" if value else "false")
    return ErrorText(str(value))


def flatten_error_payload(node: ErrorNode) -> List[str]:
    """Flatten an error payload into an ordered list of strings.

    Map keys are sorted so the output is deterministic. Nested values are
    joined with ``", "``; map entries render as ``"key: value"``.

    >>> flatten_error_payload(parse_error_payload(
    ...     {"vendor": "bad", "title": ["too short", "required"]}))
    ['title: too short, required', 'vendor: bad']
    """
    if node.kind is ErrorKind.TEXT:
        return [node.value]  # type: ignore[union-attr]
    if node.kind is ErrorKind.LIST:
        return [", ".join(flatten_error_payload(item)) for item in node.items]  # type: ignore[union-attr]
    return [
        f"{key}: {', '.join(flatten_error_payload(value))}"
        for key, value in sorted(node.entries, key=lambda entry: entry[0])  # type: ignore[union-attr]
    ]
