"""Paginating client for the store admin REST API.

Provides the two collection operations a sync needs:
- ``count()``: one request against a collection's ``count.json`` endpoint
- ``paginate()``: lazily walks a collection page by page, following the
  ``next`` relation of the response ``Link`` header

Every request is authenticated with HTTP Basic credentials (only when the
request targets the store's own host), carries the configured timeout and
User-Agent, and runs under the retry engine:
- 429 responses are retried after exactly the server's ``Retry-After``
- other 4xx responses fail immediately
- 5xx responses and transport failures back off exponentially with jitter
- cancellation is checked before every attempt and is never retried

Example:
    from storesync.lib.api import ClientOptions, ShopClient

    with ShopClient("acme", "key", "secret", options=ClientOptions(retry_count=5)) as client:
        print(client.count("orders"))
        for record in client.paginate("orders", {"limit": 250}):
            print(record.updated_at)
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Mapping, Optional, Tuple, Union

import httpx
import requests_toolbelt
import tenacity
from requests_toolbelt.utils.user_agent import user_agent

from storesync import __version__
from storesync.lib.cancellation import CancellationToken
from storesync.lib.errors import (
    ClientError,
    DecodingError,
    ErrorKind,
    OperationCancelled,
    RateLimitError,
    ResponseError,
    RetryExhaustedError,
    ServerError,
    TransportError,
    flatten_error_payload,
    parse_error_payload,
    status_text,
)
from storesync.lib.logging import TaskLogger
from storesync.lib.quota import QuotaSnapshot, QuotaTracker, parse_retry_after
from storesync.lib.records import Record
from storesync.lib.retry import RetryPolicy, exponential_backoff, run_with_retry

logger = logging.getLogger(__name__)

__all__ = [
    "ClientOptions",
    "DEFAULT_API_VERSION",
    "DEFAULT_USER_AGENT",
    "Params",
    "ShopClient",
    "check_response",
    "next_page_params",
]

DEFAULT_API_VERSION = "2020-04"
DEFAULT_API_HOST = "myshopify.com"
DEFAULT_HTTP_TIMEOUT = 300.0  # seconds; some collection pages are slow
DEFAULT_RETRY_COUNT = 10
DEFAULT_RETRY_DELAY = 0.1  # seconds
DEFAULT_RETRY_JITTER = 0.1  # seconds
DEFAULT_PAGE_LIMIT = 50  # what the API returns when no limit is sent

PATH_PREFIX = "admin/api"
MEDIA_JSON = "application/json"

DEFAULT_USER_AGENT = user_agent(
    "storesync",
    __version__,
    extras=[
        ("httpx", getattr(httpx, "__version__", "unknown")),
        ("tenacity", getattr(tenacity, "__version__", "unknown")),
        ("requests-toolbelt", getattr(requests_toolbelt, "__version__", "unknown")),
    ],
)

# Query parameters: a plain mapping or the multi-valued params of a cursor link
Params = Union[Mapping[str, Any], httpx.QueryParams]


@dataclass(frozen=True)
class ClientOptions:
    """Optional client overrides with their defaults.

    Attributes:
        api_version: API version path segment (e.g. "2020-04")
        timeout: Per-request HTTP timeout in seconds
        retry_count: Maximum attempts per request
        retry_delay: Base delay in seconds, doubled on each attempt
        retry_jitter: Ceiling in seconds of the random jitter added to each delay
        user_agent: User-Agent header value
        api_host: Domain the store identifier is prefixed to
        scheme: URL scheme
    """

    api_version: str = DEFAULT_API_VERSION
    timeout: float = DEFAULT_HTTP_TIMEOUT
    retry_count: int = DEFAULT_RETRY_COUNT
    retry_delay: float = DEFAULT_RETRY_DELAY
    retry_jitter: float = DEFAULT_RETRY_JITTER
    user_agent: str = DEFAULT_USER_AGENT
    api_host: str = DEFAULT_API_HOST
    scheme: str = "https"

    def __post_init__(self) -> None:
        errors = self._validate()
        if errors:
            error_msg = "\n".join(f"  - {e}" for e in errors)
            raise ValueError(f"ClientOptions configuration errors:\n{error_msg}")

    def _validate(self) -> List[str]:
        errors: List[str] = []
        if not self.api_version:
            errors.append("api_version is required (e.g., '2020-04')")
        if self.timeout <= 0:
            errors.append("timeout must be > 0 seconds")
        if self.retry_count < 1:
            errors.append("retry_count must be >= 1")
        if self.retry_delay < 0:
            errors.append("retry_delay must be >= 0")
        if self.retry_jitter < 0:
            errors.append("retry_jitter must be >= 0")
        if not self.api_host:
            errors.append("api_host is required")
        return errors


def check_response(response: httpx.Response) -> None:
    """Classify a response, raising the matching error for non-2xx codes.

    Error bodies look like ``{"error": "...", "errors": <text|list|map>}``;
    they are decoded and flattened into the raised error.

    Raises:
        DecodingError: Non-2xx body that is not a JSON object
        RateLimitError: HTTP 429 (carries the ``Retry-After`` delay)
        ClientError: Other 4xx codes
        ServerError: 5xx codes
        ResponseError: Any other non-2xx code
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    message = ""
    errors: List[str] = []
    body = response.content
    if body:
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise DecodingError(
                f"invalid error body: {exc}", body=body, status=status
            ) from exc
        if not isinstance(payload, dict):
            raise DecodingError(
                "error body is not a JSON object", body=body, status=status
            )

        raw_message = payload.get("error")
        if raw_message:
            message = str(raw_message)

        raw_errors = payload.get("errors")
        if isinstance(raw_errors, (str, list, dict)):
            node = parse_error_payload(raw_errors)
            if node.kind is ErrorKind.TEXT:
                message = raw_errors  # type: ignore[assignment]
            else:
                errors = flatten_error_payload(node)
        elif raw_errors is not None:
            message = f"{message}: {raw_errors}" if message else str(raw_errors)

    if status == 429:
        retry_after = parse_retry_after(response.headers, status)
        raise RateLimitError(
            status, message, errors, retry_after=retry_after.total_seconds()
        )

    if status == 406:
        # The API's 406 body is unhelpful.
        message = status_text(status)

    if 400 <= status < 500:
        raise ClientError(status, message, errors)
    if status >= 500:
        raise ServerError(status, message, errors)
    raise ResponseError(status, message, errors)


def next_page_params(response: httpx.Response) -> Optional[httpx.QueryParams]:
    """Query parameters of the ``next`` link, or None on the last page."""
    link = response.links.get("next")
    if not link or not link.get("url"):
        return None
    try:
        return httpx.URL(link["url"]).params
    except (httpx.InvalidURL, ValueError) as exc:
        raise DecodingError(
            f"invalid next link: {exc}",
            body=response.headers.get("Link", "").encode("utf-8"),
            status=response.status_code,
        ) from exc


def _is_final_client_error(error: BaseException) -> bool:
    if not isinstance(error, ResponseError):
        return False
    return 400 <= error.status < 500 and error.status != 429


def _cancelled(error: BaseException) -> bool:
    if isinstance(error, OperationCancelled):
        return True
    if isinstance(error, RetryExhaustedError):
        return isinstance(error.last_error, OperationCancelled)
    return False


class ShopClient:
    """HTTP client for one store.

    The logger is an explicit collaborator; quota state is per instance and
    never shared between stores.
    """

    def __init__(
        self,
        store_id: str,
        username: str,
        password: str,
        *,
        options: Optional[ClientOptions] = None,
        logger: Optional[TaskLogger] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], Any] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not store_id:
            raise ValueError("store_id is required")
        self.store_id = store_id
        self.options = options or ClientOptions()
        self.log = logger or TaskLogger(__name__, store=store_id)
        self.quota = QuotaTracker()
        self._auth = httpx.BasicAuth(username, password)
        self._sleep = sleep
        self._backoff = exponential_backoff(
            self.options.retry_delay, self.options.retry_jitter, rng=rng
        )
        self._http = httpx.Client(
            timeout=self.options.timeout,
            transport=transport,
            follow_redirects=False,
        )

    # -- lifecycle -------------------------------------------------------

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ShopClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- addressing ------------------------------------------------------

    @property
    def base_url(self) -> httpx.URL:
        return httpx.URL(f"{self.options.scheme}://{self.store_id}.{self.options.api_host}")

    @property
    def quota_snapshot(self) -> QuotaSnapshot:
        return self.quota.snapshot

    def path(self, resource: str) -> str:
        """Versioned API path for a resource, e.g. ``admin/api/2020-04/orders``."""
        return "/".join([PATH_PREFIX, self.options.api_version, resource.strip("/")])

    def build_request(self, path: str, params: Optional[Params] = None) -> httpx.Request:
        url = self.base_url.join(path)
        if params:
            url = url.copy_merge_params(params)
        return self._http.build_request(
            "GET",
            url,
            headers={
                "Accept": MEDIA_JSON,
                "Content-Type": MEDIA_JSON,
                "User-Agent": self.options.user_agent,
            },
        )

    # -- request execution -----------------------------------------------

    def _retry_policy(self) -> RetryPolicy:
        retry_count = self.options.retry_count

        def delay_fn(attempt: int, error: BaseException) -> Tuple[float, bool]:
            if isinstance(error, OperationCancelled):
                return 0.0, False
            if isinstance(error, RateLimitError):
                return error.retry_after, True
            if _is_final_client_error(error):
                return 0.0, False
            return self._backoff(attempt - 1), True

        def on_retry(attempt: int, delay: float, error: BaseException) -> None:
            self.log.info(
                "attempt %d/%d: %s; sleeping %.3fs", attempt, retry_count, error, delay
            )

        return RetryPolicy(max_attempts=retry_count, delay_fn=delay_fn, on_retry=on_retry)

    def get(
        self,
        path: str,
        params: Optional[Params] = None,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> httpx.Response:
        """GET a path relative to the store's base URL, with retries.

        Raises:
            RetryExhaustedError: Aggregating every failed attempt
        """
        request = self.build_request(path, params)
        auth = self._auth if request.url.host == self.base_url.host else None
        self.log.info("%s: %s", request.method, request.url)

        def once() -> httpx.Response:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                response = self._http.send(request, auth=auth)
            except httpx.TransportError as exc:
                raise TransportError(
                    f"{type(exc).__name__}: {exc}", url=str(request.url), cause=exc
                ) from exc

            self.log.debug("RECV %03d: %s", response.status_code, response.reason_phrase)
            if response.content:
                self.log.trace("RESP: %s", response.text)

            try:
                self.quota.update(response)
            except DecodingError as exc:
                self.log.warning("error updating rate limit info: %s", exc)

            check_response(response)
            return response

        return run_with_retry(
            once,
            self._retry_policy(),
            operation_name=f"GET {request.url.path}",
            sleep=self._sleep,
        )

    # -- collection operations -------------------------------------------

    def count(
        self,
        resource: str,
        params: Optional[Params] = None,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        """Number of objects in a collection matching ``params``."""
        filters = {
            k: v
            for k, v in httpx.QueryParams(params or {}).multi_items()
            if k not in ("limit", "page_info", "fields")
        }
        response = self.get(self.path(resource) + "/count.json", filters, cancel=cancel)
        try:
            payload = response.json()
            return int(payload["count"])
        except (ValueError, KeyError, TypeError) as exc:
            raise DecodingError(
                f"invalid count body: {exc}",
                body=response.content,
                status=response.status_code,
            ) from exc

    def _expected_count(
        self,
        resource: str,
        params: Optional[Params],
        cancel: Optional[CancellationToken],
    ) -> Optional[int]:
        try:
            return self.count(resource, params, cancel=cancel)
        except (RetryExhaustedError, DecodingError) as exc:
            if not _cancelled(exc):
                self.log.warning("unable to count %s: %s", resource, exc)
            return None

    def _decode_page(self, response: httpx.Response, element: str) -> List[Any]:
        try:
            resource = response.json()
        except ValueError as exc:
            raise DecodingError(
                f"invalid page body: {exc}",
                body=response.content,
                status=response.status_code,
            ) from exc
        if not isinstance(resource, dict):
            raise DecodingError(
                "page body is not a JSON object",
                body=response.content,
                status=response.status_code,
            )
        values = resource.get(element) or []
        if not isinstance(values, list):
            raise DecodingError(
                f"expected a list under {element!r}",
                body=response.content,
                status=response.status_code,
            )
        return values

    def _log_page_info(self, params: httpx.QueryParams) -> None:
        page_info = params.get("page_info")
        if not page_info:
            return
        try:
            decoded = base64.b64decode(page_info + "=" * (-len(page_info) % 4), validate=True)
        except (binascii.Error, ValueError) as exc:
            self.log.warning("error decoding page info: %s", exc)
            return
        self.log.debug("next page info: %s", decoded.decode("utf-8", errors="replace"))

    def paginate(
        self,
        resource: str,
        params: Optional[Params] = None,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> Iterator[Record]:
        """Lazily yield every record of a collection.

        The caller's ``params`` apply to the first request only; each
        following request uses exactly the query parameters of the previous
        response's ``next`` link. The sequence ends when a response has no
        ``next`` link, or silently when ``cancel`` fires.

        Raises:
            RetryExhaustedError: A request failed for good
            DecodingError: A page body could not be decoded
        """
        element = resource.strip("/").split("/")[-1]
        current: Params = httpx.QueryParams(params or {})
        try:
            limit = int(current.get("limit") or DEFAULT_PAGE_LIMIT)
        except ValueError:
            limit = DEFAULT_PAGE_LIMIT

        if cancel is not None and cancel.cancelled:
            return

        expected = self._expected_count(resource, current, cancel)
        if expected is not None:
            self.log.info("expecting %d records", expected)
            pages: Union[int, str] = max(1, math.ceil(expected / max(limit, 1)))
        else:
            pages = "?"

        rel_path = self.path(resource) + ".json"
        page = 0
        records = 0
        while True:
            if cancel is not None and cancel.cancelled:
                return

            page += 1
            self.log.info("fetching %s page %d of %s", element, page, pages)
            try:
                response = self.get(rel_path, current, cancel=cancel)
            except RetryExhaustedError as exc:
                if _cancelled(exc):
                    return
                raise

            for value in self._decode_page(response, element):
                records += 1
                yield Record.from_payload(value)

            following = next_page_params(response)
            if following is None:
                if expected is not None and expected != records:
                    self.log.warning("expected %d records but got %d", expected, records)
                return

            self._log_page_info(following)
            current = following
