"""Shared test helpers."""

from typing import Any, Dict, Optional

import httpx


def json_response(
    status: int = 200,
    body: Any = None,
    *,
    next_url: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    """Build a JSON response, optionally carrying a ``next`` Link header."""
    all_headers = dict(headers or {})
    if next_url:
        all_headers["Link"] = f'<{next_url}>; rel="next"'
    if body is None:
        return httpx.Response(status, headers=all_headers)
    return httpx.Response(status, json=body, headers=all_headers)
