"""Pytest configuration and fixtures."""

import json
from pathlib import Path
from typing import Any, Callable, List

import httpx
import pytest

from storesync.lib.api import ClientOptions, ShopClient


@pytest.fixture
def sleeps() -> List[float]:
    """Delays passed to the client's sleep function."""
    return []


@pytest.fixture
def make_client(sleeps):
    """Factory for clients talking to an ``httpx.MockTransport`` handler."""
    clients: List[ShopClient] = []

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        store_id: str = "acme",
        **options: Any,
    ) -> ShopClient:
        options.setdefault("retry_delay", 0.1)
        options.setdefault("retry_jitter", 0)
        client = ShopClient(
            store_id,
            "key",
            "secret",
            options=ClientOptions(**options),
            transport=httpx.MockTransport(handler),
            sleep=sleeps.append,
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.close()


@pytest.fixture
def write_changelog(tmp_path):
    """Write JSON-lines content (objects or raw strings) to a changelog file."""

    def _write(lines: List[Any], name: str = "orders.jsonl") -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        text = "".join(
            (line if isinstance(line, str) else json.dumps(line)) + "\n" for line in lines
        )
        path.write_bytes(text.encode("utf-8"))
        return path

    return _write
