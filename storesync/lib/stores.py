"""Store provider: the list of stores a run synchronizes.

Stores come from a JSON-lines file, one entry per line:

    {"id": "acme", "store_id": "acme-shop", "username": "key",
     "password": "${ACME_PASSWORD}", "file": "stores/acme.yaml"}

``id`` names the entry, ``store_id`` is the store's host prefix, ``file``
records where the entry came from. ``${VAR}`` references in the credential
fields are expanded from the environment. A malformed line is logged and
skipped so one bad entry does not block every other store.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Union

from storesync.lib.env import expand_fields
from storesync.lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["Store", "changelog_path", "load_stores", "parse_store"]

CREDENTIAL_FIELDS = ("username", "password")


@dataclass(frozen=True)
class Store:
    """One store and its API credentials.

    Attributes:
        id: Name of the entry (defaults to ``store_id``)
        store_id: Host prefix of the store's admin API
        username: API key
        password: API password
        provenance: Where the entry was defined
    """

    id: str
    store_id: str
    username: str
    password: str
    provenance: str = ""

    def __repr__(self) -> str:
        return (
            f"Store(id={self.id!r}, store_id={self.store_id!r}, "
            f"username={self.username!r}, password='***', provenance={self.provenance!r})"
        )


def changelog_path(output_dir: Union[str, Path], store_id: str, resource: str) -> Path:
    """Changelog location: ``{output_dir}/{store_id}/{resource}.jsonl``."""
    return Path(output_dir) / store_id / f"{resource.strip('/').replace('/', '_')}.jsonl"


def parse_store(entry: Dict[str, Any], *, source: str = "") -> Store:
    """Build a ``Store`` from one decoded entry.

    Raises:
        ConfigurationError: A required field is missing or a referenced
            environment variable is unset
    """
    entry = expand_fields(entry, CREDENTIAL_FIELDS)

    store_id = entry.get("store_id") or entry.get("id")
    if not store_id or not isinstance(store_id, str):
        raise ConfigurationError("store entry has no store_id", field="store_id")
    for name in CREDENTIAL_FIELDS:
        if not isinstance(entry.get(name), str) or not entry[name]:
            raise ConfigurationError(
                f"store entry {store_id!r} has no {name}",
                field=name,
                store=store_id,
            )

    return Store(
        id=str(entry.get("id") or store_id),
        store_id=store_id,
        username=entry["username"],
        password=entry["password"],
        provenance=str(entry.get("file") or source),
    )


def load_stores(path: Union[str, Path]) -> List[Store]:
    """Load every valid store entry from a JSON-lines file.

    Raises:
        ConfigurationError: The file does not exist or cannot be read
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(
            f"stores file not found: {path}",
            field="stores_file",
            value=str(path),
            suggestion="Pass --stores or set STORESYNC_STORES_FILE",
        )

    stores: List[Store] = []
    try:
        with open(path, "r", encoding="utf-8") as fh:
            for number, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                source = f"{path}:{number}"
                try:
                    entry = json.loads(line)
                    if not isinstance(entry, dict):
                        raise ValueError("entry is not a JSON object")
                    stores.append(parse_store(entry, source=source))
                except (ValueError, ConfigurationError) as exc:
                    logger.error("%s: skipping store entry: %s", source, exc)
    except OSError as exc:
        raise ConfigurationError(
            f"unable to read stores file: {exc}", field="stores_file", value=str(path)
        ) from exc

    logger.info("loaded %d stores from %s", len(stores), path)
    return stores
