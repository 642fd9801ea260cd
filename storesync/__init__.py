"""Incremental store synchronization.

Pulls paginated collections (orders, products, customers, ...) from the
store admin API into per-resource JSON-lines changelogs, and compacts
those changelogs into timestamp-ordered, deduplicated files.

Usage:
    python -m storesync sync --stores stores.jsonl --output ./out
    python -m storesync compact out/acme/orders.jsonl
"""

__version__ = "1.0.0"

from storesync.lib.api import ClientOptions, ShopClient
from storesync.lib.compaction import DuplicatePolicy, compact_file, reorder
from storesync.lib.sync import SyncJob

__all__ = [
    "__version__",
    "ClientOptions",
    "DuplicatePolicy",
    "ShopClient",
    "SyncJob",
    "compact_file",
    "reorder",
]
