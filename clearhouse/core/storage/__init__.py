"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Claims and auctions
- Bids
- Maturity payments
- Per-auction settlement leases
"""

from clearhouse.core.storage.sqlite_adapter import SQLiteAdapter
from clearhouse.core.storage.storage_manager import StorageManager, new_id

__all__ = ["SQLiteAdapter", "StorageManager", "new_id"]
