"""
The store module is the interface to the target environment's object storage.

- Uses NamedResource as the key for all objects.
- Stores raw kubernetes style documents with resource versions used for
  optimistic concurrency (compare-and-swap) updates.
- Notifies listeners when objects are added, updated, deleted or have their
  status replaced.

This abstract interface allows for various implementations (in-memory, a live
cluster, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore, load_store, save_store

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "load_store",
    "save_store",
]
