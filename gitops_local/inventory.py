"""Inventory of resources owned by configuration objects.

Each configuration object has at most one inventory entry: the set of resource
identities its most recent successful apply produced and the revision that
produced them. Entries are stored as `GitOpsInventory` objects next to their
owner and updated with compare-and-swap writes.
"""

from dataclasses import dataclass, field
import logging
from typing import Any

from .config import ApplierConfig
from .exceptions import (
    ConflictError,
    GitOpsException,
    InventoryCorruptionError,
    ObjectExistsError,
    ObjectNotFoundError,
)
from .manifest import (
    API_VERSION,
    INVENTORY_KIND,
    NamedResource,
    OWNER_LABEL,
    resource_sort_key,
)
from .retry import retry_on_conflict
from .store import Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "InventoryEntry",
    "InventoryStore",
]


@dataclass
class InventoryEntry:
    """Resources most recently produced by a configuration object."""

    owner: NamedResource
    revision: str | None = None
    resources: list[NamedResource] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.resources = sorted(set(self.resources), key=resource_sort_key)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.resources


def _inventory_id(owner: NamedResource) -> NamedResource:
    return NamedResource(INVENTORY_KIND, owner.namespace, owner.name)


def _owner_label(owner: NamedResource) -> str:
    return f"{owner.namespace}.{owner.name}"


def _parse_entry(doc: dict[str, Any]) -> InventoryEntry:
    spec = doc.get("spec")
    if not isinstance(spec, dict):
        raise InventoryCorruptionError(f"Inventory {doc.get('metadata')} missing spec")
    try:
        owner = NamedResource.parse(spec["owner"])
        resources = [NamedResource.parse(value) for value in spec.get("resources") or []]
    except (KeyError, TypeError, AttributeError, GitOpsException) as err:
        raise InventoryCorruptionError(
            f"Inventory {doc.get('metadata', {}).get('name')} is malformed: {err}"
        ) from err
    return InventoryEntry(owner=owner, revision=spec.get("revision"), resources=resources)


class InventoryStore:
    """Reads and writes inventory entries in the store."""

    def __init__(self, store: Store, config: ApplierConfig | None = None) -> None:
        """Initialize InventoryStore."""
        self._store = store
        self._config = config or ApplierConfig()

    def get(self, owner: NamedResource) -> InventoryEntry | None:
        """Return the entry for an owner, or None if it never applied anything.

        Raises:
            InventoryCorruptionError: If the stored entry cannot be parsed.
        """
        if (doc := self._store.get(_inventory_id(owner))) is None:
            return None
        entry = _parse_entry(doc)
        if entry.owner != owner:
            raise InventoryCorruptionError(
                f"Inventory for {owner} is recorded for {entry.owner}"
            )
        return entry

    def owners(self) -> dict[NamedResource, NamedResource]:
        """Map every inventoried resource to the configuration object owning it.

        Malformed entries are skipped here; they fail only their own owner
        through `get`.
        """
        owners: dict[NamedResource, NamedResource] = {}
        for doc in self._store.list_objects(kind=INVENTORY_KIND):
            try:
                entry = _parse_entry(doc)
            except InventoryCorruptionError as err:
                _LOGGER.warning("Ignoring inventory while resolving owners: %s", err)
                continue
            for resource_id in entry.resources:
                owners[resource_id] = entry.owner
        return owners

    def owner_of(self, resource_id: NamedResource) -> NamedResource | None:
        """Return the configuration object whose entry lists the resource."""
        return self.owners().get(resource_id)

    async def save(self, entry: InventoryEntry) -> None:
        """Persist an entry with a compare-and-swap write, retrying on conflict.

        Raises:
            InventoryCorruptionError: If another owner already lists one of the
                entry's resources.
            ConflictError: If every attempt lost against a concurrent write.
        """

        async def write() -> None:
            owners = self.owners()
            for resource_id in entry.resources:
                owner = owners.get(resource_id)
                if owner is not None and owner != entry.owner:
                    raise InventoryCorruptionError(
                        f"Resource {resource_id} is already owned by {owner}"
                    )
            current = self._store.get(_inventory_id(entry.owner))
            doc = self._to_doc(entry)
            if current is None:
                try:
                    self._store.create(doc)
                except ObjectExistsError as err:
                    raise ConflictError(str(err)) from err
                return
            doc["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]
            try:
                self._store.replace(doc)
            except ObjectNotFoundError as err:
                raise ConflictError(str(err)) from err

        await retry_on_conflict(
            write,
            self._config.conflict_backoff,
            description=f"inventory write for {entry.owner}",
        )
        _LOGGER.debug(
            "Saved inventory for %s with %d resources", entry.owner, len(entry.resources)
        )

    def delete(self, owner: NamedResource) -> None:
        """Remove the entry for an owner."""
        if self._store.delete(_inventory_id(owner)):
            _LOGGER.debug("Deleted inventory for %s", owner)

    def _to_doc(self, entry: InventoryEntry) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "owner": str(entry.owner),
            "resources": [str(resource_id) for resource_id in entry.resources],
        }
        if entry.revision is not None:
            spec["revision"] = entry.revision
        return {
            "apiVersion": API_VERSION,
            "kind": INVENTORY_KIND,
            "metadata": {
                "name": entry.owner.name,
                "namespace": entry.owner.namespace,
                "labels": {OWNER_LABEL: _owner_label(entry.owner)},
            },
            "spec": spec,
        }
