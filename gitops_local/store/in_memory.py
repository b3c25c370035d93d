"""Module for in memory object store."""

from collections import defaultdict
from collections.abc import Callable, Iterable
import copy
from datetime import datetime, UTC
import itertools
import logging
from pathlib import Path
from typing import Any, DefaultDict

import aiofiles
import yaml

from gitops_local.manifest import NamedResource, resource_id_of, resource_sort_key
from gitops_local.exceptions import (
    AdmissionError,
    ConflictError,
    InputException,
    ObjectExistsError,
    ObjectNotFoundError,
)

from .store import Store, StoreEvent, Validator, STATUS_SUBRESOURCE_KINDS


_LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Server managed metadata that is not part of the desired state
_SERVER_FIELDS = ("resourceVersion", "generation", "creationTimestamp", "uid")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _spec_of(doc: dict[str, Any]) -> dict[str, Any]:
    """Everything except metadata and status, used to detect generation changes."""
    return {k: v for k, v in doc.items() if k not in ("metadata", "status")}


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Behaves like a kubernetes API server for the purposes of reconciliation:
    resource versions with compare-and-swap, generations, a status subresource
    for GitOpsConfig objects, finalizers and admission validators.
    """

    def __init__(
        self,
        supported_kinds: Iterable[str] | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the InMemoryStore.

        Args:
            supported_kinds: Kinds the store accepts, or None to accept any kind.
            clock: Source of creation and deletion timestamps.
        """
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._supported_kinds = set(supported_kinds) if supported_kinds else None
        self._clock = clock or _utcnow
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)
        self._validators: list[Validator] = []
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return a copy of the stored document, or None when absent."""
        if (obj := self._objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(obj)

    def create(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Create a new object and return the stored copy."""
        resource_id = self._admit(doc)
        if resource_id in self._objects:
            raise ObjectExistsError(f"Object {resource_id} already exists")
        obj = copy.deepcopy(doc)
        metadata = obj["metadata"]
        for key in _SERVER_FIELDS:
            metadata.pop(key, None)
        metadata.pop("deletionTimestamp", None)
        metadata["uid"] = str(next(self._uids))
        metadata["generation"] = 1
        metadata["creationTimestamp"] = self._clock().isoformat()
        metadata["resourceVersion"] = self._next_version()
        if resource_id.kind in STATUS_SUBRESOURCE_KINDS:
            obj.pop("status", None)
        _LOGGER.debug("Creating object %s", resource_id)
        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, obj)
        return copy.deepcopy(obj)

    def replace(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Fully replace an existing object and return the stored copy."""
        resource_id = self._admit(doc)
        existing = self._check_version(resource_id, doc)
        obj = copy.deepcopy(doc)
        metadata = obj["metadata"]
        existing_meta = existing["metadata"]
        for key in ("uid", "creationTimestamp", "deletionTimestamp"):
            if key in existing_meta:
                metadata[key] = existing_meta[key]
            else:
                metadata.pop(key, None)
        generation = existing_meta.get("generation", 1)
        if _spec_of(obj) != _spec_of(existing):
            generation += 1
        metadata["generation"] = generation
        if resource_id.kind in STATUS_SUBRESOURCE_KINDS:
            if "status" in existing:
                obj["status"] = copy.deepcopy(existing["status"])
            else:
                obj.pop("status", None)

        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            _LOGGER.debug("Finalizers cleared, removing object %s", resource_id)
            del self._objects[resource_id]
            self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)
            return copy.deepcopy(obj)

        metadata["resourceVersion"] = self._next_version()
        _LOGGER.debug("Replacing object %s", resource_id)
        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, obj)
        return copy.deepcopy(obj)

    def replace_status(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an existing object."""
        resource_id = resource_id_of(doc)
        existing = self._check_version(resource_id, doc)
        obj = copy.deepcopy(existing)
        obj["status"] = copy.deepcopy(doc.get("status") or {})
        obj["metadata"]["resourceVersion"] = self._next_version()
        _LOGGER.debug("Updating status of %s", resource_id)
        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.STATUS_UPDATED, resource_id, obj)
        return copy.deepcopy(obj)

    def delete(self, resource_id: NamedResource) -> bool:
        """Delete an object, returning False if it did not exist."""
        if (obj := self._objects.get(resource_id)) is None:
            return False
        metadata = obj["metadata"]
        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                _LOGGER.debug("Marking object %s for deletion", resource_id)
                metadata["deletionTimestamp"] = self._clock().isoformat()
                metadata["resourceVersion"] = self._next_version()
                self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, obj)
            return True
        _LOGGER.debug("Deleting object %s", resource_id)
        del self._objects[resource_id]
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)
        return True

    def list_objects(
        self,
        kind: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List stored documents, optionally filtered by kind, namespace and labels."""
        result = []
        for resource_id, obj in self._objects.items():
            if kind is not None and resource_id.kind != kind:
                continue
            if namespace is not None and resource_id.namespace != namespace:
                continue
            if labels:
                obj_labels = obj["metadata"].get("labels") or {}
                if any(obj_labels.get(k) != v for k, v in labels.items()):
                    continue
            result.append(copy.deepcopy(obj))
        return result

    def supports_kind(self, kind: str) -> bool:
        """Return True if the platform can resolve resources of this kind."""
        return self._supported_kinds is None or kind in self._supported_kinds

    def add_validator(self, validator: Validator) -> Callable[[], None]:
        """Register an admission check run before every create and replace."""

        def remove() -> None:
            if validator in self._validators:
                self._validators.remove(validator)

        self._validators.append(validator)
        return remove

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, dict[str, Any]], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a store event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush and event == StoreEvent.OBJECT_ADDED:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for resource_id, obj in list(self._objects.items()):
                callback(resource_id, copy.deepcopy(obj))

        return remove

    def dump(self) -> list[dict[str, Any]]:
        """Return every stored document, sorted by identity."""
        return [
            copy.deepcopy(self._objects[resource_id])
            for resource_id in sorted(
                self._objects, key=resource_sort_key
            )
        ]

    def _admit(self, doc: dict[str, Any]) -> NamedResource:
        try:
            resource_id = resource_id_of(doc)
        except InputException as err:
            raise AdmissionError(str(err)) from err
        if not self.supports_kind(resource_id.kind):
            raise AdmissionError(f"No matches for kind {resource_id.kind}")
        for validator in list(self._validators):
            validator(doc)
        return resource_id

    def _check_version(
        self, resource_id: NamedResource, doc: dict[str, Any]
    ) -> dict[str, Any]:
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        expected = doc["metadata"].get("resourceVersion")
        current = existing["metadata"]["resourceVersion"]
        if expected is not None and expected != current:
            raise ConflictError(
                f"Object {resource_id} has been modified (resourceVersion {expected} != {current})"
            )
        return existing

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)


async def load_store(path: Path, store: InMemoryStore | None = None) -> InMemoryStore:
    """Create a store seeded with the documents in a YAML state file."""
    store = store or InMemoryStore()
    async with aiofiles.open(str(path)) as state_file:
        content = await state_file.read()
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse state file {path}: {err}") from err
    for doc in docs:
        if not doc:
            continue
        if not isinstance(doc, dict):
            raise InputException(f"Expected a dictionary in {path}, found {type(doc)}")
        status = doc.get("status")
        stored = store.create(doc)
        if status and resource_id_of(stored).kind in STATUS_SUBRESOURCE_KINDS:
            stored["status"] = status
            store.replace_status(stored)
    return store


async def save_store(store: InMemoryStore, path: Path) -> None:
    """Write every document in the store to a YAML state file."""
    content = yaml.dump_all(store.dump(), sort_keys=False, explicit_start=True)
    async with aiofiles.open(str(path), mode="w") as state_file:
        await state_file.write(content)
