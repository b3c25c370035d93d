"""Store module for the target environment's object storage."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from gitops_local.manifest import GITOPS_CONFIG_KIND, NamedResource

# Kinds whose status is only written through replace_status
STATUS_SUBRESOURCE_KINDS: set[str] = set(
    {
        GITOPS_CONFIG_KIND,
    }
)

Validator = Callable[[dict[str, Any]], None]


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    OBJECT_DELETED = "object_deleted"
    STATUS_UPDATED = "status_updated"


class Store(ABC):
    """Abstract object store of a resource-orchestration platform.

    Objects are raw kubernetes style documents keyed by NamedResource. Every
    write assigns a new `metadata.resourceVersion`; a write that carries a
    `resourceVersion` is a compare-and-swap against the stored version.
    """

    @abstractmethod
    def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return a copy of the stored document, or None when absent."""

    @abstractmethod
    def create(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Create a new object and return the stored copy.

        Raises:
            ObjectExistsError: If the object already exists.
            AdmissionError: If the document is rejected.
        """

    @abstractmethod
    def replace(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Fully replace an existing object and return the stored copy.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the document's resourceVersion is stale.
            AdmissionError: If the document is rejected.
        """

    @abstractmethod
    def replace_status(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an existing object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the document's resourceVersion is stale.
        """

    @abstractmethod
    def delete(self, resource_id: NamedResource) -> bool:
        """Delete an object, returning False if it did not exist.

        Objects with finalizers are only marked with a deletionTimestamp; they
        are removed once their finalizers are cleared with `replace`.
        """

    @abstractmethod
    def list_objects(
        self,
        kind: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List stored documents, optionally filtered by kind, namespace and labels."""

    @abstractmethod
    def supports_kind(self, kind: str) -> bool:
        """Return True if the platform can resolve resources of this kind."""

    @abstractmethod
    def add_validator(self, validator: Validator) -> Callable[[], None]:
        """Register an admission check run before every create and replace.

        Returns a callable that removes the validator.
        """

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, dict[str, Any]], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a store event.

        When `flush` is set, the callback is invoked for every object already in
        the store (only meaningful for OBJECT_ADDED). Returns a callable that
        removes the listener.
        """
