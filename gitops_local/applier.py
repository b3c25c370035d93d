"""Resource applier.

The applier converges live resources in the store with a rendered manifest
set, then records the new inventory entry for the owning configuration object.

A convergence pass:
1. Classifies rendered resources against the prior inventory entry as new or
   unchanged-target; prior resources missing from the render are removed.
2. Writes each rendered resource according to the ResourceHandlingMode.
3. Handles each removed resource according to the ResourceDeletionMode.
4. Persists the new inventory entry.

Creations and replacements always run before deletions. Every mutation is an
idempotent create, replace or delete so an interrupted pass is resumed by
applying the same manifest set again.
"""

from collections.abc import Awaitable, Callable
import copy
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any

from .config import ApplierConfig
from .exceptions import (
    AdmissionError,
    ApplyError,
    ConflictError,
    InventoryCorruptionError,
    ObjectExistsError,
    ObjectNotFoundError,
)
from .inventory import InventoryEntry, InventoryStore
from .manifest import (
    GitOpsConfig,
    NamedResource,
    OWNER_LABEL,
    RenderedManifestSet,
    RenderedResource,
    ResourceDeletionMode,
    ResourceHandlingMode,
)
from .retry import Backoff, retry_on_conflict
from .store import Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Action",
    "ApplyResult",
    "Classification",
    "ResourceApplier",
    "classify",
]

_SERVER_FIELDS = (
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "uid",
    "deletionTimestamp",
)


class Action(StrEnum):
    """What happened to a single resource during a convergence pass."""

    CREATED = "created"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    DELETED = "deleted"
    RELEASED = "released"
    ABSENT = "absent"


@dataclass
class Classification:
    """Rendered resources compared with the prior inventory entry."""

    new: list[NamedResource] = field(default_factory=list)
    unchanged_target: list[NamedResource] = field(default_factory=list)
    removed: list[NamedResource] = field(default_factory=list)


@dataclass
class ApplyResult:
    """Outcome of a convergence pass."""

    entry: InventoryEntry
    actions: dict[NamedResource, Action] = field(default_factory=dict)

    def with_action(self, action: Action) -> list[NamedResource]:
        """Resources that had the specified action applied, in apply order."""
        return [rid for rid, value in self.actions.items() if value == action]

    @property
    def created(self) -> list[NamedResource]:
        return self.with_action(Action.CREATED)

    @property
    def replaced(self) -> list[NamedResource]:
        return self.with_action(Action.REPLACED)

    @property
    def skipped(self) -> list[NamedResource]:
        return self.with_action(Action.SKIPPED)

    @property
    def deleted(self) -> list[NamedResource]:
        return self.with_action(Action.DELETED)

    @property
    def released(self) -> list[NamedResource]:
        return self.with_action(Action.RELEASED)

    @property
    def resource_count(self) -> int:
        return len(self.entry.resources)


def classify(
    manifest_set: RenderedManifestSet, prior: InventoryEntry | None
) -> Classification:
    """Compare the rendered identities with the prior inventory entry."""
    prior_ids = set(prior.resources) if prior else set()
    rendered = manifest_set.resource_ids
    rendered_ids = set(rendered)
    result = Classification()
    for resource_id in rendered:
        if resource_id in prior_ids:
            result.unchanged_target.append(resource_id)
        else:
            result.new.append(resource_id)
    if prior:
        result.removed = [rid for rid in prior.resources if rid not in rendered_ids]
    return result


def _desired_doc(resource: RenderedResource, owner_label: str) -> dict[str, Any]:
    doc = copy.deepcopy(resource.doc)
    metadata = doc.setdefault("metadata", {})
    for key in _SERVER_FIELDS:
        metadata.pop(key, None)
    labels = metadata.get("labels") or {}
    metadata["labels"] = {**labels, OWNER_LABEL: owner_label}
    doc.pop("status", None)
    return doc


def _comparable(doc: dict[str, Any]) -> dict[str, Any]:
    doc = copy.deepcopy(doc)
    for key in _SERVER_FIELDS:
        doc.get("metadata", {}).pop(key, None)
    doc.pop("status", None)
    return doc


@dataclass
class _Context:
    store: Store
    owner_label: str
    backoff: Backoff


Handler = Callable[[_Context, RenderedResource], Awaitable[Action]]
Remover = Callable[[_Context, NamedResource], Awaitable[Action]]


async def _create_only(ctx: _Context, resource: RenderedResource) -> Action:
    """Create the resource when absent, never touch an existing one."""
    if ctx.store.get(resource.resource_id) is not None:
        return Action.SKIPPED
    try:
        ctx.store.create(_desired_doc(resource, ctx.owner_label))
    except ObjectExistsError:
        return Action.SKIPPED
    except AdmissionError as err:
        raise ApplyError(resource.resource_id, str(err)) from err
    return Action.CREATED


async def _create_or_replace(ctx: _Context, resource: RenderedResource) -> Action:
    """Create the resource when absent, otherwise replace it entirely."""
    desired = _desired_doc(resource, ctx.owner_label)

    async def write() -> Action:
        current = ctx.store.get(resource.resource_id)
        try:
            if current is None:
                try:
                    ctx.store.create(desired)
                except ObjectExistsError as err:
                    raise ConflictError(str(err)) from err
                return Action.CREATED
            if _comparable(current) == desired:
                return Action.UNCHANGED
            doc = copy.deepcopy(desired)
            doc["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]
            try:
                ctx.store.replace(doc)
            except ObjectNotFoundError as err:
                raise ConflictError(str(err)) from err
            return Action.REPLACED
        except AdmissionError as err:
            raise ApplyError(resource.resource_id, str(err)) from err

    return await retry_on_conflict(
        write, ctx.backoff, description=f"apply of {resource.resource_id}"
    )


async def _delete_rendered(ctx: _Context, resource: RenderedResource) -> Action:
    """Delete a rendered resource from the target."""
    return await _delete(ctx, resource.resource_id)


async def _delete(ctx: _Context, resource_id: NamedResource) -> Action:
    if ctx.store.delete(resource_id):
        return Action.DELETED
    return Action.ABSENT


async def _release(ctx: _Context, resource_id: NamedResource) -> Action:
    """Leave the resource in place but drop the owner label."""

    async def write() -> Action:
        if (current := ctx.store.get(resource_id)) is None:
            return Action.ABSENT
        labels = current["metadata"].get("labels") or {}
        if labels.get(OWNER_LABEL) != ctx.owner_label:
            return Action.RELEASED
        del labels[OWNER_LABEL]
        if labels:
            current["metadata"]["labels"] = labels
        else:
            current["metadata"].pop("labels", None)
        try:
            ctx.store.replace(current)
        except ObjectNotFoundError:
            return Action.ABSENT
        except AdmissionError as err:
            raise ApplyError(resource_id, str(err)) from err
        return Action.RELEASED

    return await retry_on_conflict(write, ctx.backoff, description=f"release of {resource_id}")


HANDLING_POLICY: dict[ResourceHandlingMode, Handler] = {
    ResourceHandlingMode.CREATE: _create_only,
    ResourceHandlingMode.REPLACE: _create_or_replace,
    ResourceHandlingMode.DELETE: _delete_rendered,
}

DELETION_POLICY: dict[ResourceDeletionMode, Remover] = {
    ResourceDeletionMode.DELETE: _delete,
    ResourceDeletionMode.RETAIN: _release,
}


class ResourceApplier:
    """Applies rendered manifest sets and maintains the inventory."""

    def __init__(
        self,
        store: Store,
        inventory: InventoryStore,
        config: ApplierConfig | None = None,
    ) -> None:
        """Initialize the applier."""
        self._store = store
        self._inventory = inventory
        self._config = config or ApplierConfig()

    async def apply(
        self,
        owner: GitOpsConfig,
        manifest_set: RenderedManifestSet,
        prior: InventoryEntry | None,
    ) -> ApplyResult:
        """Converge the target with the manifest set and persist the new entry.

        Raises:
            ApplyError: If the target rejects a resource or the resource is owned
                by another configuration object. Resources written before the
                failure stay in place and are recorded in the inventory.
            ConflictError: If a resource kept changing concurrently.
            InventoryCorruptionError: If the prior entry cannot be resolved.
        """
        handling_mode = owner.spec.resource_handling_mode
        deletion_mode = owner.spec.resource_deletion_mode
        self._check_resolvable(prior)
        classification = classify(manifest_set, prior)
        self._check_ownership(owner, classification.new)
        _LOGGER.info(
            "Applying %d resources for %s (%s/%s): %d new, %d removed",
            len(manifest_set.resources),
            owner.namespaced_name,
            handling_mode,
            deletion_mode,
            len(classification.new),
            len(classification.removed),
        )

        ctx = _Context(self._store, owner.owner_label, self._config.conflict_backoff)
        handler = HANDLING_POLICY[handling_mode]
        remover = DELETION_POLICY[deletion_mode]
        actions: dict[NamedResource, Action] = {}
        try:
            for resource in manifest_set.resources:
                actions[resource.resource_id] = await handler(ctx, resource)
                _LOGGER.debug("%s %s", actions[resource.resource_id], resource.resource_id)
            for resource_id in classification.removed:
                actions[resource_id] = await remover(ctx, resource_id)
                _LOGGER.debug("%s %s", actions[resource_id], resource_id)
        except (ApplyError, ConflictError):
            await self._save_partial(owner, prior, actions)
            raise

        if handling_mode == ResourceHandlingMode.DELETE:
            owned: list[NamedResource] = []
        else:
            owned = manifest_set.resource_ids
        entry = InventoryEntry(
            owner=owner.resource_id,
            revision=manifest_set.revision,
            resources=owned,
        )
        await self._inventory.save(entry)
        return ApplyResult(entry=entry, actions=actions)

    async def cleanup(
        self, owner: GitOpsConfig, entry: InventoryEntry | None
    ) -> dict[NamedResource, Action]:
        """Handle every owned resource per the deletion mode and drop the entry."""
        self._check_resolvable(entry)
        remover = DELETION_POLICY[owner.spec.resource_deletion_mode]
        ctx = _Context(self._store, owner.owner_label, self._config.conflict_backoff)
        actions: dict[NamedResource, Action] = {}
        for resource_id in entry.resources if entry else ():
            actions[resource_id] = await remover(ctx, resource_id)
            _LOGGER.debug("%s %s", actions[resource_id], resource_id)
        self._inventory.delete(owner.resource_id)
        _LOGGER.info(
            "Cleaned up %d resources for %s (%s)",
            len(actions),
            owner.namespaced_name,
            owner.spec.resource_deletion_mode,
        )
        return actions

    def _check_resolvable(self, entry: InventoryEntry | None) -> None:
        for resource_id in entry.resources if entry else ():
            if not self._store.supports_kind(resource_id.kind):
                raise InventoryCorruptionError(
                    f"Inventory for {entry.owner} references unresolvable kind {resource_id.kind} ({resource_id})"  # type: ignore[union-attr]
                )

    def _check_ownership(
        self, owner: GitOpsConfig, new: list[NamedResource]
    ) -> None:
        owners = self._inventory.owners()
        for resource_id in new:
            current = owners.get(resource_id)
            if current is not None and current != owner.resource_id:
                raise ApplyError(resource_id, f"resource is owned by {current}")

    async def _save_partial(
        self,
        owner: GitOpsConfig,
        prior: InventoryEntry | None,
        actions: dict[NamedResource, Action],
    ) -> None:
        """Record resources written before a failure so they stay owned."""
        written = [
            rid
            for rid, action in actions.items()
            if action
            in (Action.CREATED, Action.REPLACED, Action.UNCHANGED, Action.SKIPPED)
        ]
        dropped = {
            rid
            for rid, action in actions.items()
            if action in (Action.DELETED, Action.RELEASED, Action.ABSENT)
        }
        resources = [rid for rid in (prior.resources if prior else []) if rid not in dropped]
        if not written and len(resources) == len(prior.resources if prior else []):
            return
        _LOGGER.debug("Recording partial apply for %s", owner.namespaced_name)
        await self._inventory.save(
            InventoryEntry(
                owner=owner.resource_id,
                revision=prior.revision if prior else None,
                resources=resources + written,
            )
        )
