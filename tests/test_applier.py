"""Tests for the resource applier."""

from typing import Any

import pytest

from gitops_local.applier import Action, ResourceApplier, classify
from gitops_local.exceptions import (
    AdmissionError,
    ApplyError,
    InventoryCorruptionError,
)
from gitops_local.inventory import InventoryEntry, InventoryStore
from gitops_local.manifest import (
    GitOpsConfig,
    INVENTORY_KIND,
    NamedResource,
    OWNER_LABEL,
    RenderedManifestSet,
    RenderedResource,
)
from gitops_local.store import InMemoryStore

SETTINGS = NamedResource("ConfigMap", "apps", "settings")
DEPLOYMENT = NamedResource("Deployment", "apps", "web")
SERVICE = NamedResource("Service", "apps", "web")


def config_map(name: str = "settings", value: str = "1") -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": "apps"},
        "data": {"value": value},
    }


def deployment(replicas: int = 1) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "apps"},
        "spec": {"replicas": replicas},
    }


def service() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "web", "namespace": "apps"},
        "spec": {"ports": [{"port": 80}]},
    }


def manifest_set(*docs: dict[str, Any], revision: str = "t1") -> RenderedManifestSet:
    return RenderedManifestSet(
        resources=[RenderedResource.parse_doc(doc) for doc in docs],
        template_revision=revision,
        parameter_revision="p1",
    )


@pytest.fixture
def inventory(store: InMemoryStore) -> InventoryStore:
    return InventoryStore(store)


@pytest.fixture
def applier(store: InMemoryStore, inventory: InventoryStore) -> ResourceApplier:
    return ResourceApplier(store, inventory)


@pytest.fixture
def owner(config_doc: Any) -> GitOpsConfig:
    return GitOpsConfig.parse_doc(config_doc())


def test_classify() -> None:
    """Test rendered identities are compared with the prior entry."""
    prior = InventoryEntry(
        NamedResource("GitOpsConfig", "apps", "app"), "t0/p1", [SETTINGS, SERVICE]
    )
    result = classify(manifest_set(config_map(), deployment()), prior)
    assert result.new == [DEPLOYMENT]
    assert result.unchanged_target == [SETTINGS]
    assert result.removed == [SERVICE]

    result = classify(manifest_set(config_map()), None)
    assert result.new == [SETTINGS]
    assert result.removed == []


async def test_apply_creates_and_labels(
    applier: ResourceApplier,
    inventory: InventoryStore,
    store: InMemoryStore,
    owner: GitOpsConfig,
) -> None:
    """Test an initial apply creates every resource and records the inventory."""
    result = await applier.apply(owner, manifest_set(config_map(), deployment()), None)
    assert result.created == [SETTINGS, DEPLOYMENT]
    assert result.resource_count == 2

    obj = store.get(SETTINGS)
    assert obj
    assert obj["metadata"]["labels"] == {OWNER_LABEL: "apps.app"}
    assert obj["data"] == {"value": "1"}

    entry = inventory.get(owner.resource_id)
    assert entry == InventoryEntry(owner.resource_id, "t1/p1", [SETTINGS, DEPLOYMENT])


async def test_apply_idempotent(
    applier: ResourceApplier, store: InMemoryStore, owner: GitOpsConfig
) -> None:
    """Test applying the same manifest set twice does not write resources again."""
    rendered = manifest_set(config_map(), deployment())
    first = await applier.apply(owner, rendered, None)
    versions = {
        rid: store.get(rid)["metadata"]["resourceVersion"]  # type: ignore[index]
        for rid in (SETTINGS, DEPLOYMENT)
    }

    second = await applier.apply(owner, rendered, first.entry)
    assert second.with_action(Action.UNCHANGED) == [SETTINGS, DEPLOYMENT]
    assert second.entry == first.entry
    assert {
        rid: store.get(rid)["metadata"]["resourceVersion"]  # type: ignore[index]
        for rid in (SETTINGS, DEPLOYMENT)
    } == versions


async def test_replace_updates_drifted_resources(
    applier: ResourceApplier, store: InMemoryStore, owner: GitOpsConfig
) -> None:
    """Test Replace mode overwrites changes made outside of the applier."""
    first = await applier.apply(owner, manifest_set(config_map(), deployment()), None)

    drifted = store.get(DEPLOYMENT)
    assert drifted
    drifted["spec"]["replicas"] = 5
    drifted["metadata"]["annotations"] = {"edited": "true"}
    store.replace(drifted)

    result = await applier.apply(
        owner, manifest_set(config_map(value="2"), deployment()), first.entry
    )
    assert result.replaced == [SETTINGS, DEPLOYMENT]
    assert store.get(SETTINGS)["data"] == {"value": "2"}  # type: ignore[index]
    obj = store.get(DEPLOYMENT)
    assert obj
    assert obj["spec"] == {"replicas": 1}
    assert "annotations" not in obj["metadata"]


async def test_create_mode_skips_existing(
    store: InMemoryStore, applier: ResourceApplier, config_doc: Any
) -> None:
    """Test Create mode leaves resources that already exist untouched."""
    store.create(config_map(value="manual"))
    owner = GitOpsConfig.parse_doc(config_doc(handling="Create"))

    result = await applier.apply(owner, manifest_set(config_map(), deployment()), None)
    assert result.skipped == [SETTINGS]
    assert result.created == [DEPLOYMENT]
    obj = store.get(SETTINGS)
    assert obj
    assert obj["data"] == {"value": "manual"}
    assert "labels" not in obj["metadata"]
    # Skipped resources are still recorded
    assert result.entry.resources == [SETTINGS, DEPLOYMENT]


async def test_removed_resources_deleted(
    applier: ResourceApplier, store: InMemoryStore, owner: GitOpsConfig
) -> None:
    """Test resources dropped from the render are deleted."""
    first = await applier.apply(
        owner, manifest_set(config_map(), deployment(), service()), None
    )
    result = await applier.apply(
        owner, manifest_set(config_map(), deployment(), revision="t2"), first.entry
    )
    assert result.deleted == [SERVICE]
    assert store.get(SERVICE) is None
    assert result.entry == InventoryEntry(
        owner.resource_id, "t2/p1", [SETTINGS, DEPLOYMENT]
    )

    # A removed resource already gone is not an error
    prior = InventoryEntry(owner.resource_id, "t2/p1", [SETTINGS, DEPLOYMENT, SERVICE])
    result = await applier.apply(owner, manifest_set(config_map(), deployment()), prior)
    assert result.actions[SERVICE] == Action.ABSENT


async def test_removed_resources_retained(
    applier: ResourceApplier, store: InMemoryStore, config_doc: Any
) -> None:
    """Test Retain mode releases dropped resources instead of deleting them."""
    owner = GitOpsConfig.parse_doc(config_doc(deletion="Retain"))
    first = await applier.apply(owner, manifest_set(config_map(), service()), None)

    result = await applier.apply(owner, manifest_set(config_map()), first.entry)
    assert result.released == [SERVICE]
    obj = store.get(SERVICE)
    assert obj
    assert "labels" not in obj["metadata"]
    assert result.entry.resources == [SETTINGS]


async def test_delete_handling_mode(
    applier: ResourceApplier,
    inventory: InventoryStore,
    store: InMemoryStore,
    config_doc: Any,
) -> None:
    """Test Delete handling mode removes the rendered resources."""
    owner = GitOpsConfig.parse_doc(config_doc())
    first = await applier.apply(owner, manifest_set(config_map(), deployment()), None)

    owner = GitOpsConfig.parse_doc(config_doc(handling="Delete"))
    result = await applier.apply(
        owner, manifest_set(config_map(), deployment()), first.entry
    )
    assert result.deleted == [SETTINGS, DEPLOYMENT]
    assert store.get(SETTINGS) is None
    assert store.get(DEPLOYMENT) is None
    assert result.resource_count == 0
    assert inventory.get(owner.resource_id) == InventoryEntry(
        owner.resource_id, "t1/p1", []
    )


async def test_creates_before_deletes(
    applier: ResourceApplier, store: InMemoryStore, owner: GitOpsConfig
) -> None:
    """Test new resources are written before removed resources are deleted."""
    first = await applier.apply(owner, manifest_set(config_map("old")), None)
    order: list[str] = []
    store.add_validator(lambda doc: order.append(f"write {doc['metadata']['name']}"))
    original_delete = store.delete

    def record_delete(resource_id: NamedResource) -> bool:
        if resource_id.kind != INVENTORY_KIND:
            order.append(f"delete {resource_id.name}")
        return original_delete(resource_id)

    store.delete = record_delete  # type: ignore[method-assign]
    await applier.apply(owner, manifest_set(config_map("new"), service()), first.entry)
    assert order[:3] == ["write new", "write web", "delete old"]


async def test_rejected_resource_records_partial_apply(
    applier: ResourceApplier,
    inventory: InventoryStore,
    store: InMemoryStore,
    owner: GitOpsConfig,
) -> None:
    """Test resources written before a rejection stay owned."""

    def reject_services(doc: dict[str, Any]) -> None:
        if doc["kind"] == "Service":
            raise AdmissionError("services are not allowed")

    store.add_validator(reject_services)
    with pytest.raises(ApplyError, match="services are not allowed") as exc_info:
        await applier.apply(
            owner, manifest_set(config_map(), service(), deployment()), None
        )
    assert exc_info.value.resource_id == SERVICE
    assert store.get(SETTINGS)
    assert store.get(DEPLOYMENT) is None
    entry = inventory.get(owner.resource_id)
    assert entry
    assert entry.resources == [SETTINGS]
    assert entry.revision is None


async def test_resource_owned_by_other_config(
    applier: ResourceApplier,
    store: InMemoryStore,
    owner: GitOpsConfig,
    config_doc: Any,
) -> None:
    """Test a config can not take over resources listed by another config."""
    other = GitOpsConfig.parse_doc(config_doc(name="other"))
    await applier.apply(other, manifest_set(config_map()), None)

    with pytest.raises(ApplyError, match="is owned by GitOpsConfig/apps/other"):
        await applier.apply(owner, manifest_set(config_map(), deployment()), None)
    assert store.get(DEPLOYMENT) is None


async def test_unresolvable_inventory(config_doc: Any) -> None:
    """Test an inventory entry naming an unknown kind is reported."""
    store = InMemoryStore(supported_kinds=["ConfigMap", INVENTORY_KIND])
    applier = ResourceApplier(store, InventoryStore(store))
    owner = GitOpsConfig.parse_doc(config_doc())
    prior = InventoryEntry(
        owner.resource_id, "t0/p1", [NamedResource("Widget", "apps", "w")]
    )
    with pytest.raises(InventoryCorruptionError, match="unresolvable kind Widget"):
        await applier.apply(owner, manifest_set(config_map()), prior)
    assert store.get(SETTINGS) is None


async def test_cleanup(
    applier: ResourceApplier,
    inventory: InventoryStore,
    store: InMemoryStore,
    owner: GitOpsConfig,
) -> None:
    """Test cleanup removes every owned resource and the entry."""
    result = await applier.apply(owner, manifest_set(config_map(), deployment()), None)
    store.delete(DEPLOYMENT)

    actions = await applier.cleanup(owner, result.entry)
    assert actions == {SETTINGS: Action.DELETED, DEPLOYMENT: Action.ABSENT}
    assert store.get(SETTINGS) is None
    assert inventory.get(owner.resource_id) is None

    # Nothing applied yet
    assert await applier.cleanup(owner, None) == {}


async def test_create_mode_deletes_dropped_existing_resource(
    store: InMemoryStore, applier: ResourceApplier, config_doc: Any
) -> None:
    """Test a pre-existing resource left untouched in Create mode is still pruned."""
    store.create(config_map(value="manual"))
    owner = GitOpsConfig.parse_doc(config_doc(handling="Create", deletion="Delete"))

    first = await applier.apply(owner, manifest_set(config_map(), deployment()), None)
    assert first.skipped == [SETTINGS]
    assert store.get(SETTINGS)["data"] == {"value": "manual"}  # type: ignore[index]

    result = await applier.apply(
        owner, manifest_set(deployment(), revision="t2"), first.entry
    )
    assert result.deleted == [SETTINGS]
    assert store.get(SETTINGS) is None
    assert store.get(DEPLOYMENT)
    assert result.entry.resources == [DEPLOYMENT]


async def test_partial_apply_records_skipped(
    store: InMemoryStore,
    applier: ResourceApplier,
    inventory: InventoryStore,
    config_doc: Any,
) -> None:
    """Test a failed Create pass records skipped resources like a full pass."""
    store.create(config_map(value="manual"))
    owner = GitOpsConfig.parse_doc(config_doc(handling="Create"))

    def reject_services(doc: dict[str, Any]) -> None:
        if doc["kind"] == "Service":
            raise AdmissionError("services are not allowed")

    store.add_validator(reject_services)
    with pytest.raises(ApplyError, match="services are not allowed"):
        await applier.apply(
            owner, manifest_set(config_map(), service(), deployment()), None
        )
    entry = inventory.get(owner.resource_id)
    assert entry
    assert entry.resources == [SETTINGS]
    assert entry.revision is None


async def test_malformed_inventory_of_other_config(
    store: InMemoryStore,
    applier: ResourceApplier,
    inventory: InventoryStore,
    owner: GitOpsConfig,
) -> None:
    """Test a malformed entry only fails its own owner."""
    store.create(
        {
            "apiVersion": "gitops.local/v1alpha1",
            "kind": INVENTORY_KIND,
            "metadata": {"name": "broken", "namespace": "apps"},
            "spec": {"owner": "not-a/valid/id/at/all", "resources": []},
        }
    )

    result = await applier.apply(owner, manifest_set(config_map()), None)
    assert result.created == [SETTINGS]
    assert inventory.get(owner.resource_id) == result.entry

    broken = NamedResource("GitOpsConfig", "apps", "broken")
    with pytest.raises(InventoryCorruptionError, match="malformed"):
        inventory.get(broken)
