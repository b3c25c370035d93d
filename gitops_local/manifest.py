"""Representation of GitOps configuration objects and rendered resources.

A `GitOpsConfig` is the declarative unit of desired state: it names a template
source and a parameter source in git, the image that renders them, and the
policies used when applying the rendered resources to the target environment.

Documents follow the shape of a Kubernetes custom resource:
```yaml
apiVersion: gitops.local/v1alpha1
kind: GitOpsConfig
metadata:
  name: hello-world
  namespace: apps
spec:
  templateSource:
    uri: https://github.com/example/deploy
    ref: main
    contextDir: templates/hello
  parameterSource:
    uri: https://github.com/example/deploy
    ref: main
    contextDir: params/prod
  triggers:
  - type: Change
  templateProcessorImage: quay.io/example/processor:latest
  resourceHandlingMode: Replace
  resourceDeletionMode: Delete
  serviceAccountRef: deployer
```
"""

import copy
from dataclasses import dataclass, field
from enum import StrEnum
import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue

from .exceptions import InputException

__all__ = [
    "read_configs",
    "NamedResource",
    "GitConfig",
    "GitOpsTrigger",
    "GitOpsConfig",
    "GitOpsConfigSpec",
    "GitOpsConfigStatus",
    "RenderedResource",
    "RenderedManifestSet",
]

_LOGGER = logging.getLogger(__name__)


API_GROUP = "gitops.local"
API_VERSION = f"{API_GROUP}/v1alpha1"
GITOPS_CONFIG_KIND = "GitOpsConfig"
INVENTORY_KIND = "GitOpsInventory"
JOB_KIND = "Job"
DEFAULT_NAMESPACE = "default"
DEFAULT_REF = "master"
DEFAULT_SERVICE_ACCOUNT = "gitops-local"
DEFAULT_TEMPLATE_PROCESSOR_IMAGE = "quay.io/gitops-local/processor-base:latest"

INITIALIZED_ANNOTATION = f"{API_GROUP}/initialized"
RECONCILE_REQUESTED_ANNOTATION = f"{API_GROUP}/reconcile-requested-at"
FINALIZER = f"{API_GROUP}/finalizer"
OWNER_LABEL = f"{API_GROUP}/owner"

# Kinds that are never namespaced, so no default namespace is applied.
CLUSTER_SCOPED_KINDS = {
    "Namespace",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "PersistentVolume",
    "StorageClass",
    "PriorityClass",
    "ValidatingWebhookConfiguration",
    "MutatingWebhookConfiguration",
}


class ResourceHandlingMode(StrEnum):
    """How rendered resources are written to the target environment."""

    CREATE = "Create"
    """Create missing resources, never overwrite existing ones."""

    REPLACE = "Replace"
    """Create missing resources and fully replace existing ones."""

    DELETE = "Delete"
    """Delete every rendered resource from the target."""


class ResourceDeletionMode(StrEnum):
    """What happens to resources that are no longer rendered."""

    DELETE = "Delete"
    RETAIN = "Retain"


class TriggerType(StrEnum):
    """Recognized trigger types."""

    CHANGE = "Change"


class Phase(StrEnum):
    """Reconciliation state of a configuration object."""

    OBSERVED = "Observed"
    TRIGGER_CHECK = "TriggerCheck"
    IDLE = "Idle"
    DISPATCHING = "Dispatching"
    APPLYING = "Applying"
    CONVERGED = "Converged"
    FAILED = "Failed"
    DELETING = "Deleting"


class ConditionStatus(StrEnum):
    """Value of a status condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def parse(cls, value: str) -> "NamedResource":
        """Parse the output of `str()` back into a NamedResource."""
        parts = value.split("/")
        if len(parts) == 3:
            return cls(parts[0], parts[1], parts[2])
        if len(parts) == 2:
            return cls(parts[0], None, parts[1])
        raise InputException(f"Invalid resource identifier: {value}")

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


def resource_sort_key(resource_id: NamedResource) -> tuple[str, str, str]:
    """Sort key ordering resources by kind, namespace and name."""
    return (resource_id.kind, resource_id.namespace or "", resource_id.name)


def resource_id_of(doc: dict[str, Any]) -> NamedResource:
    """Return the identity of a raw kubernetes object."""
    if not (kind := doc.get("kind")):
        raise InputException(f"Invalid object missing kind: {doc}")
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid object missing metadata: {doc}")
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid object missing metadata.name: {doc}")
    return NamedResource(kind, metadata.get("namespace"), name)


@dataclass
class GitConfig(BaseManifest):
    """A location in a git repository, pinned to a reference."""

    uri: str
    """URI of the git repository."""

    ref: str = DEFAULT_REF
    """A branch, tag or commit sha."""

    context_dir: str = field(metadata=field_options(alias="contextDir"), default=".")
    """Sub-path within the repository."""

    @property
    def label(self) -> str:
        """Human readable label for log messages."""
        return f"{self.uri}@{self.ref}:{self.context_dir}"


@dataclass
class GitOpsTrigger(BaseManifest):
    """A condition that marks a configuration object due for reconciliation."""

    type: TriggerType


@dataclass
class Condition(BaseManifest):
    """A status condition on a configuration object."""

    type: str
    status: ConditionStatus
    reason: str | None = None
    message: str | None = None
    last_transition_time: str | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )


@dataclass
class GitOpsConfigSpec(BaseManifest):
    """Desired state of a GitOpsConfig."""

    template_source: GitConfig = field(metadata=field_options(alias="templateSource"))
    parameter_source: GitConfig = field(
        metadata=field_options(alias="parameterSource")
    )
    triggers: list[GitOpsTrigger] = field(default_factory=list)
    template_processor_image: str = field(
        metadata=field_options(alias="templateProcessorImage"),
        default=DEFAULT_TEMPLATE_PROCESSOR_IMAGE,
    )
    resource_handling_mode: ResourceHandlingMode = field(
        metadata=field_options(alias="resourceHandlingMode"),
        default=ResourceHandlingMode.CREATE,
    )
    resource_deletion_mode: ResourceDeletionMode = field(
        metadata=field_options(alias="resourceDeletionMode"),
        default=ResourceDeletionMode.DELETE,
    )
    service_account_ref: str = field(
        metadata=field_options(alias="serviceAccountRef"),
        default=DEFAULT_SERVICE_ACCOUNT,
    )

    def has_trigger(self, trigger_type: TriggerType) -> bool:
        """Return True if the trigger type is configured."""
        return any(trigger.type == trigger_type for trigger in self.triggers)


@dataclass
class GitOpsConfigStatus(BaseManifest):
    """Observed state of a GitOpsConfig, written back by the controller."""

    phase: Phase | None = None
    last_template_revision: str | None = field(
        metadata=field_options(alias="lastTemplateRevision"), default=None
    )
    last_parameter_revision: str | None = field(
        metadata=field_options(alias="lastParameterRevision"), default=None
    )
    last_spec_hash: str | None = field(
        metadata=field_options(alias="lastSpecHash"), default=None
    )
    last_trigger_token: str | None = field(
        metadata=field_options(alias="lastTriggerToken"), default=None
    )
    resource_count: int | None = field(
        metadata=field_options(alias="resourceCount"), default=None
    )
    last_transition_time: str | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )
    conditions: list[Condition] = field(default_factory=list)

    @property
    def processed(self) -> bool:
        """Return True if a render was successfully applied at least once."""
        return self.last_spec_hash is not None

    def condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the specified type, if present."""
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None

    def set_condition(self, condition: Condition) -> None:
        """Replace any condition of the same type."""
        self.conditions = [
            cond for cond in self.conditions if cond.type != condition.type
        ] + [condition]


@dataclass
class GitOpsConfig:
    """A GitOpsConfig custom resource."""

    name: str
    namespace: str
    spec: GitOpsConfigSpec
    status: GitOpsConfigStatus = field(default_factory=GitOpsConfigStatus)
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    resource_version: str | None = None
    generation: int | None = None
    deletion_timestamp: str | None = None

    kind = GITOPS_CONFIG_KIND

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "GitOpsConfig":
        """Parse a GitOpsConfig from a kubernetes resource object."""
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not api_version.startswith(API_GROUP):
            raise InputException(f"Invalid object expected '{API_GROUP}': {doc}")
        if doc.get("kind") != GITOPS_CONFIG_KIND:
            raise InputException(f"Invalid object expected {GITOPS_CONFIG_KIND}: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls.__name__} missing metadata.name: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        try:
            parsed_spec = GitOpsConfigSpec.from_dict(spec)
            status = GitOpsConfigStatus.from_dict(doc.get("status") or {})
        except (MissingField, InvalidFieldValue, ValueError) as err:
            raise InputException(
                f"Invalid {cls.__name__} {name}: {err}"
            ) from err
        return cls(
            name=name,
            namespace=metadata.get("namespace", DEFAULT_NAMESPACE),
            spec=parsed_spec,
            status=status,
            annotations=dict(metadata.get("annotations") or {}),
            labels=dict(metadata.get("labels") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )

    def to_doc(self) -> dict[str, Any]:
        """Return the kubernetes resource object for this GitOpsConfig."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
        }
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        if self.generation is not None:
            metadata["generation"] = self.generation
        if self.deletion_timestamp is not None:
            metadata["deletionTimestamp"] = self.deletion_timestamp
        return {
            "apiVersion": API_VERSION,
            "kind": GITOPS_CONFIG_KIND,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @property
    def resource_id(self) -> NamedResource:
        """Identity of this object in the store."""
        return NamedResource(GITOPS_CONFIG_KIND, self.namespace, self.name)

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"

    @property
    def owner_label(self) -> str:
        """Label value written onto every resource this object applies."""
        return f"{self.namespace}.{self.name}"

    @property
    def initialized(self) -> bool:
        return self.annotations.get(INITIALIZED_ANNOTATION) == "true"

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def trigger_token(self) -> str | None:
        """Value of the explicit re-trigger annotation."""
        return self.annotations.get(RECONCILE_REQUESTED_ANNOTATION)

    def spec_hash(self) -> str:
        """Return a stable hash of the desired state."""
        content = json.dumps(self.spec.to_dict(), sort_keys=True)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class RenderedResource:
    """A concrete resource produced by a templating run."""

    resource_id: NamedResource
    doc: dict[str, Any]

    @classmethod
    def parse_doc(
        cls, doc: dict[str, Any], default_namespace: str | None = None
    ) -> "RenderedResource":
        """Parse a rendered document, defaulting the namespace when namespaced."""
        if not doc.get("apiVersion"):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        resource_id = resource_id_of(doc)
        if (
            resource_id.namespace is None
            and default_namespace
            and resource_id.kind not in CLUSTER_SCOPED_KINDS
        ):
            doc = copy.deepcopy(doc)
            doc["metadata"]["namespace"] = default_namespace
            resource_id = NamedResource(
                resource_id.kind, default_namespace, resource_id.name
            )
        return cls(resource_id=resource_id, doc=doc)


@dataclass
class RenderedManifestSet:
    """Ordered output of one templating run."""

    resources: list[RenderedResource] = field(default_factory=list)
    template_revision: str | None = None
    parameter_revision: str | None = None

    @property
    def resource_ids(self) -> list[NamedResource]:
        """Resource identities in render order."""
        return [resource.resource_id for resource in self.resources]

    @property
    def revision(self) -> str:
        """Revision marker recorded in the inventory."""
        return f"{self.template_revision or ''}/{self.parameter_revision or ''}"


async def read_configs(path: Path) -> list[GitOpsConfig]:
    """Return every GitOpsConfig found in a YAML file."""
    async with aiofiles.open(str(path)) as config_file:
        content = await config_file.read()
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {path}: {err}") from err
    configs = []
    for doc in docs:
        if not doc:
            continue
        if not isinstance(doc, dict):
            raise InputException(f"Expected a dictionary in {path}, found {type(doc)}")
        if doc.get("kind") != GITOPS_CONFIG_KIND:
            _LOGGER.debug("Skipping %s in %s", doc.get("kind"), path)
            continue
        configs.append(GitOpsConfig.parse_doc(doc))
    return configs
