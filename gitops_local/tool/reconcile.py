"""gitops-local reconcile action."""

from datetime import datetime, UTC
import logging
import pathlib
from argparse import (
    BooleanOptionalAction,
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

from gitops_local.config import DispatcherConfig, OrchestratorConfig
from gitops_local.exceptions import GitOpsException
from gitops_local.manifest import (
    GITOPS_CONFIG_KIND,
    GitOpsConfig,
    NamedResource,
    RECONCILE_REQUESTED_ANNOTATION,
)
from gitops_local.orchestrator import Orchestrator
from gitops_local.store import InMemoryStore, Store, load_store, save_store

from . import common
from .format import output_formatter

_LOGGER = logging.getLogger(__name__)

STATUS_COLUMNS = ["namespace", "name", "phase", "resources", "reason"]


def upsert_config(
    store: Store, config: GitOpsConfig, requested_at: str | None = None
) -> None:
    """Create the object, or update the spec of an existing one keeping its status."""
    doc = config.to_doc()
    doc.pop("status", None)
    if requested_at is not None:
        doc["metadata"].setdefault("annotations", {})[
            RECONCILE_REQUESTED_ANNOTATION
        ] = requested_at
    if (existing := store.get(config.resource_id)) is None:
        store.create(doc)
        return
    metadata = existing["metadata"]
    metadata["annotations"] = {
        **(metadata.get("annotations") or {}),
        **(doc["metadata"].get("annotations") or {}),
    }
    if labels := doc["metadata"].get("labels"):
        metadata["labels"] = labels
    existing["spec"] = doc["spec"]
    store.replace(existing)


def prune_configs(store: Store, keep: list[GitOpsConfig]) -> list[NamedResource]:
    """Delete configuration objects that are not in `keep`."""
    keep_ids = {config.resource_id for config in keep}
    pruned = []
    for doc in store.list_objects(kind=GITOPS_CONFIG_KIND):
        metadata = doc["metadata"]
        resource_id = NamedResource(
            GITOPS_CONFIG_KIND, metadata.get("namespace"), metadata["name"]
        )
        if resource_id not in keep_ids:
            _LOGGER.info("Pruning %s", resource_id)
            store.delete(resource_id)
            pruned.append(resource_id)
    return pruned


class ReconcileAction:
    """Reconcile configuration objects against a state file."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Reconcile GitOpsConfig objects into a state file",
                description=(
                    "Load the target environment from a state file, add the "
                    "GitOpsConfig objects, run every reconcile flow to completion "
                    "and write the resulting state back"
                ),
            ),
        )
        args.add_argument(
            "path",
            type=pathlib.Path,
            nargs="*",
            help="Files containing GitOpsConfig objects",
        )
        args.add_argument(
            "--state",
            type=pathlib.Path,
            required=True,
            help="YAML file holding every object of the target environment",
        )
        args.add_argument(
            "--prune",
            action=BooleanOptionalAction,
            default=False,
            help="Delete GitOpsConfig objects in the state file that are not in the input files",
        )
        args.add_argument(
            "--request",
            action=BooleanOptionalAction,
            default=False,
            help="Request a reconcile of every input object even if nothing changed",
        )
        common.add_source_flags(args)
        common.add_output_flag(args, default="table")
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        path: list[pathlib.Path],
        state: pathlib.Path,
        prune: bool,
        request: bool,
        output: str,
        timeout: float,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        configs = await common.load_configs(path)
        store = await load_store(state) if state.exists() else InMemoryStore()
        requested_at = datetime.now(UTC).isoformat() if request else None
        for config in configs:
            upsert_config(store, config, requested_at)
        if prune:
            prune_configs(store, configs)

        orchestrator = Orchestrator(
            store,
            common.make_source(**kwargs),
            common.make_runner(**kwargs),
            OrchestratorConfig(dispatcher=DispatcherConfig(timeout=timeout)),
        )
        succeeded = await orchestrator.run()
        await save_store(store, state)

        output_formatter(output, STATUS_COLUMNS).print(
            [common.status_row(config) for config in orchestrator.configs()]
        )
        if not succeeded:
            failed = orchestrator.failed_configs()
            raise GitOpsException(
                f"{len(failed)} GitOpsConfig objects failed: "
                + ", ".join(config.namespaced_name for config in failed)
            )
