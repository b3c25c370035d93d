"""gitops-local status action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

from gitops_local.exceptions import InputException
from gitops_local.inventory import InventoryStore
from gitops_local.manifest import GITOPS_CONFIG_KIND, GitOpsConfig
from gitops_local.store import load_store

from . import common
from .format import output_formatter

_LOGGER = logging.getLogger(__name__)


class StatusAction:
    """Print the status of configuration objects in a state file."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "status",
                help="Print the status of GitOpsConfig objects",
                description="Print the status of GitOpsConfig objects in a state file",
            ),
        )
        args.add_argument(
            "--state",
            type=pathlib.Path,
            required=True,
            help="YAML file holding every object of the target environment",
        )
        args.add_argument(
            "--namespace", "-n", type=str, default=None, help="Only show this namespace"
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "wide", "yaml", "json"],
            default="table",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        state: pathlib.Path,
        namespace: str | None,
        output: str,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        if not state.exists():
            raise InputException(f"State file {state} does not exist")
        store = await load_store(state)
        inventory = InventoryStore(store)
        rows = []
        for doc in store.list_objects(kind=GITOPS_CONFIG_KIND, namespace=namespace):
            config = GitOpsConfig.parse_doc(doc)
            row = common.status_row(config)
            if output in ("wide", "yaml", "json"):
                entry = inventory.get(config.resource_id)
                row["owned"] = [str(rid) for rid in entry.resources] if entry else []
            rows.append(row)

        if not rows:
            print("No GitOpsConfig objects found")
            return
        cols = ["namespace", "name", "phase", "template", "parameters", "resources", "reason"]
        if output == "wide":
            cols.append("message")
            output = "table"
        output_formatter(output, cols).print(rows)
