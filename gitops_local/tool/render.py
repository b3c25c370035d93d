"""gitops-local render action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

from gitops_local.config import DispatcherConfig
from gitops_local.exceptions import InputException
from gitops_local.store import InMemoryStore
from gitops_local.template import TemplateDispatcher

from . import common
from .format import output_formatter

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """Render the manifests of configuration objects without applying them."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render the manifests of GitOpsConfig objects",
                description=(
                    "Fetch the template and parameter sources of each GitOpsConfig "
                    "and print the rendered manifests"
                ),
            ),
        )
        args.add_argument(
            "path",
            type=pathlib.Path,
            nargs="+",
            help="Files containing GitOpsConfig objects",
        )
        args.add_argument("--name", type=str, default=None, help="Only render this object")
        args.add_argument(
            "--namespace", "-n", type=str, default=None, help="Only render this namespace"
        )
        common.add_source_flags(args)
        common.add_output_flag(args, default="yaml")
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        path: list[pathlib.Path],
        name: str | None,
        namespace: str | None,
        output: str,
        timeout: float,
        **kwargs: Any,
    ) -> None:
        """Async Action implementation."""
        configs = await common.load_configs(path, name=name, namespace=namespace)
        if not configs:
            raise InputException("No matching GitOpsConfig objects found")
        dispatcher = TemplateDispatcher(
            InMemoryStore(),
            common.make_source(**kwargs),
            common.make_runner(**kwargs),
            DispatcherConfig(timeout=timeout),
        )
        docs: list[dict[str, Any]] = []
        for config in configs:
            manifest_set = await dispatcher.dispatch(config)
            _LOGGER.info(
                "Rendered %d resources for %s at %s",
                len(manifest_set.resources),
                config.namespaced_name,
                manifest_set.revision,
            )
            docs.extend(resource.doc for resource in manifest_set.resources)

        if output == "table":
            rows = [
                {
                    "kind": doc.get("kind"),
                    "namespace": doc["metadata"].get("namespace"),
                    "name": doc["metadata"].get("name"),
                }
                for doc in docs
            ]
            output_formatter(output).print(rows)
            return
        output_formatter(output).print(docs)
