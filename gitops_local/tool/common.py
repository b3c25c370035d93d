"""Flags and helpers shared by gitops-local actions."""

from argparse import ArgumentParser
import logging
import pathlib
import shlex
from typing import Any

from gitops_local.controller import READY_CONDITION
from gitops_local.exceptions import InputException
from gitops_local.manifest import GitOpsConfig, read_configs
from gitops_local.source_controller import GitCache, GitSource
from gitops_local.template import CommandJobRunner, JobRunner, LocalJobRunner

_LOGGER = logging.getLogger(__name__)

OUTPUT_CHOICES = ["table", "yaml", "json"]


def add_source_flags(args: ArgumentParser) -> None:
    """Add flags controlling how sources are fetched and rendered."""
    args.add_argument(
        "--cache-dir",
        type=pathlib.Path,
        default=None,
        help="Directory where git sources are cloned",
    )
    args.add_argument(
        "--processor-command",
        type=str,
        default=None,
        help=(
            "Render with an external template processor command instead of the "
            "built-in one, e.g. 'docker run --rm ... {image}'"
        ),
    )
    args.add_argument(
        "--timeout",
        type=float,
        default=300.0,
        help="Seconds a templating job may run",
    )


def add_output_flag(args: ArgumentParser, default: str) -> None:
    """Add the --output flag."""
    args.add_argument(
        "--output",
        "-o",
        choices=OUTPUT_CHOICES,
        default=default,
        help="Output format of the command",
    )


def make_source(cache_dir: pathlib.Path | None, **kwargs: Any) -> GitSource:
    """Create the git source resolver for the command."""
    return GitSource(GitCache(cache_dir))


def make_runner(processor_command: str | None, **kwargs: Any) -> JobRunner:
    """Create the job runner for the command."""
    if processor_command:
        return CommandJobRunner(shlex.split(processor_command))
    return LocalJobRunner()


async def load_configs(
    paths: list[pathlib.Path], name: str | None = None, namespace: str | None = None
) -> list[GitOpsConfig]:
    """Read configuration objects from files, optionally selecting one."""
    configs: list[GitOpsConfig] = []
    for path in paths:
        if not path.exists():
            raise InputException(f"Configuration file {path} does not exist")
        configs.extend(await read_configs(path))
    if name is not None:
        configs = [config for config in configs if config.name == name]
    if namespace is not None:
        configs = [config for config in configs if config.namespace == namespace]
    _LOGGER.debug("Loaded %d configuration objects", len(configs))
    return configs


def status_row(config: GitOpsConfig) -> dict[str, Any]:
    """Summarize a configuration object for display."""
    status = config.status
    ready = status.condition(READY_CONDITION)
    return {
        "namespace": config.namespace,
        "name": config.name,
        "phase": str(status.phase) if status.phase else None,
        "template": status.last_template_revision,
        "parameters": status.last_parameter_revision,
        "resources": status.resource_count,
        "reason": ready.reason if ready else None,
        "message": ready.message if ready else None,
    }
