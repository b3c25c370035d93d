"""Command line tool for reconciling GitOpsConfig objects locally."""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from gitops_local.exceptions import GitOpsException
from . import reconcile, render, status

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for rendering and reconciling GitOpsConfig objects.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    render.RenderAction.register(subparsers)
    reconcile.ReconcileAction.register(subparsers)
    status.StatusAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """gitops-local command line tool main entry point."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as block scalars."""
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except GitOpsException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("gitops-local error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
