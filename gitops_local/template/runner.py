"""Job runners that execute a templating job.

A runner is the job/task execution substrate: it receives the fetched sources
and the execution environment of a job and returns the rendered manifest
stream as YAML text.
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path

import yaml

from gitops_local import command
from gitops_local.exceptions import RenderError
from gitops_local.manifest import NamedResource

from .render import render_directory

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Job",
    "JobRunner",
    "LocalJobRunner",
    "CommandJobRunner",
]

DEFAULT_COMMAND = [
    "docker",
    "run",
    "--rm",
    "--volume",
    "{template_path}:/template:ro",
    "--volume",
    "{parameter_path}:/parameters:ro",
    "--env",
    "TEMPLATE_DIR=/template",
    "--env",
    "PARAMETER_DIR=/parameters",
    "--env",
    "SERVICE_ACCOUNT={service_account}",
    "{image}",
]


@dataclass(frozen=True, kw_only=True)
class Job:
    """A single templating run."""

    name: str
    owner: NamedResource
    image: str
    service_account: str
    template_path: Path
    parameter_path: Path
    template_revision: str
    parameter_revision: str


class JobRunner(ABC):
    """Executes templating jobs."""

    @abstractmethod
    async def run(self, job: Job) -> str:
        """Run the job and return the rendered manifests as a YAML stream.

        Raises:
            RenderError: If the templates could not be rendered.
        """


class LocalJobRunner(JobRunner):
    """Renders in a worker thread with the built-in template processor.

    The image is not used; every job is processed the same way.
    """

    async def run(self, job: Job) -> str:
        """Render the job's sources."""
        _LOGGER.debug("Rendering job %s in process", job.name)
        docs = await asyncio.to_thread(
            render_directory, job.template_path, job.parameter_path
        )
        return yaml.dump_all(docs, sort_keys=False, explicit_start=True)


class CommandJobRunner(JobRunner):
    """Runs an external template processor as a subprocess.

    Every argument of the command is formatted with the job fields
    `template_path`, `parameter_path`, `image`, `service_account` and `name`.
    The same values are exported as `TEMPLATE_DIR`, `PARAMETER_DIR`,
    `TEMPLATE_PROCESSOR_IMAGE` and `SERVICE_ACCOUNT`. The processor must print
    the rendered manifests as YAML on stdout.
    """

    def __init__(self, cmd: list[str] | None = None) -> None:
        """Initialize CommandJobRunner with the command template."""
        self._cmd = cmd or DEFAULT_COMMAND

    def command(self, job: Job) -> command.Command:
        """Return the command for a job."""
        fields = {
            "name": job.name,
            "image": job.image,
            "service_account": job.service_account,
            "template_path": str(job.template_path),
            "parameter_path": str(job.parameter_path),
        }
        try:
            args = [arg.format(**fields) for arg in self._cmd]
        except (KeyError, IndexError) as err:
            raise RenderError(f"Invalid template processor command {self._cmd}: {err}") from err
        return command.Command(
            args,
            error_type=RenderError,
            env={
                "TEMPLATE_DIR": str(job.template_path),
                "PARAMETER_DIR": str(job.parameter_path),
                "TEMPLATE_PROCESSOR_IMAGE": job.image,
                "SERVICE_ACCOUNT": job.service_account,
            },
        )

    async def run(self, job: Job) -> str:
        """Run the processor command for the job."""
        cmd = self.command(job)
        _LOGGER.debug("Running job %s: %s", job.name, cmd)
        try:
            return await command.run(cmd)
        except OSError as err:
            raise RenderError(f"Unable to start template processor: {err}") from err
