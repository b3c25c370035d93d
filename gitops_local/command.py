"""Library for running external processes with asyncio.

Used by the template processor runner. Output is captured in memory, and the
number of processes running at once is bounded.
"""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_MAX_PROCESSES = 10
_SEM = asyncio.Semaphore(_MAX_PROCESSES)


# No public API
__all__: list[str] = []


@dataclass
class Command:
    """A process invocation."""

    args: list[str]
    """Program followed by its arguments."""

    cwd: Path | None = None
    """Working directory of the process."""

    error_type: type[Exception] = CommandException
    """Exception raised when the process exits with a non-zero status."""

    env: dict[str, str] = field(default_factory=dict)
    """Variables added to the inherited environment."""

    def __str__(self) -> str:
        line = shlex.join(self.args)
        return f"({self.cwd}) {line}" if self.cwd else line

    async def run(self) -> bytes:
        """Start the process and wait for it, returning stdout.

        Cancelling the calling task kills the process.
        """
        _LOGGER.debug("Starting process: %s", self)
        proc = await asyncio.create_subprocess_exec(
            *self.args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env={**os.environ, **self.env},
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            _LOGGER.debug("Killing process: %s", self)
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode == 0:
            return stdout
        message = "\n".join(
            part
            for part in (
                f"'{self}' exited with status {proc.returncode}",
                stdout.decode("utf-8", errors="replace").strip(),
                stderr.decode("utf-8", errors="replace").strip(),
            )
            if part
        )
        _LOGGER.debug(message)
        raise self.error_type(message)


async def run(cmd: Command) -> str:
    """Run the process once a slot is free and return stdout as text."""
    async with _SEM:
        stdout = await cmd.run()
    return stdout.decode("utf-8")
