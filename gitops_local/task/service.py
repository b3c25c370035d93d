"""Task tracking service.

Tracks short lived tasks (reconcile flows), which `block_till_done` waits
for, separately from long running background tasks such as periodic resync.
"""

import asyncio
from collections.abc import Callable, Coroutine, Hashable
from functools import partial
import logging
from typing import Any
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []

FlowFactory = Callable[[], Coroutine[None, None, Any]]


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task.

        Background tasks are not waited for by `block_till_done`.
        """

    @abstractmethod
    def schedule(self, key: Hashable, factory: FlowFactory) -> bool:
        """Run the flow for `key`, coalescing with a flow already in progress.

        When no flow for the key is running, a task running `factory()` is
        started and True is returned. Otherwise the running flow is marked
        pending so that it runs exactly once more after it finishes, however
        many times it was scheduled meanwhile, and False is returned.
        """

    @abstractmethod
    def is_running(self, key: Hashable) -> bool:
        """Return True if a flow for the key is in progress."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait until there are no active non-background tasks.

        Tasks created while waiting, including coalesced follow-up runs,
        are waited for as well.
        """

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""


class TaskServiceImpl(TaskService):
    """Service for tracking and waiting for asynchronous tasks."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._flows: dict[Hashable, asyncio.Task[Any]] = {}
        self._pending: set[Hashable] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new background task."""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    def schedule(self, key: Hashable, factory: FlowFactory) -> bool:
        """Run the flow for `key`, coalescing with a flow already in progress."""
        if key in self._flows:
            _LOGGER.debug("Flow for %s in progress, coalescing request", key)
            self._pending.add(key)
            return False
        self._flows[key] = self.create_task(
            self._run_flow(key, factory), name=f"flow-{key}"
        )
        return True

    def is_running(self, key: Hashable) -> bool:
        """Return True if a flow for the key is in progress."""
        return key in self._flows

    async def _run_flow(self, key: Hashable, factory: FlowFactory) -> None:
        try:
            while True:
                self._pending.discard(key)
                try:
                    await factory()
                except Exception as err:  # pylint: disable=broad-except
                    _LOGGER.exception("Flow for %s failed: %s", key, err)
                if key not in self._pending:
                    return
                _LOGGER.debug("Running coalesced flow for %s", key)
        finally:
            self._flows.pop(key, None)
            self._pending.discard(key)

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task failed: %s", e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait until there are no active non-background tasks."""
        if not self._active_tasks:
            _LOGGER.debug("No active tasks to wait for")
        while self._active_tasks:
            active_tasks = list(self._active_tasks)
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.wait(active_tasks)
            # Let done callbacks run before checking for new tasks
            await asyncio.sleep(0)
        await asyncio.sleep(0)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)
