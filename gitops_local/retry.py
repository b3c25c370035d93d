"""Bounded retry for optimistic concurrency conflicts.

Updates to stored objects are read-modify-write cycles guarded by the
object's `resourceVersion`. When a concurrent writer wins, the store raises
`ConflictError` and the whole cycle (including the read) is run again:

```python
async def update() -> None:
    obj = store.get(resource_id)
    obj["status"] = {...}
    store.replace_status(obj)

await retry_on_conflict(update)
```
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .exceptions import ConflictError

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Backoff",
    "DEFAULT_BACKOFF",
    "retry_on_conflict",
]

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Retry schedule: `steps` attempts, sleeping `duration * factor**n` between them."""

    steps: int = 5
    duration: float = 0.01
    factor: float = 1.0
    cap: float | None = None

    def wait(self) -> wait_base:
        """Wait strategy between consecutive attempts."""
        if self.cap is None:
            return wait_exponential(multiplier=self.duration, exp_base=self.factor)
        return wait_exponential(
            multiplier=self.duration, exp_base=self.factor, max=self.cap
        )


# Same schedule as client-go's retry.DefaultRetry
DEFAULT_BACKOFF = Backoff(steps=5, duration=0.01, factor=1.0)


async def retry_on_conflict(
    func: Callable[[], Awaitable[T]],
    backoff: Backoff = DEFAULT_BACKOFF,
    description: str | None = None,
) -> T:
    """Run `func`, running it again after a `ConflictError` until `backoff` is exhausted.

    Any other exception propagates immediately. When every attempt conflicts the
    last `ConflictError` is raised.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(max(backoff.steps, 1)),
        wait=backoff.wait(),
        before_sleep=before_sleep_log(_LOGGER, logging.DEBUG),
        reraise=True,
    )
    try:
        return await retrying(func)
    except ConflictError as err:
        _LOGGER.error(
            "Giving up %s after %d conflicting attempts: %s",
            description or "update",
            retrying.statistics.get("attempt_number", 1),
            err,
        )
        raise
