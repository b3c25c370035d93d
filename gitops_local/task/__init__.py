"""Task tracking for reconcile flows.

Controllers run one flow per object through the task service. Flows for the
same key never overlap: a request that arrives while a flow is running is
coalesced into a single follow-up run.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
