"""Exceptions related to gitops-local."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manifest import NamedResource

__all__ = [
    "GitOpsException",
    "InputException",
    "CommandException",
    "SourceFetchError",
    "RenderError",
    "DispatchTimeoutError",
    "ApplyError",
    "ConflictError",
    "InventoryCorruptionError",
    "ObjectNotFoundError",
    "ObjectExistsError",
    "AdmissionError",
]


class GitOpsException(Exception):
    """Generic base exception used for this library."""


class InputException(GitOpsException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(GitOpsException):
    """Raised when there is a failure running a subcommand."""


class SourceFetchError(GitOpsException):
    """Raised when a template or parameter source is unreachable or unauthorized."""


class RenderError(GitOpsException):
    """Raised when merging parameters into templates fails."""


class DispatchTimeoutError(GitOpsException):
    """Raised when the templating job did not finish within its window."""


class ApplyError(GitOpsException):
    """Raised when the target environment rejects a rendered resource."""

    def __init__(self, resource_id: "NamedResource", message: str | None) -> None:
        super().__init__(f"Resource {resource_id} rejected: {message or 'Unknown error'}")
        self.resource_id = resource_id
        self.message = message


class ConflictError(GitOpsException):
    """Raised when a compare-and-swap update lost against a concurrent write."""


class InventoryCorruptionError(GitOpsException):
    """Raised when an inventory entry cannot be trusted.

    This is fatal for the owning configuration object and is never repaired
    automatically.
    """


class ObjectNotFoundError(GitOpsException):
    """Raised when an object is not found in the store."""


class ObjectExistsError(GitOpsException):
    """Raised when creating an object that is already present in the store."""


class AdmissionError(GitOpsException):
    """Raised by the store when a document fails validation or admission."""
