"""Interface for retrieving sources from version control."""

from abc import ABC, abstractmethod

from gitops_local.manifest import GitConfig

from .artifact import SourceArtifact


class SourceResolver(ABC):
    """Resolves and fetches a {URI, reference, sub-path} location."""

    @abstractmethod
    async def resolve(self, source: GitConfig) -> str:
        """Return the content revision the source reference currently points at.

        Raises:
            SourceFetchError: If the source is unreachable or the ref is unknown.
        """

    @abstractmethod
    async def fetch(self, source: GitConfig) -> SourceArtifact:
        """Fetch the source and return the local directory tree.

        Raises:
            SourceFetchError: If the source is unreachable, the ref is unknown or
                the sub-path does not exist.
        """
