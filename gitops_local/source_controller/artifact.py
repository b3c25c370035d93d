"""Artifact representation."""

from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class SourceArtifact:
    """A source fetched at a pinned reference.

    The path references a local checkout of the repository at `revision`,
    already joined with the configured context directory.
    """

    uri: str
    """URI of the git repository, for informational/logging purposes."""

    ref: str
    """The reference that was requested."""

    revision: str
    """The commit sha the reference resolved to."""

    local_path: str
    """Local filesystem path to the context directory of the checkout."""
