"""The source controller module.

This module resolves template and parameter sources to a commit revision and
fetches them into a local cache for the templating job.
"""

from .artifact import SourceArtifact
from .cache import GitCache
from .git import GitSource
from .source import SourceResolver

__all__ = [
    "GitCache",
    "GitSource",
    "SourceArtifact",
    "SourceResolver",
]
