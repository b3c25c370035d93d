"""Cache management for git repositories."""

import asyncio
from collections import defaultdict
import hashlib
import logging
from pathlib import Path
import re
from shutil import rmtree
import tempfile
from typing import DefaultDict
from urllib.parse import urlparse

from slugify import slugify

from gitops_local.exceptions import SourceFetchError

_LOGGER = logging.getLogger(__name__)

_SCP_LIKE = re.compile(r"^[\w.-]+@[\w.-]+:(?P<path>.+)$")


class GitCache:
    """Cache manager for git repositories.

    Each (uri, ref) pair gets its own checkout directory so that sources
    pinned to different references never share a working tree. Access to a
    checkout is serialized with a per-path lock.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / "gitops-local-cache"
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._locks: DefaultDict[Path, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def _slugify_uri(self, uri: str) -> str:
        """Extract and slugify a repository name from a URI."""
        if match := _SCP_LIKE.match(uri):
            path = match.group("path")
        else:
            path = urlparse(uri).path
        path = path.rstrip("/")
        if path.endswith(".git"):
            path = path[:-4]
        slug = slugify(path.split("/")[-1], max_length=50, lowercase=True, separator="-")
        return slug or "repo"

    def get_repo_path(self, uri: str, ref: str) -> Path:
        """Get the local path for a repository checkout."""
        cache_key = hashlib.sha256()
        cache_key.update(uri.encode("utf-8"))
        cache_key.update(ref.encode("utf-8"))
        # e.g. /gitops-local-cache/my-repo/ab1234567890abcdef
        cache_path = self._cache_dir / self._slugify_uri(uri) / cache_key.hexdigest()[:16]
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SourceFetchError(f"Failed to create cache directory: {e}") from e
        return cache_path

    def get_snapshot_path(self, uri: str, revision: str, context_dir: str) -> Path:
        """Get the local path for an immutable copy of a directory at a commit."""
        cache_key = hashlib.sha256()
        cache_key.update(uri.encode("utf-8"))
        cache_key.update(context_dir.encode("utf-8"))
        # e.g. /gitops-local-cache/snapshots/my-repo/0123abcd-ab1234567890
        return (
            self._cache_dir
            / "snapshots"
            / self._slugify_uri(uri)
            / f"{revision}-{cache_key.hexdigest()[:12]}"
        )

    def lock(self, path: Path) -> asyncio.Lock:
        """Return the lock guarding a checkout directory."""
        return self._locks[path]

    def cleanup(self) -> None:
        """Remove every cached repository."""
        if self._cache_dir.exists():
            _LOGGER.info("Cleaning up git cache %s", self._cache_dir)
            rmtree(self._cache_dir, ignore_errors=True)
