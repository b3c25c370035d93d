"""Git source retrieval."""

import asyncio
import logging
from pathlib import Path
import re
from shutil import copytree, ignore_patterns, rmtree
import tempfile

import git

from gitops_local.exceptions import SourceFetchError
from gitops_local.manifest import GitConfig

from .artifact import SourceArtifact
from .cache import GitCache
from .source import SourceResolver

_LOGGER = logging.getLogger(__name__)

_COMMIT_SHA = re.compile(r"^[0-9a-f]{40}$")


def is_commit(ref: str) -> bool:
    """Return True if the reference is a full commit sha."""
    return bool(_COMMIT_SHA.match(ref))


def _parse_ls_remote(output: str, ref: str) -> str | None:
    """Pick the commit for `ref` out of `git ls-remote` output.

    Branches win over tags, and annotated tags resolve to the peeled commit.
    """
    refs: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            continue
        sha, _, name = line.partition("\t")
        refs[name.strip()] = sha.strip()
    for candidate in (
        f"refs/heads/{ref}",
        f"refs/tags/{ref}^{{}}",
        f"refs/tags/{ref}",
        ref,
    ):
        if candidate in refs:
            return refs[candidate]
    return None


def _snapshot(src: Path, dest: Path) -> None:
    """Copy a checked out directory to `dest` unless a copy already exists."""
    if dest.exists():
        return
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=dest.parent) as tmp_dir:
        staging = Path(tmp_dir) / "snapshot"
        try:
            copytree(src, staging, ignore=ignore_patterns(".git"), symlinks=True)
            staging.rename(dest)
        except OSError as e:
            # Another checkout of the same commit finished first
            if dest.exists():
                return
            raise SourceFetchError(f"Failed to copy {src}: {e}") from e


class GitSource(SourceResolver):
    """Resolves and fetches sources with GitPython."""

    def __init__(self, cache: GitCache | None = None) -> None:
        """Initialize GitSource with an optional cache location."""
        self._cache = cache or GitCache()

    async def resolve(self, source: GitConfig) -> str:
        """Return the commit the source reference currently points at."""
        if is_commit(source.ref):
            return source.ref
        return await asyncio.to_thread(self._ls_remote, source)

    def _ls_remote(self, source: GitConfig) -> str:
        try:
            output = git.cmd.Git().ls_remote(source.uri, source.ref)
        except git.exc.GitCommandError as e:
            raise SourceFetchError(
                f"Unable to reach {source.uri}: {e.stderr.strip() if e.stderr else e}"
            ) from e
        if (revision := _parse_ls_remote(output, source.ref)) is None:
            raise SourceFetchError(f"Reference {source.ref} not found in {source.uri}")
        _LOGGER.debug("Resolved %s to %s", source.label, revision)
        return revision

    async def fetch(self, source: GitConfig) -> SourceArtifact:
        """Fetch the source and return a copy of its context directory.

        The copy is keyed by the fetched commit, so later fetches that move the
        shared checkout never change files a running job is reading.
        """
        repo_path = self._cache.get_repo_path(source.uri, source.ref)
        async with self._cache.lock(repo_path):
            revision = await asyncio.to_thread(self._checkout, source, repo_path)
            local_path = (repo_path / source.context_dir).resolve()
            if not local_path.is_relative_to(repo_path.resolve()):
                raise SourceFetchError(
                    f"Context dir {source.context_dir} escapes repository {source.uri}"
                )
            if not local_path.is_dir():
                raise SourceFetchError(
                    f"Context dir {source.context_dir} not found in {source.uri}@{source.ref}"
                )
            snapshot_path = self._cache.get_snapshot_path(
                source.uri, revision, source.context_dir
            )
            await asyncio.to_thread(_snapshot, local_path, snapshot_path)
        _LOGGER.info("Fetched %s at %s", source.label, revision)
        return SourceArtifact(
            uri=source.uri,
            ref=source.ref,
            revision=revision,
            local_path=str(snapshot_path),
        )

    def _checkout(self, source: GitConfig, repo_path: Path) -> str:
        try:
            if (repo_path / ".git").exists():
                _LOGGER.debug("Updating existing repository at %s", repo_path)
                repo = git.Repo(str(repo_path))
                repo.git.fetch("origin", "--tags", "--force", "--prune")
            else:
                if repo_path.exists():
                    rmtree(repo_path)
                _LOGGER.debug("Cloning repository %s to %s", source.uri, repo_path)
                repo = git.Repo.clone_from(source.uri, str(repo_path))

            target = self._rev_parse(repo, source.ref)
            repo.git.checkout("--force", "--detach", target)
            return repo.head.commit.hexsha
        except git.exc.GitCommandError as e:
            raise SourceFetchError(
                f"Git operation failed for {source.uri}: {e.stderr.strip() if e.stderr else e}"
            ) from e
        except git.exc.GitError as e:
            raise SourceFetchError(f"Failed to fetch {source.uri}: {e}") from e

    def _rev_parse(self, repo: git.Repo, ref: str) -> str:
        """Find the commit for a branch, tag or sha in a fetched clone."""
        candidates = [ref] if is_commit(ref) else [f"origin/{ref}", f"refs/tags/{ref}", ref]
        for candidate in candidates:
            try:
                return str(repo.git.rev_parse("--verify", f"{candidate}^{{commit}}"))
            except git.exc.GitCommandError:
                continue
        raise SourceFetchError(f"Reference {ref} not found in {repo.working_dir}")
