"""Fixtures for command line tool tests."""

from pathlib import Path

import git
import pytest

from ..conftest import PARAMETERS, TEMPLATE

AUTHOR = git.Actor("Test", "test@example.com")


def commit(repo: git.Repo, files: dict[str, str], message: str) -> str:
    """Write files into the repository and commit them."""
    root = Path(repo.working_dir)
    for name, content in files.items():
        (root / name).write_text(content)
    repo.index.add(list(files))
    return repo.index.commit(message, author=AUTHOR, committer=AUTHOR).hexsha


@pytest.fixture
def template_repo(tmp_path: Path) -> git.Repo:
    repo = git.Repo.init(tmp_path / "templates", initial_branch="main")
    commit(repo, {"app.yaml": TEMPLATE}, "Add template")
    return repo


@pytest.fixture
def parameter_repo(tmp_path: Path) -> git.Repo:
    repo = git.Repo.init(tmp_path / "params", initial_branch="main")
    commit(repo, {"values.yaml": PARAMETERS}, "Add parameters")
    return repo


@pytest.fixture
def config_file(
    tmp_path: Path, template_repo: git.Repo, parameter_repo: git.Repo
) -> Path:
    """A file with a GitOpsConfig reading the local repositories."""
    path = tmp_path / "configs.yaml"
    path.write_text(
        f"""\
---
apiVersion: gitops.local/v1alpha1
kind: GitOpsConfig
metadata:
  name: app
  namespace: apps
spec:
  templateSource:
    uri: {template_repo.working_dir}
    ref: main
  parameterSource:
    uri: {parameter_repo.working_dir}
    ref: main
  triggers:
  - type: Change
  resourceHandlingMode: Replace
  resourceDeletionMode: Delete
"""
    )
    return path


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"
