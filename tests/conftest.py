"""Fixtures shared by gitops-local tests."""

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from gitops_local.exceptions import GitOpsException, SourceFetchError
from gitops_local.manifest import API_VERSION, GITOPS_CONFIG_KIND, GitConfig
from gitops_local.source_controller import SourceArtifact, SourceResolver
from gitops_local.store import InMemoryStore
from gitops_local.task import TaskService, task_service_context

TEMPLATE_URI = "templates"
PARAMETER_URI = "params"

TEMPLATE = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: ${name}-settings
data:
  replicas: "${replicas}"
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: ${name}
spec:
  replicas: ${replicas}
"""

PARAMETERS = """\
name: web
replicas: 2
"""


class FakeSource(SourceResolver):
    """Serves sources from local directories with revisions set by the test."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.revisions: dict[str, str] = {}
        self.error: GitOpsException | None = None
        self.fetched: list[str] = []

    def write(self, uri: str, files: dict[str, str], revision: str | None = None) -> None:
        """Replace the files of a source and optionally bump its revision."""
        directory = self.root / uri
        directory.mkdir(parents=True, exist_ok=True)
        for existing in directory.glob("*.yaml"):
            existing.unlink()
        for name, content in files.items():
            (directory / name).write_text(content)
        if revision is not None:
            self.revisions[uri] = revision

    async def resolve(self, source: GitConfig) -> str:
        if self.error is not None:
            raise self.error
        return self.revisions.get(source.uri, "initial")

    async def fetch(self, source: GitConfig) -> SourceArtifact:
        revision = await self.resolve(source)
        path = self.root / source.uri / source.context_dir
        if not path.is_dir():
            raise SourceFetchError(f"Source {source.label} not found")
        self.fetched.append(source.uri)
        return SourceArtifact(
            uri=source.uri, ref=source.ref, revision=revision, local_path=str(path)
        )


@pytest.fixture(autouse=True)
def task_service() -> Generator[TaskService, None, None]:
    """Give every test its own task service."""
    with task_service_context() as service:
        yield service


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def source(tmp_path: Path) -> FakeSource:
    """A source serving the default template and parameters."""
    fake = FakeSource(tmp_path / "sources")
    fake.write(TEMPLATE_URI, {"app.yaml": TEMPLATE})
    fake.write(PARAMETER_URI, {"values.yaml": PARAMETERS})
    return fake


@pytest.fixture
def config_doc() -> Callable[..., dict[str, Any]]:
    """Factory for GitOpsConfig documents reading the fake sources."""

    def make(
        name: str = "app",
        namespace: str = "apps",
        handling: str = "Replace",
        deletion: str = "Delete",
        triggers: tuple[str, ...] = ("Change",),
    ) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": GITOPS_CONFIG_KIND,
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "templateSource": {"uri": TEMPLATE_URI, "ref": "main"},
                "parameterSource": {"uri": PARAMETER_URI, "ref": "main"},
                "triggers": [{"type": value} for value in triggers],
                "resourceHandlingMode": handling,
                "resourceDeletionMode": deletion,
            },
        }

    return make
