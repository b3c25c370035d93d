"""Tests for the template processing dispatcher."""

import asyncio
from datetime import datetime, timedelta, UTC
from typing import Any

import pytest

from gitops_local.config import DispatcherConfig
from gitops_local.exceptions import (
    DispatchTimeoutError,
    RenderError,
    SourceFetchError,
)
from gitops_local.manifest import GitOpsConfig, JOB_KIND, NamedResource, OWNER_LABEL
from gitops_local.store import InMemoryStore
from gitops_local.template import (
    Job,
    JobRunner,
    LocalJobRunner,
    TemplateDispatcher,
    parse_manifests,
)

from ..conftest import FakeSource, PARAMETER_URI, TEMPLATE_URI


class StaticRunner(JobRunner):
    """Returns fixed output for every job."""

    def __init__(self, output: str) -> None:
        self.output = output
        self.jobs: list[Job] = []

    async def run(self, job: Job) -> str:
        self.jobs.append(job)
        return self.output


class SlowRunner(JobRunner):
    async def run(self, job: Job) -> str:
        await asyncio.sleep(10)
        return ""


def job_records(store: InMemoryStore) -> list[dict[str, Any]]:
    return store.list_objects(kind=JOB_KIND)


async def test_dispatch(
    store: InMemoryStore, source: FakeSource, config_doc: Any
) -> None:
    """Test rendering the sources of a configuration object."""
    source.revisions = {TEMPLATE_URI: "t1", PARAMETER_URI: "p1"}
    dispatcher = TemplateDispatcher(store, source, LocalJobRunner())
    config = GitOpsConfig.parse_doc(config_doc())

    manifest_set = await dispatcher.dispatch(config)

    assert manifest_set.resource_ids == [
        NamedResource("ConfigMap", "apps", "web-settings"),
        NamedResource("Deployment", "apps", "web"),
    ]
    assert manifest_set.template_revision == "t1"
    assert manifest_set.parameter_revision == "p1"
    assert manifest_set.revision == "t1/p1"

    records = job_records(store)
    assert len(records) == 1
    record = records[0]
    assert record["metadata"]["namespace"] == "apps"
    assert record["metadata"]["labels"] == {OWNER_LABEL: "apps.app"}
    assert record["spec"]["templateRevision"] == "t1"
    assert record["status"]["phase"] == "Succeeded"
    assert record["status"]["resourceCount"] == 2


async def test_dispatch_job_fields(
    store: InMemoryStore, source: FakeSource, config_doc: Any
) -> None:
    """Test the job carries the image, service account and fetched paths."""
    doc = config_doc()
    doc["spec"]["templateProcessorImage"] = "example.com/processor:2.0"
    doc["spec"]["serviceAccountRef"] = "deployer"
    runner = StaticRunner("")
    await TemplateDispatcher(store, source, runner).dispatch(GitOpsConfig.parse_doc(doc))

    job = runner.jobs[0]
    assert job.owner == NamedResource("GitOpsConfig", "apps", "app")
    assert job.image == "example.com/processor:2.0"
    assert job.service_account == "deployer"
    assert job.template_path == source.root / TEMPLATE_URI / "."
    assert job.name.startswith("app-")


async def test_source_fetch_failure(
    store: InMemoryStore, source: FakeSource, config_doc: Any
) -> None:
    """Test a fetch failure does not create a job record."""
    source.error = SourceFetchError("unauthorized")
    dispatcher = TemplateDispatcher(store, source, LocalJobRunner())
    with pytest.raises(SourceFetchError, match="unauthorized"):
        await dispatcher.dispatch(GitOpsConfig.parse_doc(config_doc()))
    assert not job_records(store)


async def test_timeout(
    store: InMemoryStore, source: FakeSource, config_doc: Any
) -> None:
    """Test a job exceeding its window fails with a timeout."""
    dispatcher = TemplateDispatcher(
        store, source, SlowRunner(), DispatcherConfig(timeout=0.05)
    )
    with pytest.raises(DispatchTimeoutError):
        await dispatcher.dispatch(GitOpsConfig.parse_doc(config_doc()))

    records = job_records(store)
    assert len(records) == 1
    assert records[0]["status"]["phase"] == "Failed"
    assert "did not finish" in records[0]["status"]["message"]


async def test_render_failure(
    store: InMemoryStore, source: FakeSource, config_doc: Any
) -> None:
    """Test a template with an undefined parameter fails the job."""
    source.write(PARAMETER_URI, {"values.yaml": "name: web\n"})
    dispatcher = TemplateDispatcher(store, source, LocalJobRunner())
    with pytest.raises(RenderError, match="parameter 'replicas' is not defined"):
        await dispatcher.dispatch(GitOpsConfig.parse_doc(config_doc()))
    assert job_records(store)[0]["status"]["phase"] == "Failed"


async def test_job_history_limit(
    store: InMemoryStore, source: FakeSource, config_doc: Any
) -> None:
    """Test only the newest job records are kept."""
    dispatcher = TemplateDispatcher(
        store, source, LocalJobRunner(), DispatcherConfig(job_history_limit=2)
    )
    config = GitOpsConfig.parse_doc(config_doc())
    for _ in range(4):
        await dispatcher.dispatch(config)
    assert len(job_records(store)) == 2


async def test_job_ttl(source: FakeSource, config_doc: Any) -> None:
    """Test job records older than the ttl are removed."""
    now = [datetime(2024, 1, 1, tzinfo=UTC)]

    def clock() -> datetime:
        return now[0]

    store = InMemoryStore(clock=clock)
    dispatcher = TemplateDispatcher(
        store,
        source,
        LocalJobRunner(),
        DispatcherConfig(job_history_limit=10, job_ttl=60),
        clock=clock,
    )
    config = GitOpsConfig.parse_doc(config_doc())
    await dispatcher.dispatch(config)
    await dispatcher.dispatch(config)
    assert len(job_records(store)) == 2

    now[0] += timedelta(minutes=5)
    await dispatcher.dispatch(config)
    records = job_records(store)
    assert len(records) == 1
    assert records[0]["metadata"]["creationTimestamp"] == now[0].isoformat()


async def test_store_without_jobs(source: FakeSource, config_doc: Any) -> None:
    """Test dispatching when the platform has no job kind."""
    store = InMemoryStore(supported_kinds=["GitOpsConfig", "ConfigMap"])
    dispatcher = TemplateDispatcher(store, source, LocalJobRunner())
    manifest_set = await dispatcher.dispatch(GitOpsConfig.parse_doc(config_doc()))
    assert len(manifest_set.resources) == 2


def test_parse_manifests() -> None:
    """Test parsing keeps order and defaults the namespace."""
    resources = parse_manifests(
        """\
---
apiVersion: v1
kind: Namespace
metadata:
  name: apps
---
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
  namespace: other
""",
        default_namespace="apps",
    )
    assert [resource.resource_id for resource in resources] == [
        NamedResource("Namespace", None, "apps"),
        NamedResource("ConfigMap", "other", "settings"),
    ]


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("kind: [unclosed", "Unable to parse"),
        ("- a\n", "expected a resource, found list"),
        ("kind: ConfigMap\nmetadata:\n  name: x\n", "missing apiVersion"),
        (
            "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: x\n"
            "---\napiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: x\n",
            "rendered more than once",
        ),
    ],
)
def test_parse_manifests_invalid(content: str, match: str) -> None:
    with pytest.raises(RenderError, match=match):
        parse_manifests(content, default_namespace="apps")
