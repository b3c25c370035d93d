"""Template processing dispatcher.

The dispatcher turns a GitOpsConfig into a RenderedManifestSet:

1. Fetches the template and parameter sources at their pinned references.
2. Records a `Job` object in the store describing the run.
3. Runs the job with a JobRunner inside a bounded execution window.
4. Parses the job output into an ordered manifest set of unique identities.
5. Garbage collects old job records for the same configuration object.

A failed dispatch never touches the inventory or any applied resource.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, UTC
import logging
from pathlib import Path
import uuid
from typing import Any

import yaml

from gitops_local.config import DispatcherConfig
from gitops_local.exceptions import (
    DispatchTimeoutError,
    GitOpsException,
    InputException,
    RenderError,
)
from gitops_local.manifest import (
    GitOpsConfig,
    JOB_KIND,
    NamedResource,
    OWNER_LABEL,
    RenderedManifestSet,
    RenderedResource,
)
from gitops_local.source_controller import SourceArtifact, SourceResolver
from gitops_local.store import Store

from .runner import Job, JobRunner

_LOGGER = logging.getLogger(__name__)

JOB_API_VERSION = "batch/v1"
JOB_RUNNING = "Running"
JOB_SUCCEEDED = "Succeeded"
JOB_FAILED = "Failed"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _record_order(record: dict[str, Any]) -> tuple[str, int]:
    """Sort key placing job records in creation order."""
    metadata = record["metadata"]
    uid = str(metadata.get("uid", ""))
    return (metadata.get("creationTimestamp", ""), int(uid) if uid.isdigit() else 0)


def parse_manifests(
    content: str, default_namespace: str | None = None
) -> list[RenderedResource]:
    """Parse a rendered YAML stream, keeping document order."""
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise RenderError(f"Unable to parse template processor output: {err}") from err
    resources: list[RenderedResource] = []
    seen: set[NamedResource] = set()
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise RenderError(
                f"Template processor output expected a resource, found {type(doc).__name__}"
            )
        try:
            resource = RenderedResource.parse_doc(doc, default_namespace)
        except InputException as err:
            raise RenderError(str(err)) from err
        if resource.resource_id in seen:
            raise RenderError(f"Resource {resource.resource_id} rendered more than once")
        seen.add(resource.resource_id)
        resources.append(resource)
    return resources


class TemplateDispatcher:
    """Runs templating jobs for configuration objects."""

    def __init__(
        self,
        store: Store,
        source: SourceResolver,
        runner: JobRunner,
        config: DispatcherConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Store where job records are written
            source: Fetches template and parameter sources
            runner: Executes the templating job
            config: Timeout and job retention settings
            clock: Source of the current time for job retention
        """
        self._store = store
        self._source = source
        self._runner = runner
        self._config = config or DispatcherConfig()
        self._clock = clock or _utcnow

    async def dispatch(self, config: GitOpsConfig) -> RenderedManifestSet:
        """Render the configuration object's sources.

        Raises:
            SourceFetchError: If either source cannot be fetched.
            RenderError: If rendering fails or produces invalid output.
            DispatchTimeoutError: If the job exceeds the configured timeout.
        """
        template, parameters = await asyncio.gather(
            self._source.fetch(config.spec.template_source),
            self._source.fetch(config.spec.parameter_source),
        )
        job = self._new_job(config, template, parameters)
        record = self._create_record(config, job)
        _LOGGER.info(
            "Dispatching job %s for %s (template %s, parameters %s)",
            job.name,
            config.namespaced_name,
            template.revision,
            parameters.revision,
        )
        try:
            try:
                async with asyncio.timeout(self._config.timeout):
                    output = await self._runner.run(job)
            except TimeoutError as err:
                raise DispatchTimeoutError(
                    f"Job {job.name} did not finish within {self._config.timeout}s"
                ) from err
            resources = parse_manifests(output, default_namespace=config.namespace)
        except GitOpsException as err:
            _LOGGER.info("Job %s failed: %s", job.name, err)
            self._finish_record(record, JOB_FAILED, message=str(err))
            raise
        finally:
            self._garbage_collect(config, keep=record)

        self._finish_record(record, JOB_SUCCEEDED, resource_count=len(resources))
        _LOGGER.info("Job %s rendered %d resources", job.name, len(resources))
        return RenderedManifestSet(
            resources=resources,
            template_revision=template.revision,
            parameter_revision=parameters.revision,
        )

    def _new_job(
        self,
        config: GitOpsConfig,
        template: SourceArtifact,
        parameters: SourceArtifact,
    ) -> Job:
        return Job(
            name=f"{config.name}-{uuid.uuid4().hex[:8]}",
            owner=config.resource_id,
            image=config.spec.template_processor_image,
            service_account=config.spec.service_account_ref,
            template_path=Path(template.local_path),
            parameter_path=Path(parameters.local_path),
            template_revision=template.revision,
            parameter_revision=parameters.revision,
        )

    def _create_record(self, config: GitOpsConfig, job: Job) -> dict[str, Any] | None:
        if not self._store.supports_kind(JOB_KIND):
            _LOGGER.debug("Store does not support %s, skipping job record", JOB_KIND)
            return None
        doc = {
            "apiVersion": JOB_API_VERSION,
            "kind": JOB_KIND,
            "metadata": {
                "name": job.name,
                "namespace": config.namespace,
                "labels": {OWNER_LABEL: config.owner_label},
            },
            "spec": {
                "image": job.image,
                "serviceAccountName": job.service_account,
                "templateRevision": job.template_revision,
                "parameterRevision": job.parameter_revision,
            },
            "status": {
                "phase": JOB_RUNNING,
                "startTime": self._clock().isoformat(),
            },
        }
        return self._store.create(doc)

    def _finish_record(
        self,
        record: dict[str, Any] | None,
        phase: str,
        message: str | None = None,
        resource_count: int | None = None,
    ) -> None:
        if record is None:
            return
        record["status"]["phase"] = phase
        record["status"]["completionTime"] = self._clock().isoformat()
        if message is not None:
            record["status"]["message"] = message
        if resource_count is not None:
            record["status"]["resourceCount"] = resource_count
        record["metadata"].pop("resourceVersion", None)
        self._store.replace(record)

    def _garbage_collect(
        self, config: GitOpsConfig, keep: dict[str, Any] | None
    ) -> None:
        """Remove finished job records beyond the history limit or older than the ttl."""
        if not self._store.supports_kind(JOB_KIND):
            return
        records = self._store.list_objects(
            kind=JOB_KIND,
            namespace=config.namespace,
            labels={OWNER_LABEL: config.owner_label},
        )
        records.sort(
            key=_record_order,
            reverse=True,
        )
        keep_name = keep["metadata"]["name"] if keep else None
        now = self._clock()
        for index, record in enumerate(records):
            name = record["metadata"]["name"]
            if name == keep_name:
                continue
            expired = False
            if self._config.job_ttl is not None:
                created = datetime.fromisoformat(record["metadata"]["creationTimestamp"])
                expired = now - created > timedelta(seconds=self._config.job_ttl)
            if index >= self._config.job_history_limit or expired:
                _LOGGER.debug("Removing job record %s", name)
                self._store.delete(NamedResource(JOB_KIND, config.namespace, name))
