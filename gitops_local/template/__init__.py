"""Template processing module.

This module runs templating jobs that merge a parameter source into a
template source and collects the rendered manifest set.
"""

from .dispatcher import TemplateDispatcher, parse_manifests
from .runner import Job, JobRunner, LocalJobRunner, CommandJobRunner

__all__ = [
    "TemplateDispatcher",
    "parse_manifests",
    "Job",
    "JobRunner",
    "LocalJobRunner",
    "CommandJobRunner",
]
