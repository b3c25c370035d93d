"""
gitops-local reconciles GitOpsConfig objects into a target environment.

A GitOpsConfig names a template source and a parameter source in git. The
controller renders them with a templating job, applies the rendered resources
to the target and records which resources each object owns, so that resources
dropped from a later render are removed or released.
"""

__all__ = [
    "applier",
    "controller",
    "exceptions",
    "inventory",
    "manifest",
    "orchestrator",
    "trigger",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
