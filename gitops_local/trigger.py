"""Trigger evaluation.

Decides whether a configuration object is due for reconciliation, comparing
what was recorded after the last successful apply against the current source
revisions, the current spec and the explicit re-trigger annotation.

Evaluation has no side effects. The revisions in the decision are recorded by
the controller only once the apply they produced succeeds.
"""

from dataclasses import dataclass
import logging

from .manifest import GitOpsConfig, TriggerType

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "TriggerDecision",
    "evaluate",
]

REASON_INITIAL = "Initial"
REASON_REQUESTED = "Requested"
REASON_TEMPLATE_CHANGED = "TemplateChanged"
REASON_PARAMETERS_CHANGED = "ParametersChanged"
REASON_SPEC_CHANGED = "SpecChanged"
REASON_UP_TO_DATE = "UpToDate"
REASON_NO_TRIGGER = "NoTrigger"


@dataclass(frozen=True)
class TriggerDecision:
    """Whether reconciliation is due, and the values to record on success."""

    due: bool
    reason: str
    template_revision: str | None
    parameter_revision: str | None
    spec_hash: str
    trigger_token: str | None

    def __bool__(self) -> bool:
        return self.due


def evaluate(
    config: GitOpsConfig,
    template_revision: str | None,
    parameter_revision: str | None,
) -> TriggerDecision:
    """Evaluate the triggers of a configuration object.

    An object that was never successfully processed is always due. An explicit
    re-trigger (a new value of the reconcile-requested annotation) makes it due
    once. With a `Change` trigger, it is due when either source revision or the
    spec differs from what was last processed. Without any trigger it is not
    reconciled again automatically.
    """
    status = config.status
    spec_hash = config.spec_hash()
    token = config.trigger_token

    def decide(due: bool, reason: str) -> TriggerDecision:
        _LOGGER.debug("Trigger for %s: due=%s (%s)", config.namespaced_name, due, reason)
        return TriggerDecision(
            due=due,
            reason=reason,
            template_revision=template_revision,
            parameter_revision=parameter_revision,
            spec_hash=spec_hash,
            trigger_token=token,
        )

    if not status.processed:
        return decide(True, REASON_INITIAL)
    if token is not None and token != status.last_trigger_token:
        return decide(True, REASON_REQUESTED)
    if not config.spec.has_trigger(TriggerType.CHANGE):
        return decide(False, REASON_NO_TRIGGER)
    if template_revision != status.last_template_revision:
        return decide(True, REASON_TEMPLATE_CHANGED)
    if parameter_revision != status.last_parameter_revision:
        return decide(True, REASON_PARAMETERS_CHANGED)
    if spec_hash != status.last_spec_hash:
        return decide(True, REASON_SPEC_CHANGED)
    return decide(False, REASON_UP_TO_DATE)
