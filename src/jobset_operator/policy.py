"""Success, failure and suspension policy for a JobSet.

``evaluate`` picks the next lifecycle transition from aggregated member
status; ``apply_decision`` turns that transition into the new status. Neither
touches the cluster: acting on a decision is the reconciler's job, and it only
does so after the new status has been persisted.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from . import crd
from .models import JobSetStatus, Operator
from .status import MEMBER_COMPLETED, MEMBER_FAILED, is_condition_true, set_condition

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CONTINUE = "Continue"
    SUSPEND = "Suspend"
    RESUME = "Resume"
    RESTART = "Restart"
    COMPLETE = "Complete"
    FAIL = "Fail"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str = ""
    message: str = ""


def success_policy_met(spec, member_statuses):
    """Whether the targeted members satisfy the success policy operator."""
    phases = {ms.name: ms.phase for ms in member_statuses}
    targets = spec.success_policy.target_names(spec.members)
    completed = [phases.get(name) == MEMBER_COMPLETED for name in targets]
    if not completed:
        return False
    if spec.success_policy.operator == Operator.ANY:
        return any(completed)
    return all(completed)


def evaluate(spec, member_statuses, status):
    """Decide the JobSet's next transition."""
    if spec.suspend:
        return Decision(Action.SUSPEND, crd.REASON_SUSPENDED, "JobSet suspended")

    if is_condition_true(status.conditions, crd.CONDITION_SUSPENDED):
        return Decision(Action.RESUME, crd.REASON_RESUMED, "JobSet resumed")

    failed = [ms.name for ms in member_statuses if ms.phase == MEMBER_FAILED]
    if failed:
        names = ", ".join(failed)
        if status.restarts < spec.max_restarts:
            return Decision(
                Action.RESTART,
                message=f"restarting after failure of {names} (attempt {status.restarts + 1} of {spec.max_restarts})",
            )
        if spec.failure_policy is not None:
            return Decision(
                Action.FAIL,
                crd.REASON_MAX_RESTARTS,
                f"jobset failed after {status.restarts} restarts; last failure in {names}",
            )
        return Decision(Action.FAIL, crd.REASON_FAILED_JOBS, f"jobset failed due to job failures in {names}")

    if success_policy_met(spec, member_statuses):
        return Decision(
            Action.COMPLETE,
            crd.REASON_SUCCESS_POLICY,
            f"success policy {spec.success_policy.operator.value} satisfied",
        )

    return Decision(Action.CONTINUE)


def apply_decision(status, decision, member_statuses, now=None):
    """New status after ``decision``; restarts never go backwards."""
    conditions = list(status.conditions)
    restarts = status.restarts
    resuming = is_condition_true(conditions, crd.CONDITION_RESUMING)

    if decision.action == Action.SUSPEND:
        conditions = set_condition(
            conditions, crd.CONDITION_SUSPENDED, True, decision.reason, decision.message, now
        )
        if resuming:
            conditions = set_condition(
                conditions, crd.CONDITION_RESUMING, False, decision.reason, decision.message, now
            )
    elif decision.action == Action.RESUME:
        conditions = set_condition(
            conditions, crd.CONDITION_SUSPENDED, False, decision.reason, decision.message, now
        )
        conditions = set_condition(
            conditions, crd.CONDITION_RESUMING, True, decision.reason, decision.message, now
        )
    elif decision.action == Action.RESTART:
        restarts += 1
        logger.info(decision.message)
    elif decision.action == Action.COMPLETE:
        conditions = set_condition(
            conditions, crd.CONDITION_COMPLETED, True, decision.reason, decision.message, now
        )
    elif decision.action == Action.FAIL:
        conditions = set_condition(
            conditions, crd.CONDITION_FAILED, True, decision.reason, decision.message, now
        )

    if resuming and decision.action not in (Action.SUSPEND, Action.RESUME):
        conditions = set_condition(
            conditions, crd.CONDITION_RESUMING, False, crd.REASON_JOBS_RESUMED, "jobs resumed", now
        )

    return JobSetStatus(
        conditions=conditions,
        restarts=max(restarts, status.restarts),
        per_member=member_statuses,
    )
