"""Fold observed child Jobs into per-member and JobSet status."""

from datetime import datetime, timezone

from . import crd
from .models import Condition, MemberStatus

MEMBER_ACTIVE = "Active"
MEMBER_COMPLETED = "Completed"
MEMBER_FAILED = "Failed"

JOB_COMPLETE = "Complete"
JOB_FAILED = "Failed"


def now_timestamp():
    """Current UTC time in the RFC 3339 form Kubernetes uses for conditions."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _job_condition(job, condition_type):
    for condition in (job.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type and condition.get("status") == "True":
            return True
    return False


def job_succeeded(job):
    return _job_condition(job, JOB_COMPLETE)


def job_failed(job):
    return _job_condition(job, JOB_FAILED)


def job_finished(job):
    """A Job is finished once it carries a true Complete or Failed condition."""
    return job_succeeded(job) or job_failed(job)


def job_suspended(job):
    return bool((job.get("spec") or {}).get("suspend"))


def job_member_name(job):
    return ((job.get("metadata") or {}).get("labels") or {}).get(crd.LABEL_REPLICATED_JOB_NAME)


def aggregate_member(replicated_job, jobs):
    """Status of one member computed from its current child Jobs."""
    active = succeeded = failed = 0
    for job in jobs:
        if job_failed(job):
            failed += 1
        elif job_succeeded(job):
            succeeded += 1
        else:
            active += 1

    if failed > 0:
        phase = MEMBER_FAILED
    elif succeeded >= replicated_job.replicas:
        phase = MEMBER_COMPLETED
    else:
        phase = MEMBER_ACTIVE

    return MemberStatus(
        name=replicated_job.name,
        active=active,
        succeeded=succeeded,
        failed=failed,
        phase=phase,
    )


def aggregate(spec, jobs):
    """Per-member statuses, in member order, for the given current children."""
    by_member = {}
    for job in jobs:
        by_member.setdefault(job_member_name(job), []).append(job)
    return [aggregate_member(member, by_member.get(member.name, [])) for member in spec.members]


# Conditions


def get_condition(conditions, condition_type):
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(conditions, condition_type):
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.is_true


def is_finished(conditions):
    return any(is_condition_true(conditions, t) for t in crd.TERMINAL_CONDITIONS)


def set_condition(conditions, condition_type, status, reason, message=None, now=None):
    """Return a new condition list with ``condition_type`` set.

    The transition time moves only when the status flips; an unknown type is
    appended so the list keeps its order.
    """
    status = "True" if status is True else "False" if status is False else status
    updated = []
    found = False
    for condition in conditions:
        if condition.type != condition_type:
            updated.append(condition)
            continue
        found = True
        transition = condition.last_transition_time
        if condition.status != status:
            transition = now or now_timestamp()
        updated.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=transition,
            )
        )
    if not found:
        updated.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=now or now_timestamp(),
            )
        )
    return updated
