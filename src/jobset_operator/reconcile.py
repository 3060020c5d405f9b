"""Core reconciliation logic."""

import logging

from pydantic import ValidationError

from . import crd
from .admission import default_jobset_spec
from .config import DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS
from .errors import NotFoundError, PermanentModelError
from .lifecycle import delete_jobs, manage_children, owned_jobs, stop_active_jobs
from .models import JobSetSpec, JobSetStatus
from .policy import Action, apply_decision, evaluate
from .status import aggregate, is_finished, set_condition

logger = logging.getLogger(__name__)


def parse_spec(jobset):
    """Defaulted, typed spec of a JobSet body."""
    try:
        return JobSetSpec.model_validate(default_jobset_spec(jobset.get("spec")))
    except ValidationError as e:
        raise PermanentModelError(f"invalid JobSet spec: {e}") from e


def reconcile_jobset(store, namespace, name, config=None, now=None):
    """Reconcile one JobSet and return the status it persisted, if any.

    A spec the API server will not accept is reported on the JobSet as a
    Failed condition instead of being retried.
    """
    try:
        return _reconcile(store, namespace, name, config, now)
    except PermanentModelError as e:
        logger.error(f"JobSet {namespace}/{name} cannot be reconciled: {e}")
        return _report_permanent_error(store, namespace, name, e, now)


def _reconcile(store, namespace, name, config, now):
    jobset = store.get_jobset(namespace, name)
    metadata = jobset.get("metadata") or {}
    if metadata.get("deletionTimestamp"):
        logger.info(f"JobSet {namespace}/{name} is being deleted, skipping")
        return None

    status = JobSetStatus.from_body(jobset.get("status"))
    spec = parse_spec(jobset)
    jobs = store.list_jobs(namespace, name)

    if is_finished(status.conditions):
        # Terminal: only make sure nothing is left running.
        stopped = stop_active_jobs(store, namespace, owned_jobs(jobs, metadata.get("uid")))
        if stopped:
            logger.info(f"Stopped {stopped} active Jobs of finished JobSet {namespace}/{name}")
        return None

    mutable_pod_fields = config.suspended_mutable_pod_fields if config else DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS
    current = manage_children(store, metadata, spec, jobs, status.restarts, mutable_pod_fields)

    member_statuses = aggregate(spec, current)
    decision = evaluate(spec, member_statuses, status)
    new_status = apply_decision(status, decision, member_statuses, now)

    if new_status.to_dict() != status.to_dict():
        logger.info(
            f"Updating status of JobSet {namespace}/{name} "
            f"(decision: {decision.action.value}, restarts: {new_status.restarts})"
        )
        store.patch_jobset_status(
            namespace, name, new_status.to_dict(), metadata.get("resourceVersion")
        )

    # Child side effects only once the decision is durable.
    if decision.action == Action.RESTART:
        deleted = delete_jobs(store, namespace, current)
        logger.info(f"Restarting JobSet {namespace}/{name}: deleted {deleted} Jobs")
    elif decision.action in (Action.COMPLETE, Action.FAIL):
        stopped = stop_active_jobs(store, namespace, current)
        logger.info(f"JobSet {namespace}/{name} finished ({decision.reason}); stopped {stopped} active Jobs")

    return new_status


def _report_permanent_error(store, namespace, name, error, now):
    try:
        jobset = store.get_jobset(namespace, name)
    except NotFoundError:
        return None

    status = JobSetStatus.from_body(jobset.get("status"))
    conditions = set_condition(
        status.conditions, crd.CONDITION_FAILED, True, crd.REASON_INVALID_SPEC, str(error), now
    )
    new_status = JobSetStatus(
        conditions=conditions, restarts=status.restarts, per_member=status.per_member
    )
    if new_status.to_dict() != status.to_dict():
        store.patch_jobset_status(
            namespace, name, new_status.to_dict(), (jobset.get("metadata") or {}).get("resourceVersion")
        )
    return new_status
