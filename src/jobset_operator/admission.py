"""
Admission defaulting and validation for JobSets.

Both halves are pure functions over plain resource dicts. The webhook
transport in ``main`` only adapts them to Kopf; nothing here touches the
cluster.

Mutability rules
----------------
After creation, a JobSet's spec is frozen except for:

  * the fields in ``ALWAYS_MUTABLE_FIELDS`` (suspending or resuming), and
  * while the persisted JobSet is suspended, the pod template fields in the
    ``mutable_pod_fields`` allow-list, on every member.

Suspension is the maintenance window: no child is expected to run, so
placement can be reshaped without diverging from running replicas.
"""

import copy
import logging
import re
from dataclasses import dataclass

from . import crd
from .config import DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS
from .errors import AdmissionRejected

logger = logging.getLogger(__name__)

# Admission rejection reasons
INVALID_SPEC = "InvalidSpec"
INVALID_SUCCESS_POLICY_TARGET = "InvalidSuccessPolicyTarget"
IMMUTABLE_FIELD_CHANGED = "ImmutableFieldChanged"

# Top-level spec fields that may change whether or not the JobSet is suspended.
ALWAYS_MUTABLE_FIELDS = ("suspend",)

SUSPENDED_MUTABLE_POD_FIELDS = DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS

OPERATIONS_CREATE = "CREATE"
OPERATIONS_UPDATE = "UPDATE"
OPERATIONS_DELETE = "DELETE"

_DNS_1035_LABEL = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission review."""

    allowed: bool
    reason: str = ""
    message: str = ""

    @classmethod
    def accept(cls):
        return cls(allowed=True)

    @classmethod
    def reject(cls, reason, message):
        return cls(allowed=False, reason=reason, message=message)


# Defaulting


def default_jobset_spec(spec):
    """Return a deep copy of ``spec`` with every unset field defaulted.

    Idempotent: defaulting an already-defaulted spec yields an equal dict.
    Values of the wrong shape are left alone for validation to reject.
    """
    spec = copy.deepcopy(dict(spec or {}))

    for member in spec.get("members") or []:
        if not isinstance(member, dict):
            continue
        _default_member(member)

    success_policy = spec.get("successPolicy")
    if success_policy is None:
        spec["successPolicy"] = {"operator": crd.OPERATOR_ALL, "targets": []}
    elif isinstance(success_policy, dict):
        if success_policy.get("operator") is None:
            success_policy["operator"] = crd.OPERATOR_ALL
        if success_policy.get("targets") is None:
            success_policy["targets"] = []

    if spec.get("suspend") is None:
        spec["suspend"] = False

    return spec


def _default_member(member):
    if member.get("replicas") is None:
        member["replicas"] = 1

    network = member.get("network")
    if network is None:
        member["network"] = {"enableDNSHostnames": True}
    elif isinstance(network, dict) and network.get("enableDNSHostnames") is None:
        network["enableDNSHostnames"] = True

    job_template = member.get("jobTemplate")
    if not isinstance(job_template, dict):
        return
    job_spec = job_template.setdefault("spec", {})
    if not isinstance(job_spec, dict):
        return
    if job_spec.get("completionMode") is None:
        job_spec["completionMode"] = crd.COMPLETION_MODE_INDEXED

    pod_template = job_spec.get("template")
    if isinstance(pod_template, dict):
        pod_spec = pod_template.setdefault("spec", {})
        if isinstance(pod_spec, dict) and not pod_spec.get("restartPolicy"):
            pod_spec["restartPolicy"] = crd.RESTART_POLICY_ON_FAILURE


# Validation


def review(operation, candidate, prior=None, mutable_pod_fields=SUSPENDED_MUTABLE_POD_FIELDS):
    """Decide whether a JobSet write may be persisted.

    ``candidate`` and ``prior`` are whole resource bodies (metadata, spec,
    status); ``prior`` is None on create. Both specs are compared in their
    defaulted form.
    """
    if operation == OPERATIONS_DELETE:
        return AdmissionDecision.accept()

    try:
        candidate = candidate or {}
        name = (candidate.get("metadata") or {}).get("name")
        spec = default_jobset_spec(candidate.get("spec"))
        validate_spec(spec, jobset_name=name)
        if operation == OPERATIONS_UPDATE and prior is not None:
            validate_update(prior, spec, mutable_pod_fields=mutable_pod_fields)
    except AdmissionRejected as e:
        logger.info(f"Rejected {operation} of JobSet {name}: {e}")
        return AdmissionDecision.reject(e.reason, e.message)
    return AdmissionDecision.accept()


def validate_spec(spec, jobset_name=None):
    """Structural checks shared by create and update."""
    members = spec.get("members")
    if not isinstance(members, list) or not members:
        raise AdmissionRejected(INVALID_SPEC, "spec.members must list at least one replicated job")

    seen = set()
    for i, member in enumerate(members):
        path = f"spec.members[{i}]"
        if not isinstance(member, dict):
            raise AdmissionRejected(INVALID_SPEC, f"{path} must be an object")
        name = member.get("name")
        if not isinstance(name, str) or not _DNS_1035_LABEL.match(name):
            raise AdmissionRejected(INVALID_SPEC, f"{path}.name {name!r} must be a DNS-1035 label")
        if name in seen:
            raise AdmissionRejected(INVALID_SPEC, f"{path}.name {name!r} is duplicated")
        seen.add(name)

        replicas = member.get("replicas")
        if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 1:
            raise AdmissionRejected(INVALID_SPEC, f"{path}.replicas must be a positive integer, got {replicas!r}")

        if jobset_name:
            longest = crd.job_name(jobset_name, name, replicas - 1)
            if len(longest) > crd.MAX_NAME_LENGTH:
                raise AdmissionRejected(
                    INVALID_SPEC,
                    f"child job name {longest!r} exceeds {crd.MAX_NAME_LENGTH} characters",
                )

        job_spec = _job_spec(member)
        if job_spec is None or not isinstance(job_spec.get("template"), dict):
            raise AdmissionRejected(INVALID_SPEC, f"{path}.jobTemplate.spec.template must be a pod template")

        network = member.get("network") or {}
        if not isinstance(network, dict):
            raise AdmissionRejected(INVALID_SPEC, f"{path}.network must be an object")
        if network.get("enableDNSHostnames") and job_spec.get("completionMode") != crd.COMPLETION_MODE_INDEXED:
            raise AdmissionRejected(
                INVALID_SPEC,
                f"{path}: enableDNSHostnames requires {crd.COMPLETION_MODE_INDEXED} completion mode",
            )

    failure_policy = spec.get("failurePolicy")
    if failure_policy is not None:
        max_restarts = failure_policy.get("maxRestarts", 0) if isinstance(failure_policy, dict) else None
        if isinstance(max_restarts, bool) or not isinstance(max_restarts, int) or max_restarts < 0:
            raise AdmissionRejected(INVALID_SPEC, "spec.failurePolicy.maxRestarts must be a non-negative integer")

    success_policy = spec.get("successPolicy") or {}
    if not isinstance(success_policy, dict):
        raise AdmissionRejected(INVALID_SPEC, "spec.successPolicy must be an object")
    operator = success_policy.get("operator")
    if operator not in (crd.OPERATOR_ALL, crd.OPERATOR_ANY):
        raise AdmissionRejected(
            INVALID_SPEC,
            f"spec.successPolicy.operator must be {crd.OPERATOR_ALL} or {crd.OPERATOR_ANY}, got {operator!r}",
        )
    targets = success_policy.get("targets") or []
    if not isinstance(targets, list) or not all(isinstance(target, str) for target in targets):
        raise AdmissionRejected(INVALID_SPEC, "spec.successPolicy.targets must be a list of names")
    for target in targets:
        if target not in seen:
            raise AdmissionRejected(
                INVALID_SUCCESS_POLICY_TARGET,
                f"spec.successPolicy.targets names {target!r}, which is not a replicated job in this JobSet",
            )


def validate_update(prior, spec, mutable_pod_fields=SUSPENDED_MUTABLE_POD_FIELDS):
    """Reject changes outside the fields the persisted JobSet allows to change."""
    prior_spec = default_jobset_spec(prior.get("spec"))
    conditions = (prior.get("status") or {}).get("conditions") or []
    finished = [
        c["type"] for c in conditions
        if c.get("type") in crd.TERMINAL_CONDITIONS and c.get("status") == "True"
    ]
    if finished:
        if spec != prior_spec:
            raise AdmissionRejected(
                IMMUTABLE_FIELD_CHANGED,
                f"JobSet is {finished[0]}; its spec can no longer change",
            )
        return

    old = _mask_mutable(prior_spec, prior_spec, mutable_pod_fields, prior_spec.get("suspend"))
    new = _mask_mutable(spec, prior_spec, mutable_pod_fields, prior_spec.get("suspend"))
    path = first_difference(old, new, "spec")
    if path is not None:
        state = "suspended" if prior_spec.get("suspend") else "running"
        raise AdmissionRejected(IMMUTABLE_FIELD_CHANGED, f"{path} is immutable while the JobSet is {state}")


def _mask_mutable(spec, prior_spec, mutable_pod_fields, suspended):
    """Copy of ``spec`` with every currently mutable field taken from ``prior_spec``."""
    masked = copy.deepcopy(spec)
    for field in ALWAYS_MUTABLE_FIELDS:
        _copy_key(masked, prior_spec, field)

    members = masked.get("members")
    prior_members = prior_spec.get("members") or []
    if not suspended or not isinstance(members, list) or len(members) != len(prior_members):
        return masked

    for member, prior_member in zip(members, prior_members):
        pod_spec = _pod_spec(member)
        prior_pod_spec = _pod_spec(prior_member)
        if pod_spec is None or prior_pod_spec is None:
            continue
        for field in mutable_pod_fields:
            _copy_key(pod_spec, prior_pod_spec, field)
    return masked


def _copy_key(target, source, key):
    if key in source:
        target[key] = copy.deepcopy(source[key])
    else:
        target.pop(key, None)


def _job_spec(member):
    job_template = member.get("jobTemplate")
    if not isinstance(job_template, dict):
        return None
    job_spec = job_template.get("spec")
    return job_spec if isinstance(job_spec, dict) else None


def _pod_spec(member):
    job_spec = _job_spec(member) if isinstance(member, dict) else None
    pod_template = (job_spec or {}).get("template")
    if not isinstance(pod_template, dict):
        return None
    pod_spec = pod_template.get("spec")
    return pod_spec if isinstance(pod_spec, dict) else None


def first_difference(old, new, path):
    """Dotted path of the first place two JSON-like values differ, else None."""
    if isinstance(old, dict) and isinstance(new, dict):
        for key in list(old) + [k for k in new if k not in old]:
            if key not in old or key not in new:
                return f"{path}.{key}"
            found = first_difference(old[key], new[key], f"{path}.{key}")
            if found is not None:
                return found
        return None
    if isinstance(old, list) and isinstance(new, list):
        if len(old) != len(new):
            return path
        for i, (a, b) in enumerate(zip(old, new)):
            found = first_difference(a, b, f"{path}[{i}]")
            if found is not None:
                return found
        return None
    return None if old == new else path
