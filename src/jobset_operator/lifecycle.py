"""Create, patch and delete the child Jobs and Services of a JobSet."""

import logging
from dataclasses import dataclass, field
from typing import List

from . import crd
from .config import DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS
from .errors import AlreadyExistsError
from .status import job_finished, job_suspended
from .templates import create_job_manifest, create_service_manifest

logger = logging.getLogger(__name__)


@dataclass
class Children:
    """Owned child Jobs split by whether they belong to the current attempt."""

    current: List[dict] = field(default_factory=list)
    stale: List[dict] = field(default_factory=list)


def _metadata(obj):
    return obj.get("metadata") or {}


def _label_int(job, label):
    try:
        return int((_metadata(job).get("labels") or {}).get(label))
    except (TypeError, ValueError):
        return None


def is_terminating(obj):
    return _metadata(obj).get("deletionTimestamp") is not None


def owned_jobs(jobs, uid):
    """Jobs whose controller owner reference points at this JobSet incarnation."""
    owned = []
    for job in jobs:
        for ref in _metadata(job).get("ownerReferences") or []:
            if ref.get("controller") and ref.get("uid") == uid:
                owned.append(job)
                break
    return owned


def partition_jobs(spec, jobs, restarts):
    """Split children into the current attempt and everything to be removed.

    A child is current when it belongs to a declared member, its index is
    within the replica count, it was created for the current restart attempt
    and it is not already being deleted.
    """
    children = Children()
    for job in jobs:
        labels = _metadata(job).get("labels") or {}
        member = spec.member(labels.get(crd.LABEL_REPLICATED_JOB_NAME))
        index = _label_int(job, crd.LABEL_JOB_INDEX)
        attempt = _label_int(job, crd.LABEL_RESTART_ATTEMPT)
        if (
            member is not None
            and index is not None
            and 0 <= index < member.replicas
            and attempt == restarts
            and not is_terminating(job)
        ):
            children.current.append(job)
        else:
            children.stale.append(job)
    return children


def delete_jobs(store, namespace, jobs):
    """Delete every Job not already terminating."""
    deleted = 0
    for job in jobs:
        if is_terminating(job):
            continue
        store.delete_job(namespace, _metadata(job)["name"])
        deleted += 1
    return deleted


def stop_active_jobs(store, namespace, jobs):
    """Delete unfinished Jobs; finished ones stay for inspection."""
    return delete_jobs(store, namespace, [job for job in jobs if not job_finished(job)])


def ensure_services(store, name, namespace, uid, spec):
    """Ensure each DNS-enabled member has its headless Service."""
    for member in spec.members:
        if not member.dns_hostnames_enabled:
            continue
        service_name = crd.service_name(name, member.name)
        if store.get_service(namespace, service_name) is not None:
            continue
        logger.info(f"Creating headless Service {namespace}/{service_name}")
        try:
            store.create_service(namespace, create_service_manifest(name, namespace, uid, member.name))
        except AlreadyExistsError:
            logger.debug(f"Service {namespace}/{service_name} created concurrently")


def ensure_jobs(store, name, namespace, uid, spec, taken_names, restarts):
    """Create every missing child Job of the current attempt.

    Names still held by an existing (possibly terminating) Job are skipped;
    the next pass creates them once the old Job is gone.
    """
    created = []
    for member in spec.members:
        for index in range(member.replicas):
            job_name = crd.job_name(name, member.name, index)
            if job_name in taken_names:
                continue
            body = create_job_manifest(name, namespace, uid, member, index, restarts, spec.suspend)
            try:
                created.append(store.create_job(namespace, body))
            except AlreadyExistsError:
                logger.debug(f"Job {namespace}/{job_name} already exists")
    return created


def _patch_value(current, desired):
    """Merge-patch value turning ``current`` into ``desired``; removed keys become None."""
    if isinstance(current, dict) and isinstance(desired, dict):
        value = {key: _patch_value(current.get(key), val) for key, val in desired.items()}
        value.update({key: None for key in current if key not in desired})
        return value
    return desired


def sync_suspend(store, namespace, spec, jobs, mutable_pod_fields=DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS):
    """Suspend or resume unfinished children to match the JobSet.

    Resuming carries the template's placement fields along, since those may
    have been edited while the JobSet was suspended.
    """
    synced = []
    for job in jobs:
        if job_finished(job) or job_suspended(job) == spec.suspend:
            synced.append(job)
            continue

        job_spec = {"suspend": spec.suspend}
        if not spec.suspend:
            member = spec.member((_metadata(job).get("labels") or {}).get(crd.LABEL_REPLICATED_JOB_NAME))
            pod_spec = ((job.get("spec") or {}).get("template") or {}).get("spec") or {}
            placement = {}
            for field_name in mutable_pod_fields:
                desired = member.pod_spec.get(field_name)
                if pod_spec.get(field_name) != desired:
                    placement[field_name] = _patch_value(pod_spec.get(field_name), desired)
            if placement:
                job_spec["template"] = {"spec": placement}

        job_name = _metadata(job)["name"]
        action = "Suspending" if spec.suspend else "Resuming"
        logger.info(f"{action} Job {namespace}/{job_name}")
        synced.append(store.patch_job(namespace, job_name, {"spec": job_spec}))
    return synced


def manage_children(store, metadata, spec, jobs, restarts, mutable_pod_fields=DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS):
    """Drive the child set towards the spec and return the current children.

    With no drift this issues no writes.
    """
    name = metadata["name"]
    namespace = metadata["namespace"]
    uid = metadata.get("uid")

    children = partition_jobs(spec, owned_jobs(jobs, uid), restarts)
    deleted = delete_jobs(store, namespace, children.stale)
    if deleted:
        logger.info(f"Deleted {deleted} stale Jobs of JobSet {namespace}/{name}")

    ensure_services(store, name, namespace, uid, spec)

    current = sync_suspend(store, namespace, spec, children.current, mutable_pod_fields)
    if not spec.suspend:
        taken_names = {_metadata(job).get("name") for job in jobs}
        current.extend(ensure_jobs(store, name, namespace, uid, spec, taken_names, restarts))
    return current
