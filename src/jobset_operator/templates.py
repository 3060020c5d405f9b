"""Kubernetes resource templates."""

import copy

from kubernetes import client

from . import crd


def create_owner_reference(jobset_name, uid):
    """Controller owner reference back to the JobSet, for cascading deletion."""
    return client.V1OwnerReference(
        api_version=crd.API_VERSION,
        kind=crd.KIND,
        name=jobset_name,
        uid=uid,
        controller=True,
        block_owner_deletion=True,
    )


def child_labels(jobset_name, replicated_job_name, job_index=None, restart_attempt=None):
    """Labels identifying a child of a JobSet member."""
    labels = {
        crd.LABEL_JOBSET_NAME: jobset_name,
        crd.LABEL_REPLICATED_JOB_NAME: replicated_job_name,
    }
    if job_index is not None:
        labels[crd.LABEL_JOB_INDEX] = str(job_index)
    if restart_attempt is not None:
        labels[crd.LABEL_RESTART_ATTEMPT] = str(restart_attempt)
    return labels


def create_job_manifest(jobset_name, namespace, uid, replicated_job, job_index, restart_attempt, suspend):
    """Create the child Job manifest for one replica of a member."""
    template = copy.deepcopy(replicated_job.job_template)
    labels = child_labels(jobset_name, replicated_job.name, job_index, restart_attempt)

    template_metadata = template.get("metadata") or {}
    job_labels = dict(template_metadata.get("labels") or {})
    job_labels.update(labels)
    annotations = dict(template_metadata.get("annotations") or {})

    job_spec = template.get("spec") or {}
    pod_template = job_spec.setdefault("template", {})
    pod_metadata = pod_template.setdefault("metadata", {})
    pod_labels = dict(pod_metadata.get("labels") or {})
    pod_labels.update(labels)
    pod_metadata["labels"] = pod_labels

    pod_spec = pod_template.setdefault("spec", {})
    if replicated_job.dns_hostnames_enabled:
        pod_spec["subdomain"] = crd.service_name(jobset_name, replicated_job.name)

    job_spec["suspend"] = suspend

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=crd.job_name(jobset_name, replicated_job.name, job_index),
            namespace=namespace,
            labels=job_labels,
            annotations=annotations or None,
            owner_references=[create_owner_reference(jobset_name, uid)],
        ),
        spec=job_spec,
    )


def create_service_manifest(jobset_name, namespace, uid, replicated_job_name):
    """Create the headless Service giving a member's pods stable DNS names."""
    labels = child_labels(jobset_name, replicated_job_name)
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=crd.service_name(jobset_name, replicated_job_name),
            namespace=namespace,
            labels=labels,
            owner_references=[create_owner_reference(jobset_name, uid)],
        ),
        spec=client.V1ServiceSpec(
            cluster_ip="None",
            selector=labels,
            publish_not_ready_addresses=True,
        ),
    )
