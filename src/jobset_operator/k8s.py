"""Kubernetes client helpers."""

import logging
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from . import crd
from .errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    PermanentModelError,
    TransientCollaboratorError,
)

logger = logging.getLogger(__name__)

# Initialize clients
_batch_api = None
_core_api = None
_custom_api = None


def init_clients():
    """Initialize Kubernetes clients."""
    global _batch_api, _core_api, _custom_api

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")

    _batch_api = client.BatchV1Api()
    _core_api = client.CoreV1Api()
    _custom_api = client.CustomObjectsApi()

    return _batch_api, _core_api, _custom_api


def get_clients():
    """Get initialized Kubernetes clients."""
    if _batch_api is None or _core_api is None or _custom_api is None:
        init_clients()
    return _batch_api, _core_api, _custom_api


def translate_api_error(e, what, creating=False):
    """Map an ApiException onto the operator's error taxonomy."""
    if e.status == 404:
        return NotFoundError(f"{what} not found")
    if e.status == 409:
        if creating:
            return AlreadyExistsError(f"{what} already exists")
        return ConflictError(f"{what} was modified concurrently")
    if e.status in (400, 422):
        return PermanentModelError(f"{what} rejected by the API server: {e.reason}: {e.body}")
    return TransientCollaboratorError(f"{what}: API error {e.status} {e.reason}")


class ClusterStore:
    """The cluster object store the reconciler reads and writes through.

    Every object comes back as a camelCase dict, the same shape Kopf hands to
    handlers, so the reconciler never depends on client model classes.
    """

    def __init__(self, batch_api=None, core_api=None, custom_api=None):
        if batch_api is None or core_api is None or custom_api is None:
            batch_api, core_api, custom_api = get_clients()
        self._batch = batch_api
        self._core = core_api
        self._custom = custom_api
        self._serializer = client.ApiClient()

    def _call(self, what, fn, creating=False, **kwargs):
        try:
            return fn(**kwargs)
        except ApiException as e:
            raise translate_api_error(e, what, creating=creating) from e
        except HTTPError as e:
            raise TransientCollaboratorError(f"{what}: {e}") from e

    def _to_dict(self, obj):
        return self._serializer.sanitize_for_serialization(obj)

    def get_jobset(self, namespace, name):
        """Read a JobSet."""
        return self._call(
            f"JobSet {namespace}/{name}",
            self._custom.get_namespaced_custom_object,
            group=crd.GROUP,
            version=crd.VERSION,
            namespace=namespace,
            plural=crd.PLURAL,
            name=name,
        )

    def patch_jobset_status(self, namespace, name, status, resource_version):
        """Write the status subresource, guarded by the resource version we read."""
        body = {"metadata": {"resourceVersion": resource_version}, "status": status}
        return self._call(
            f"JobSet {namespace}/{name} status",
            self._custom.patch_namespaced_custom_object_status,
            group=crd.GROUP,
            version=crd.VERSION,
            namespace=namespace,
            plural=crd.PLURAL,
            name=name,
            body=body,
        )

    def list_jobs(self, namespace, jobset_name):
        """List Jobs labelled as children of a JobSet."""
        jobs = self._call(
            f"Jobs of JobSet {namespace}/{jobset_name}",
            self._batch.list_namespaced_job,
            namespace=namespace,
            label_selector=f"{crd.LABEL_JOBSET_NAME}={jobset_name}",
        )
        return [self._to_dict(job) for job in jobs.items]

    def create_job(self, namespace, body):
        """Create a Job."""
        name = body.metadata.name if isinstance(body, client.V1Job) else body["metadata"]["name"]
        job = self._call(
            f"Job {namespace}/{name}",
            self._batch.create_namespaced_job,
            creating=True,
            namespace=namespace,
            body=body,
        )
        logger.info(f"Job {namespace}/{name} created")
        return self._to_dict(job)

    def patch_job(self, namespace, name, body):
        """JSON merge-patch a Job; None values remove keys and lists are replaced whole."""
        job = self._call(
            f"Job {namespace}/{name}",
            self._batch.patch_namespaced_job,
            namespace=namespace,
            name=name,
            body=body,
            _content_type="application/merge-patch+json",
        )
        return self._to_dict(job)

    def delete_job(self, namespace, name):
        """Delete a Job and, before it disappears, its pods."""
        try:
            self._call(
                f"Job {namespace}/{name}",
                self._batch.delete_namespaced_job,
                namespace=namespace,
                name=name,
                propagation_policy="Foreground",
            )
            logger.info(f"Deleted Job {namespace}/{name}")
        except NotFoundError:
            logger.debug(f"Job {namespace}/{name} already gone")

    def get_service(self, namespace, name):
        """Read a Service, or None if it does not exist."""
        try:
            service = self._call(
                f"Service {namespace}/{name}",
                self._core.read_namespaced_service,
                namespace=namespace,
                name=name,
            )
        except NotFoundError:
            return None
        return self._to_dict(service)

    def create_service(self, namespace, body):
        """Create a Service."""
        name = body.metadata.name if isinstance(body, client.V1Service) else body["metadata"]["name"]
        service = self._call(
            f"Service {namespace}/{name}",
            self._core.create_namespaced_service,
            creating=True,
            namespace=namespace,
            body=body,
        )
        logger.info(f"Service {namespace}/{name} created")
        return self._to_dict(service)
