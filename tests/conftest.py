import copy
import itertools

import pytest
from kubernetes.client import ApiClient

from jobset_operator import crd
from jobset_operator.errors import AlreadyExistsError, ConflictError, NotFoundError

_serializer = ApiClient()

TEST_POD_SPEC = {
    "containers": [
        {"name": "test-container", "image": "busybox:latest"},
    ],
}


def make_member(name="rjob", replicas=1, pod_spec=None, completion_mode=None, network=None):
    """A member template the way a user would write it."""
    job_spec = {"template": {"spec": copy.deepcopy(pod_spec or TEST_POD_SPEC)}}
    if completion_mode:
        job_spec["completionMode"] = completion_mode
    member = {"name": name, "replicas": replicas, "jobTemplate": {"spec": job_spec}}
    if network is not None:
        member["network"] = network
    return member


def make_jobset(name="js", namespace="default", members=None, suspend=None,
                success_policy=None, failure_policy=None, status=None):
    spec = {"members": members if members is not None else [make_member()]}
    if suspend is not None:
        spec["suspend"] = suspend
    if success_policy is not None:
        spec["successPolicy"] = success_policy
    if failure_policy is not None:
        spec["failurePolicy"] = failure_policy
    body = {
        "apiVersion": crd.API_VERSION,
        "kind": crd.KIND,
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }
    if status is not None:
        body["status"] = status
    return body


def _merge(target, patch):
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeClusterStore:
    """In-memory stand-in for the cluster object store.

    Objects are kept as camelCase dicts. Deletes are immediate unless
    ``foreground_deletes`` is set, in which case a deleted Job stays behind
    terminating until ``remove_terminating_jobs`` is called. Every write
    is recorded in ``writes`` so tests can assert on idempotence.
    """

    def __init__(self):
        self.jobsets = {}
        self.jobs = {}
        self.services = {}
        self.writes = []
        self.fail_creates_with = None
        self.foreground_deletes = False
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    def _stamp(self, obj):
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self._uids)}")
        metadata["resourceVersion"] = str(next(self._versions))
        return obj

    # JobSets

    def add_jobset(self, body):
        body = self._stamp(copy.deepcopy(body))
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        self.jobsets[key] = body
        return copy.deepcopy(body)

    def jobset(self, name="js", namespace="default"):
        return copy.deepcopy(self.jobsets[(namespace, name)])

    def update_jobset_spec(self, name="js", namespace="default", **changes):
        body = self.jobsets[(namespace, name)]
        body["spec"].update(changes)
        self._stamp(body)

    def get_jobset(self, namespace, name):
        if (namespace, name) not in self.jobsets:
            raise NotFoundError(f"JobSet {namespace}/{name} not found")
        return copy.deepcopy(self.jobsets[(namespace, name)])

    def patch_jobset_status(self, namespace, name, status, resource_version):
        body = self.jobsets.get((namespace, name))
        if body is None:
            raise NotFoundError(f"JobSet {namespace}/{name} not found")
        if resource_version is not None and body["metadata"]["resourceVersion"] != resource_version:
            raise ConflictError(f"JobSet {namespace}/{name} was modified concurrently")
        body["status"] = copy.deepcopy(status)
        self._stamp(body)
        self.writes.append(("patch_status", name))
        return copy.deepcopy(body)

    # Jobs

    def list_jobs(self, namespace, jobset_name):
        return [
            copy.deepcopy(job)
            for (ns, _), job in sorted(self.jobs.items())
            if ns == namespace and job["metadata"]["labels"].get(crd.LABEL_JOBSET_NAME) == jobset_name
        ]

    def create_job(self, namespace, body):
        if self.fail_creates_with is not None:
            raise self.fail_creates_with
        job = self._stamp(_serializer.sanitize_for_serialization(body))
        key = (namespace, job["metadata"]["name"])
        if key in self.jobs:
            raise AlreadyExistsError(f"Job {namespace}/{key[1]} already exists")
        self.jobs[key] = job
        self.writes.append(("create_job", key[1]))
        return copy.deepcopy(job)

    def patch_job(self, namespace, name, body):
        job = self.jobs.get((namespace, name))
        if job is None:
            raise NotFoundError(f"Job {namespace}/{name} not found")
        _merge(job, body)
        self._stamp(job)
        self.writes.append(("patch_job", name))
        return copy.deepcopy(job)

    def delete_job(self, namespace, name):
        job = self.jobs.get((namespace, name))
        if job is None:
            return
        if self.foreground_deletes:
            job["metadata"].setdefault("deletionTimestamp", "2024-01-01T00:00:00Z")
            self._stamp(job)
        else:
            del self.jobs[(namespace, name)]
        self.writes.append(("delete_job", name))

    def remove_terminating_jobs(self):
        """Let the garbage collector finish every foreground deletion."""
        for key in [k for k, job in self.jobs.items() if job["metadata"].get("deletionTimestamp")]:
            del self.jobs[key]

    def job(self, name, namespace="default"):
        return copy.deepcopy(self.jobs[(namespace, name)])

    def job_names(self):
        return sorted(name for _, name in self.jobs)

    def finish_job(self, name, condition="Complete", namespace="default"):
        """Mark a Job finished the way the Job controller would."""
        job = self.jobs[(namespace, name)]
        status = job.setdefault("status", {})
        status["conditions"] = [{"type": condition, "status": "True"}]
        if condition == "Complete":
            status["succeeded"] = 1
        else:
            status["failed"] = 1
        self._stamp(job)

    # Services

    def get_service(self, namespace, name):
        service = self.services.get((namespace, name))
        return copy.deepcopy(service) if service is not None else None

    def create_service(self, namespace, body):
        service = self._stamp(_serializer.sanitize_for_serialization(body))
        key = (namespace, service["metadata"]["name"])
        if key in self.services:
            raise AlreadyExistsError(f"Service {namespace}/{key[1]} already exists")
        self.services[key] = service
        self.writes.append(("create_service", key[1]))
        return copy.deepcopy(service)


@pytest.fixture
def store():
    return FakeClusterStore()
