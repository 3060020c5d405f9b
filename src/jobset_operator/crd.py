"""CRD schema constants and helpers."""

# CRD Group, Version, and Kind
GROUP = "jobset.x-k8s.io"
VERSION = "v1alpha1"
PLURAL = "jobsets"
KIND = "JobSet"

# API version string
API_VERSION = f"{GROUP}/{VERSION}"

# Labels stamped on every child Job and its pod template
LABEL_JOBSET_NAME = f"{GROUP}/jobset-name"
LABEL_REPLICATED_JOB_NAME = f"{GROUP}/replicatedjob-name"
LABEL_JOB_INDEX = f"{GROUP}/job-index"
LABEL_RESTART_ATTEMPT = f"{GROUP}/restart-attempt"

# Condition types
CONDITION_SUSPENDED = "Suspended"
CONDITION_RESUMING = "Resuming"
CONDITION_COMPLETED = "Completed"
CONDITION_FAILED = "Failed"

TERMINAL_CONDITIONS = [CONDITION_COMPLETED, CONDITION_FAILED]

# Condition reasons
REASON_SUSPENDED = "SuspendedJobs"
REASON_RESUMED = "ResumeJobs"
REASON_JOBS_RESUMED = "JobsResumed"
REASON_SUCCESS_POLICY = "SuccessPolicySatisfied"
REASON_FAILED_JOBS = "FailedJobs"
REASON_MAX_RESTARTS = "ReachedMaxRestarts"
REASON_INVALID_SPEC = "InvalidSpec"

# Job completion modes and pod restart policies
COMPLETION_MODE_INDEXED = "Indexed"
COMPLETION_MODE_NON_INDEXED = "NonIndexed"
RESTART_POLICY_ON_FAILURE = "OnFailure"

# Success policy operators
OPERATOR_ALL = "All"
OPERATOR_ANY = "Any"

# Kubernetes names built from JobSet and member names must fit in a DNS label
MAX_NAME_LENGTH = 63


def job_name(jobset_name, replicated_job_name, job_index):
    """Deterministic child Job name."""
    return f"{jobset_name}-{replicated_job_name}-{job_index}"


def service_name(jobset_name, replicated_job_name):
    """Headless Service name for a member."""
    return f"{jobset_name}-{replicated_job_name}"
