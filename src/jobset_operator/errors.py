"""
Error classes for the JobSet operator.

These error types drive retry classification in the work queue:
- TransientCollaboratorError: safe to retry (API unreachable, throttled, conflict)
- PermanentModelError: do not retry (malformed template the API refuses)
- NotFoundError: the object is gone, drop the work item

AdmissionRejected never reaches the reconciler; it is answered to the
writer before anything is persisted.
"""


class JobSetError(Exception):
    """Base exception for the JobSet operator."""
    pass


class AdmissionRejected(JobSetError):
    """A create or update violates a structural or immutability rule."""

    def __init__(self, reason, message):
        self.reason = reason
        self.message = message
        super().__init__(f"{reason}: {message}")


class TransientCollaboratorError(JobSetError):
    """
    The cluster object store could not complete a request right now.

    The work queue retries the pass with exponential backoff.
    """
    pass


class ConflictError(TransientCollaboratorError):
    """The object changed between read and write; redo the pass from scratch."""
    pass


class AlreadyExistsError(TransientCollaboratorError):
    """A create raced with another writer or a terminating object."""
    pass


class NotFoundError(JobSetError):
    """The requested object does not exist."""
    pass


class PermanentModelError(JobSetError):
    """
    The JobSet cannot be reconciled as written.

    Reported as a Failed condition on the JobSet and never retried.
    """
    pass
