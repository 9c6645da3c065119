"""
Error taxonomy for the VPC control plane.

Every external boundary (database, EC2, remote VPC service, source of truth,
netlink) translates its library-specific failures into one of these types.
Callers branch on ``error.kind`` rather than on botocore / grpc / SQLAlchemy
exception shapes.
"""

from enum import Enum
from typing import List, Optional, Tuple


class ErrorKind(Enum):
    STORE = "store"
    CLOUD_TRANSIENT = "cloud_transient"
    CLOUD_NOT_FOUND = "cloud_not_found"
    CLOUD = "cloud"
    CONSISTENCY_VIOLATION = "consistency_violation"
    RESOURCE_LEAK = "resource_leak"
    SOURCE_OF_TRUTH = "source_of_truth"
    SOURCE_OF_TRUTH_PARSE = "source_of_truth_parse"
    PARTIAL_GC_FAILURE = "partial_gc_failure"
    REMOTE_SERVICE = "remote_service"
    TEARDOWN = "teardown"
    IDENTITY = "identity"
    CONFIGURATION = "configuration"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class ControlPlaneError(Exception):
    """Base class for all classified control plane errors."""

    kind: ErrorKind = ErrorKind.CLOUD

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class StoreError(ControlPlaneError):
    """Query or transaction failure against the allocation ledger."""

    kind = ErrorKind.STORE


class CloudError(ControlPlaneError):
    """Non-retryable (or unclassified) cloud provider error."""

    kind = ErrorKind.CLOUD

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, cause)
        self.code = code


class CloudTransientError(CloudError):
    kind = ErrorKind.CLOUD_TRANSIENT


class CloudNotFoundError(CloudError):
    kind = ErrorKind.CLOUD_NOT_FOUND


class ConsistencyViolation(ControlPlaneError):
    """Ledger and cloud disagree in a way that makes proceeding destructive."""

    kind = ErrorKind.CONSISTENCY_VIOLATION


class ResourceLeakError(ControlPlaneError):
    """The ledger row is gone but the cloud resource could not be deleted."""

    kind = ErrorKind.RESOURCE_LEAK

    def __init__(self, message: str, resource_id: str, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.resource_id = resource_id


class SourceOfTruthError(ControlPlaneError):
    kind = ErrorKind.SOURCE_OF_TRUTH


class SourceOfTruthParseError(SourceOfTruthError):
    kind = ErrorKind.SOURCE_OF_TRUTH_PARSE


class RemoteServiceError(ControlPlaneError):
    kind = ErrorKind.REMOTE_SERVICE

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, cause)
        self.code = code


class TeardownError(ControlPlaneError):
    kind = ErrorKind.TEARDOWN


class IdentityError(ControlPlaneError):
    kind = ErrorKind.IDENTITY


class ConfigurationError(ControlPlaneError):
    kind = ErrorKind.CONFIGURATION


class Cancelled(ControlPlaneError):
    """The owning loop was asked to stop. Not a failure."""

    kind = ErrorKind.CANCELLED


class DeadlineExceeded(ControlPlaneError):
    kind = ErrorKind.DEADLINE_EXCEEDED


class PartialGCFailure(ControlPlaneError):
    """
    Aggregate of independent per-task failures from one GC cycle.

    ``failures`` keeps the order in which task IDs were processed, so logs and
    tests can attribute each error to its task. ``removed`` lists the task IDs
    that were fully torn down and unassigned in the same cycle.
    """

    kind = ErrorKind.PARTIAL_GC_FAILURE

    def __init__(
        self,
        failures: List[Tuple[str, ControlPlaneError]],
        removed: Optional[List[str]] = None,
    ):
        self.failures = list(failures)
        self.removed = list(removed or [])
        details = "; ".join(f"{task_id}: {err}" for task_id, err in self.failures)
        super().__init__(
            f"{len(self.failures)} error(s) occurred removing assignments: {details}"
        )

    @property
    def task_ids(self) -> List[str]:
        return [task_id for task_id, _ in self.failures]
