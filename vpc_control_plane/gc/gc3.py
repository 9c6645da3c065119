"""
GC3: node-side garbage collection of stale VPC assignments.

One cycle:
1. Fetch the node's instance identity
2. Read the running task IDs from the source of truth
3. Ask the VPC service (soft GC) which assignments reference no running task
4. For each stale task: get the assignment, tear down local networking,
   unassign it remotely

Step 4 is best-effort per task; failures are collected in order and reported
together once every task has been tried. No state is kept between cycles.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from ..api.vpc_service_client import AgentVPCServiceClient, GCRequestV3
from ..config import GCConfig
from ..deadline import Deadline
from ..errors import ConfigurationError, ControlPlaneError, PartialGCFailure, TeardownError
from ..logging_config import get_logger
from ..metrics import METRICS, traced
from ..reconciler.scheduler import LongLivedTask
from . import source_of_truth
from .allocation import Allocation, assignment_to_allocation
from .identity import InstanceIdentityProvider

logger = get_logger("vpc_control_plane.gc3")


@dataclass
class Args:
    source_of_truth: str
    kubernetes_pods_url: str = ""
    mesos_state_url: str = ""

    @classmethod
    def from_config(cls, config: GCConfig) -> "Args":
        return cls(
            source_of_truth=config.source_of_truth,
            kubernetes_pods_url=config.kubernetes_pods_url,
            mesos_state_url=config.mesos_state_url,
        )


@dataclass
class GCResult:
    removed: List[str] = field(default_factory=list)
    failures: List[Tuple[str, ControlPlaneError]] = field(default_factory=list)


def running_tasks(args: Args, deadline: Deadline, transport=None) -> List[str]:
    if args.source_of_truth == source_of_truth.KUBERNETES:
        return source_of_truth.kubernetes_tasks(args.kubernetes_pods_url, deadline, transport)
    if args.source_of_truth == source_of_truth.MESOS:
        return source_of_truth.mesos_tasks(args.mesos_state_url, deadline, transport)
    raise ConfigurationError(f"Source of truth {args.source_of_truth!r} unknown")


def gc(
    timeout: float,
    identity_provider: InstanceIdentityProvider,
    client: AgentVPCServiceClient,
    args: Args,
    teardown: Callable[[Allocation], None],
    stop_event: Optional[threading.Event] = None,
    transport=None,
) -> GCResult:
    """
    Run one GC3 cycle.

    Returns the removed task IDs on full success. Raises PartialGCFailure if
    any stale assignment could not be removed; assignments that did succeed
    stay removed. Identity, source-of-truth and GCV3 failures abort the cycle
    before anything is torn down.
    """
    deadline = Deadline(timeout, stop_event)

    with traced("GC"):
        try:
            identity = identity_provider.get_identity(deadline)
        except ControlPlaneError as e:
            logger.error(f"Unable to get instance identity: {e}")
            raise

        try:
            task_ids = running_tasks(args, deadline, transport)
        except ControlPlaneError as e:
            logger.error(f"Could not fetch running tasks: {e}")
            raise
        logger.debug(f"Found running tasks: {task_ids}")

        deadline.check("calling GCV3")
        resp = client.gc_v3(
            GCRequestV3(instance_identity=identity, running_task_ids=task_ids, soft=True),
            timeout=deadline.remaining(),
        )

        if resp.removed_assignments:
            logger.info(f"Received assignments to remove: {resp.removed_assignments}")

        result = GCResult()
        for task_id in resp.removed_assignments:
            deadline.check(f"removing assignment {task_id}")
            error = _remove_assignment(client, task_id, teardown, deadline)
            if error is None:
                result.removed.append(task_id)
            else:
                result.failures.append((task_id, error))

        METRICS["gc_assignments_removed"].inc(len(result.removed))

        if result.failures:
            err = PartialGCFailure(result.failures, result.removed)
            logger.error(f"Error removing assignments: {err}")
            raise err
        return result


def _remove_assignment(
    client: AgentVPCServiceClient,
    task_id: str,
    teardown: Callable[[Allocation], None],
    deadline: Deadline,
) -> Optional[ControlPlaneError]:
    task_logger = logger.with_fields(assignment=task_id)
    task_logger.info("Removing assignment")

    try:
        assignment = client.get_assignment(task_id, timeout=deadline.remaining())
    except ControlPlaneError as e:
        METRICS["gc_assignments_failed"].labels(step="get_assignment").inc()
        task_logger.warning(f"Unable to get assignment: {e}")
        return e

    try:
        teardown(assignment_to_allocation(assignment))
    except ControlPlaneError as e:
        METRICS["gc_assignments_failed"].labels(step="teardown").inc()
        task_logger.warning(f"Unable to tear down network: {e}")
        return e
    except Exception as e:
        # One broken teardown must not stop the remaining stale tasks
        METRICS["gc_assignments_failed"].labels(step="teardown").inc()
        task_logger.exception(f"Unable to tear down network: {e}")
        return TeardownError(f"Unable to tear down network {task_id}", e)

    try:
        client.unassign_ip_v3(task_id, timeout=deadline.remaining())
    except ControlPlaneError as e:
        METRICS["gc_assignments_failed"].labels(step="unassign").inc()
        task_logger.warning(f"Unable to unassign from vpc service: {e}")
        return e

    task_logger.info("Successfully removed assignment")
    return None


@dataclass(frozen=True)
class GCNode:
    """The single work item of the periodic GC task: this node."""

    key: str = "local"


def gc_long_lived_task(
    config: GCConfig,
    identity_provider: InstanceIdentityProvider,
    client: AgentVPCServiceClient,
    teardown: Callable[[Allocation], None],
) -> LongLivedTask:
    args = Args.from_config(config)

    def work(item: GCNode, stop_event: threading.Event) -> bool:
        result = gc(config.timeout, identity_provider, client, args, teardown, stop_event)
        return bool(result.removed)

    return LongLivedTask(
        task_name="gc3",
        item_lister=lambda: [GCNode()],
        work_func=work,
        backoff=config.backoff,
    )
