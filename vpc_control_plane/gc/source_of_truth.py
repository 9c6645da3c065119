"""
Source-of-truth adapters.

Each adapter produces the list of task IDs the orchestrator considers alive.
Malformed data aborts the GC cycle: silently skipping a record would make the
remote service treat that task's assignment as stale and reclaim it.
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from ..deadline import Deadline
from ..errors import SourceOfTruthError, SourceOfTruthParseError
from ..metrics import traced

KUBERNETES = "kubernetes"
MESOS = "mesos"


def fetch_body(url: str, deadline: Deadline, transport: Optional[httpx.BaseTransport] = None) -> bytes:
    deadline.check(f"fetching {url}")
    try:
        # The kubelet serves a self-signed certificate
        with httpx.Client(timeout=deadline.remaining(), verify=False, transport=transport) as client:
            resp = client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as e:
        raise SourceOfTruthError(f"Could not fetch task body from {url}", e)


def _decode(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError as e:
        raise SourceOfTruthParseError("Could not decode body as JSON", e)


def pod_key(pod: Dict[str, Any]) -> str:
    """Task key of a pod: its name, which the executor sets to the task ID."""
    metadata = pod.get("metadata")
    if not isinstance(metadata, dict):
        raise SourceOfTruthParseError(f"Invalid pod, missing metadata: {pod!r}")
    name = metadata.get("name")
    if not isinstance(name, str) or name == "":
        raise SourceOfTruthParseError(f"Invalid pod, missing name: {metadata!r}")
    return name


def parse_kubernetes_tasks_body(body: bytes) -> List[str]:
    pod_list = _decode(body)
    if not isinstance(pod_list, dict):
        raise SourceOfTruthParseError("Could not decode body to podlist")
    items = pod_list.get("items") or []
    if not isinstance(items, list) or not all(isinstance(pod, dict) for pod in items):
        raise SourceOfTruthParseError("Could not decode body to podlist")
    return [pod_key(pod) for pod in items]


def parse_mesos_tasks_body(body: bytes) -> List[str]:
    state = _decode(body)
    if not isinstance(state, dict):
        raise SourceOfTruthParseError("Unable to unmarshal state")

    tasks = []
    try:
        for framework in state.get("frameworks") or []:
            for executor in framework.get("executors") or []:
                for task in executor.get("tasks") or []:
                    # Every task of a live executor counts as alive, even in a
                    # terminal state: the executor holds its network resources
                    # until it terminates itself.
                    name = task.get("name")
                    if not isinstance(name, str) or name == "":
                        raise SourceOfTruthParseError(f"Invalid task: {task!r}")
                    tasks.append(name)
    except AttributeError as e:
        raise SourceOfTruthParseError("Unexpected shape in mesos state", e)
    return tasks


def kubernetes_tasks(url: str, deadline: Deadline, transport: Optional[httpx.BaseTransport] = None) -> List[str]:
    with traced("kubernetesTasks"):
        return parse_kubernetes_tasks_body(fetch_body(url, deadline, transport))


def mesos_tasks(url: str, deadline: Deadline, transport: Optional[httpx.BaseTransport] = None) -> List[str]:
    with traced("mesosTasks"):
        return parse_mesos_tasks_body(fetch_body(url, deadline, transport))
