"""
Client for the remote VPC allocation service.

Messages are JSON objects carried over gRPC unary calls, so the client needs
no generated stubs; ``add_agent_vpc_service_to_server`` mounts a servicer with
the same codec (used by in-process test servers and local fakes).
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import grpc

from ..errors import RemoteServiceError
from ..gc.allocation import Assignment
from ..gc.identity import InstanceIdentity

SERVICE_NAME = "vpc.AgentVPCService"


def _serialize(message: Dict[str, Any]) -> bytes:
    return json.dumps(message).encode("utf-8")


def _deserialize(data: bytes) -> Dict[str, Any]:
    return json.loads(data.decode("utf-8")) if data else {}


@dataclass
class GCRequestV3:
    instance_identity: InstanceIdentity
    running_task_ids: List[str] = field(default_factory=list)
    soft: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_identity": self.instance_identity.to_dict(),
            "running_task_ids": list(self.running_task_ids),
            "soft": self.soft,
        }


@dataclass
class GCResponseV3:
    removed_assignments: List[str] = field(default_factory=list)


class AgentVPCServiceClient:
    def __init__(self, channel: grpc.Channel):
        self._gc_v3 = channel.unary_unary(
            f"/{SERVICE_NAME}/GCV3", request_serializer=_serialize, response_deserializer=_deserialize
        )
        self._get_assignment = channel.unary_unary(
            f"/{SERVICE_NAME}/GetAssignment", request_serializer=_serialize, response_deserializer=_deserialize
        )
        self._unassign_ip_v3 = channel.unary_unary(
            f"/{SERVICE_NAME}/UnassignIPV3", request_serializer=_serialize, response_deserializer=_deserialize
        )

    @staticmethod
    def _call(method: Callable, request: Dict[str, Any], timeout: Optional[float], what: str) -> Dict[str, Any]:
        try:
            return method(request, timeout=timeout)
        except grpc.RpcError as e:
            code = e.code().name if isinstance(e, grpc.Call) else None
            raise RemoteServiceError(what, e, code=code)

    def gc_v3(self, request: GCRequestV3, timeout: Optional[float] = None) -> GCResponseV3:
        resp = self._call(self._gc_v3, request.to_dict(), timeout, "Cannot call API to perform GC")
        return GCResponseV3(removed_assignments=list(resp.get("removed_assignments") or []))

    def get_assignment(self, task_id: str, timeout: Optional[float] = None) -> Assignment:
        resp = self._call(self._get_assignment, {"task_id": task_id}, timeout, f"Unable to get assignment {task_id}")
        try:
            return Assignment.from_dict(resp["assignment"])
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteServiceError(f"Malformed assignment for {task_id}", e)

    def unassign_ip_v3(self, task_id: str, timeout: Optional[float] = None) -> None:
        self._call(self._unassign_ip_v3, {"task_id": task_id}, timeout, f"Unable to unassign {task_id}")


def add_agent_vpc_service_to_server(servicer: Any, server: grpc.Server) -> None:
    """
    Register ``servicer`` (an object with GCV3 / GetAssignment / UnassignIPV3
    methods taking ``(request_dict, context)``) on a grpc server.
    """
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            getattr(servicer, name), request_deserializer=_deserialize, response_serializer=_serialize
        )
        for name in ("GCV3", "GetAssignment", "UnassignIPV3")
    }
    server.add_generic_rpc_handlers((grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),))
