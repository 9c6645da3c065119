"""Tests for the VPC service gRPC client against an in-process server"""

from concurrent import futures

import grpc
import pytest

from vpc_control_plane.api.vpc_service_client import (
    AgentVPCServiceClient,
    GCRequestV3,
    add_agent_vpc_service_to_server,
)
from vpc_control_plane.errors import RemoteServiceError
from vpc_control_plane.gc.identity import InstanceIdentity


class FakeAgentVPCService:
    def __init__(self):
        self.gc_requests = []
        self.unassigned = []

    def GCV3(self, request, context):
        self.gc_requests.append(request)
        running = set(request["running_task_ids"])
        return {"removed_assignments": [t for t in ("A", "C") if t not in running]}

    def GetAssignment(self, request, context):
        if request["task_id"] == "missing":
            context.abort(grpc.StatusCode.NOT_FOUND, "no such assignment")
        if request["task_id"] == "garbled":
            return {"assignment": {"vlan_id": 3}}
        return {
            "assignment": {
                "task_id": request["task_id"],
                "branch_eni_id": "eni-branch",
                "trunk_eni_id": "eni-trunk",
                "vlan_id": 7,
                "allocation_index": 3,
                "ipv4_address": {"address": "10.0.0.5", "prefix_length": 24},
            }
        }

    def UnassignIPV3(self, request, context):
        self.unassigned.append(request["task_id"])
        return {}


@pytest.fixture(scope="module")
def servicer():
    return FakeAgentVPCService()


@pytest.fixture(scope="module")
def grpc_server(servicer):
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
    add_agent_vpc_service_to_server(servicer, server)
    port = server.add_insecure_port("[::]:0")
    server.start()
    yield f"localhost:{port}"
    server.stop(0)


@pytest.fixture(scope="module")
def client(grpc_server):
    channel = grpc.insecure_channel(grpc_server)
    yield AgentVPCServiceClient(channel)
    channel.close()


IDENTITY = InstanceIdentity(
    instance_identity_document='{"instanceId": "i-0abc"}',
    instance_identity_signature="sig",
    instance_id="i-0abc",
)


def test_gc_v3(client, servicer):
    resp = client.gc_v3(GCRequestV3(instance_identity=IDENTITY, running_task_ids=["A", "B"]), timeout=5)

    assert resp.removed_assignments == ["C"]
    sent = servicer.gc_requests[-1]
    assert sent["soft"] is True
    assert sent["instance_identity"]["instance_id"] == "i-0abc"


def test_get_assignment(client):
    assignment = client.get_assignment("C", timeout=5)

    assert assignment.task_id == "C"
    assert assignment.vlan_id == 7
    assert assignment.allocation_index == 3
    assert assignment.ipv4_address.address == "10.0.0.5"
    assert assignment.ipv6_address is None


def test_get_assignment_remote_error(client):
    with pytest.raises(RemoteServiceError) as excinfo:
        client.get_assignment("missing", timeout=5)
    assert excinfo.value.code == "NOT_FOUND"


def test_get_assignment_malformed(client):
    with pytest.raises(RemoteServiceError, match="Malformed assignment"):
        client.get_assignment("garbled", timeout=5)


def test_unassign_ip_v3(client, servicer):
    client.unassign_ip_v3("C", timeout=5)
    assert servicer.unassigned[-1] == "C"


def test_unreachable_service():
    channel = grpc.insecure_channel("localhost:1")
    try:
        with pytest.raises(RemoteServiceError) as excinfo:
            AgentVPCServiceClient(channel).unassign_ip_v3("C", timeout=0.5)
        assert excinfo.value.code in ("UNAVAILABLE", "DEADLINE_EXCEEDED")
    finally:
        channel.close()
