"""Tests for the source-of-truth adapters and instance identity"""

import json

import httpx
import pytest

from vpc_control_plane.deadline import Deadline
from vpc_control_plane.errors import DeadlineExceeded, IdentityError, SourceOfTruthError, SourceOfTruthParseError
from vpc_control_plane.gc import source_of_truth
from vpc_control_plane.gc.identity import Ec2MetadataIdentityProvider


class TestKubernetes:
    def test_pod_names_are_task_ids(self):
        body = json.dumps(
            {"items": [{"metadata": {"name": "task-a", "uid": "u1"}}, {"metadata": {"name": "task-b"}}]}
        ).encode()
        assert source_of_truth.parse_kubernetes_tasks_body(body) == ["task-a", "task-b"]

    def test_empty_pod_list(self):
        assert source_of_truth.parse_kubernetes_tasks_body(b'{"kind": "PodList", "items": []}') == []
        assert source_of_truth.parse_kubernetes_tasks_body(b'{"kind": "PodList", "items": null}') == []

    def test_pod_without_name_is_rejected(self):
        with pytest.raises(SourceOfTruthParseError):
            source_of_truth.parse_kubernetes_tasks_body(b'{"items": [{"metadata": {"uid": "u1"}}]}')

    def test_pod_without_metadata_is_rejected(self):
        with pytest.raises(SourceOfTruthParseError):
            source_of_truth.parse_kubernetes_tasks_body(b'{"items": [{}]}')

    def test_invalid_json(self):
        with pytest.raises(SourceOfTruthParseError):
            source_of_truth.parse_kubernetes_tasks_body(b"<html>")

    def test_not_a_pod_list(self):
        with pytest.raises(SourceOfTruthParseError):
            source_of_truth.parse_kubernetes_tasks_body(b'{"items": "nope"}')


class TestMesos:
    def test_tasks_across_frameworks_and_executors(self):
        state = {
            "frameworks": [
                {"executors": [{"tasks": [{"name": "t1"}, {"name": "t2", "state": "TASK_FINISHED"}]}]},
                {"executors": [{"tasks": []}, {"tasks": [{"name": "t3"}]}]},
                {"executors": []},
            ]
        }
        assert source_of_truth.parse_mesos_tasks_body(json.dumps(state).encode()) == ["t1", "t2", "t3"]

    def test_no_frameworks(self):
        assert source_of_truth.parse_mesos_tasks_body(b"{}") == []

    def test_empty_task_name_is_rejected(self):
        state = {"frameworks": [{"executors": [{"tasks": [{"name": ""}]}]}]}
        with pytest.raises(SourceOfTruthParseError, match="Invalid task"):
            source_of_truth.parse_mesos_tasks_body(json.dumps(state).encode())

    @pytest.mark.parametrize("name", [5, ["t1"], {"id": "t1"}, True])
    def test_non_string_task_name_is_rejected(self, name):
        state = {"frameworks": [{"executors": [{"tasks": [{"name": name}]}]}]}
        with pytest.raises(SourceOfTruthParseError, match="Invalid task"):
            source_of_truth.parse_mesos_tasks_body(json.dumps(state).encode())

    def test_unexpected_shape(self):
        with pytest.raises(SourceOfTruthParseError):
            source_of_truth.parse_mesos_tasks_body(b'{"frameworks": ["oops"]}')

    def test_not_an_object(self):
        with pytest.raises(SourceOfTruthParseError):
            source_of_truth.parse_mesos_tasks_body(b"[]")


def test_fetch_body_http_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="Unauthorized"))
    with pytest.raises(SourceOfTruthError):
        source_of_truth.fetch_body("https://localhost:10250/pods", Deadline(5), transport)


def test_fetch_body_connection_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SourceOfTruthError) as excinfo:
        source_of_truth.fetch_body("https://localhost:10250/pods", Deadline(5), httpx.MockTransport(handler))
    assert not isinstance(excinfo.value, SourceOfTruthParseError)


def test_fetch_body_after_deadline():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    with pytest.raises(DeadlineExceeded):
        source_of_truth.fetch_body("https://localhost:10250/pods", Deadline(0), transport)


def test_kubernetes_tasks_end_to_end():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"items": [{"metadata": {"name": "task-a"}}]})
    )
    assert source_of_truth.kubernetes_tasks("https://localhost:10250/pods", Deadline(5), transport) == ["task-a"]


class TestInstanceIdentity:
    DOCUMENT = json.dumps({"instanceId": "i-0abc", "region": "us-east-1", "accountId": "123456789012"})

    def metadata_transport(self, document=DOCUMENT, token_status=200):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, dict(request.headers)))
            if request.url.path == "/latest/api/token":
                return httpx.Response(token_status, text="token-1")
            if request.url.path.endswith("/document"):
                return httpx.Response(200, text=document)
            if request.url.path.endswith("/pkcs7"):
                return httpx.Response(200, text="MIAGCSqGSIb3DQEHAqCAMIACAQExCzAJ")
            return httpx.Response(404)

        return httpx.MockTransport(handler), seen

    def test_imdsv2_identity(self):
        transport, seen = self.metadata_transport()
        identity = Ec2MetadataIdentityProvider(transport=transport).get_identity(Deadline(5))

        assert identity.instance_id == "i-0abc"
        assert identity.region == "us-east-1"
        assert identity.instance_identity_document == self.DOCUMENT
        assert identity.instance_identity_signature.startswith("MIAG")
        assert seen[0][0] == "PUT"
        assert seen[1][2]["x-aws-ec2-metadata-token"] == "token-1"

    def test_token_failure(self):
        transport, _ = self.metadata_transport(token_status=403)
        with pytest.raises(IdentityError):
            Ec2MetadataIdentityProvider(transport=transport).get_identity(Deadline(5))

    def test_malformed_document(self):
        transport, _ = self.metadata_transport(document="not json")
        with pytest.raises(IdentityError):
            Ec2MetadataIdentityProvider(transport=transport).get_identity(Deadline(5))
