"""
Cloud Interface Gateway

Typed wrapper over the EC2 network interface API:
- Sessions keyed by (account ID, region), cached and shared between threads
- DescribeNetworkInterfaces with an eventual-consistency retry window
- Idempotent DeleteNetworkInterface
- botocore errors classified into the control plane error taxonomy
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..config import AWSConfig
from ..deadline import Deadline
from ..errors import CloudError, CloudNotFoundError, CloudTransientError
from ..logging_config import get_logger
from ..metrics import traced

logger = get_logger("vpc_control_plane.ec2")

INVALID_NETWORK_INTERFACE_ID_NOT_FOUND = "InvalidNetworkInterfaceID.NotFound"

TRANSIENT_ERROR_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "RequestTimeout",
    "RequestExpired",
}

TRANSIENT_BOTOCORE_ERRORS = (
    BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

# Spacing between describe attempts while waiting out eventual consistency
DESCRIBE_RETRY_INTERVAL = 0.1

# STS credentials last an hour by default
ASSUMED_ROLE_CLIENT_TTL = 45 * 60

# Per-call budgets (seconds) a client can be built for; a requested timeout
# is rounded down to one of these so the client cache stays bounded
CALL_TIMEOUT_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0)

# Budgets shorter than this get a single attempt instead of botocore retries
MIN_BUDGET_FOR_RETRIES = 5.0


def timeout_bucket(timeout: Optional[float]) -> Optional[float]:
    """Largest budget not above ``timeout``; None means the default client."""
    if timeout is None:
        return None
    fitting = [b for b in CALL_TIMEOUT_BUCKETS if b <= timeout]
    return fitting[-1] if fitting else CALL_TIMEOUT_BUCKETS[0]


def client_timeouts(budget: Optional[float], aws_config: AWSConfig) -> Dict[str, Any]:
    """botocore Config arguments keeping every attempt of a call within ``budget``."""
    if budget is None:
        return {
            "connect_timeout": aws_config.connect_timeout,
            "read_timeout": 60,
            "retries": {"max_attempts": aws_config.max_attempts, "mode": "standard"},
        }
    attempts = aws_config.max_attempts if budget >= MIN_BUDGET_FOR_RETRIES else 1
    per_attempt = budget / attempts
    return {
        "connect_timeout": min(aws_config.connect_timeout, per_attempt),
        "read_timeout": per_attempt,
        "retries": {"total_max_attempts": attempts, "mode": "standard"},
    }


def classify_ec2_error(error: Exception, message: str) -> CloudError:
    """Map a boto error onto NotFound / Transient / other."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code == INVALID_NETWORK_INTERFACE_ID_NOT_FOUND:
            return CloudNotFoundError(message, error, code=code)
        if code in TRANSIENT_ERROR_CODES:
            return CloudTransientError(message, error, code=code)
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if status >= 500:
            return CloudTransientError(message, error, code=code)
        return CloudError(message, error, code=code)
    if isinstance(error, TRANSIENT_BOTOCORE_ERRORS):
        return CloudTransientError(message, error)
    return CloudError(message, error)


@dataclass(frozen=True)
class SessionKey:
    account_id: str
    region: str


@dataclass
class InterfaceDescriptor:
    interface_id: str
    subnet_id: Optional[str] = None
    status: Optional[str] = None
    private_ip_addresses: List[str] = field(default_factory=list)
    ipv6_addresses: List[str] = field(default_factory=list)

    @property
    def ipv4_count(self) -> int:
        return len(self.private_ip_addresses)

    @property
    def ipv6_count(self) -> int:
        return len(self.ipv6_addresses)

    @classmethod
    def from_response(cls, iface: Dict[str, Any]) -> "InterfaceDescriptor":
        return cls(
            interface_id=iface["NetworkInterfaceId"],
            subnet_id=iface.get("SubnetId"),
            status=iface.get("Status"),
            private_ip_addresses=[
                a["PrivateIpAddress"] for a in iface.get("PrivateIpAddresses", [])
            ],
            ipv6_addresses=[a["Ipv6Address"] for a in iface.get("Ipv6Addresses", [])],
        )


class Ec2Session:
    """
    EC2 operations scoped to one account and region.

    ``client_factory(budget)`` returns a boto3 EC2 client whose attempts and
    retries together fit within ``budget`` seconds. botocore timeouts are fixed
    at client creation, so clients are cached per ``timeout_bucket``. With
    ``max_client_age`` set (assumed-role credentials), cached clients are
    rebuilt before their credentials expire.
    """

    def __init__(
        self,
        key: SessionKey,
        client_factory: Callable[[Optional[float]], Any],
        max_client_age: Optional[float] = None,
    ):
        self.key = key
        self._client_factory = client_factory
        self._max_client_age = max_client_age
        self._clients: Dict[Optional[float], Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _client(self, timeout: Optional[float] = None):
        budget = timeout_bucket(timeout)
        with self._lock:
            now = time.monotonic()
            cached = self._clients.get(budget)
            if cached is not None:
                client, created_at = cached
                if self._max_client_age is None or now - created_at < self._max_client_age:
                    return client
            client = self._client_factory(budget)
            self._clients[budget] = (client, now)
            return client

    def describe_interface(self, interface_id: str, deadline: Deadline) -> InterfaceDescriptor:
        """
        Describe one network interface.

        A freshly created interface may not be visible yet, so NotFound is
        retried until ``deadline`` expires before CloudNotFoundError is raised.
        Raises Cancelled if the owning loop stops while waiting.
        """
        with traced("GetNetworkInterfaceByID", eni=interface_id):
            while True:
                try:
                    resp = self._client(deadline.remaining()).describe_network_interfaces(
                        NetworkInterfaceIds=[interface_id]
                    )
                except (ClientError, BotoCoreError) as e:
                    err = classify_ec2_error(e, f"Could not describe network interface {interface_id}")
                    if isinstance(err, CloudNotFoundError) and not deadline.expired:
                        deadline.sleep(DESCRIBE_RETRY_INTERVAL)
                        continue
                    raise err
                interfaces = resp.get("NetworkInterfaces", [])
                if not interfaces:
                    raise CloudNotFoundError(
                        f"Network interface {interface_id} not returned by describe",
                        code=INVALID_NETWORK_INTERFACE_ID_NOT_FOUND,
                    )
                return InterfaceDescriptor.from_response(interfaces[0])

    def delete_interface(self, interface_id: str, timeout: Optional[float] = None) -> None:
        """Delete a network interface. Already-deleted counts as success."""
        with traced("DeleteNetworkInterface", eni=interface_id):
            try:
                self._client(timeout).delete_network_interface(NetworkInterfaceId=interface_id)
            except (ClientError, BotoCoreError) as e:
                err = classify_ec2_error(e, f"Could not delete network interface {interface_id}")
                if isinstance(err, CloudNotFoundError):
                    logger.with_fields(eni=interface_id).info("Network interface was already deleted")
                    return
                raise err


class Ec2SessionManager:
    """Hands out one cached ``Ec2Session`` per (account, region)."""

    def __init__(self, aws_config: Optional[AWSConfig] = None, base_session: Optional[boto3.Session] = None):
        self.aws_config = aws_config or AWSConfig()
        self._base_session = base_session or boto3.Session()
        self._sessions: Dict[SessionKey, Ec2Session] = {}
        self._lock = threading.Lock()

    def get_session(self, key: SessionKey) -> Ec2Session:
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                max_age = ASSUMED_ROLE_CLIENT_TTL if self._uses_assumed_role(key) else None
                session = Ec2Session(key, self._make_client_factory(key), max_client_age=max_age)
                self._sessions[key] = session
            return session

    def _uses_assumed_role(self, key: SessionKey) -> bool:
        return bool(self.aws_config.assume_role_name) and key.account_id != self.aws_config.own_account_id

    def _boto_session_for(self, key: SessionKey) -> boto3.Session:
        if not self._uses_assumed_role(key):
            return self._base_session

        role_name = self.aws_config.assume_role_name
        role_arn = f"arn:aws:iam::{key.account_id}:role/{role_name}"
        try:
            sts = self._base_session.client("sts", region_name=key.region)
            creds = sts.assume_role(
                RoleArn=role_arn, RoleSessionName="vpc-control-plane"
            )["Credentials"]
        except (ClientError, BotoCoreError) as e:
            raise classify_ec2_error(e, f"Cannot assume role {role_arn}")
        logger.with_fields(accountID=key.account_id, region=key.region).debug(f"Assumed role {role_arn}")
        return boto3.Session(
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds["SessionToken"],
            region_name=key.region,
        )

    def _make_client_factory(self, key: SessionKey) -> Callable[[Optional[float]], Any]:
        def factory(budget: Optional[float]):
            boto_session = self._boto_session_for(key)
            config = Config(**client_timeouts(budget, self.aws_config))
            return boto_session.client("ec2", region_name=key.region, config=config)

        return factory
