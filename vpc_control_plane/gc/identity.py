"""
Instance identity providers.

The remote VPC service scopes GC results to the calling node, which proves
who it is with the EC2 instance identity document and its PKCS7 signature.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from ..deadline import Deadline
from ..errors import IdentityError

IMDS_ENDPOINT = "http://169.254.169.254"
IMDS_TOKEN_TTL_SECONDS = 300


@dataclass
class InstanceIdentity:
    instance_identity_document: str
    instance_identity_signature: str
    instance_id: str
    region: Optional[str] = None

    def to_dict(self):
        return {
            "instance_identity_document": self.instance_identity_document,
            "instance_identity_signature": self.instance_identity_signature,
            "instance_id": self.instance_id,
            "region": self.region,
        }


class InstanceIdentityProvider(ABC):
    @abstractmethod
    def get_identity(self, deadline: Deadline) -> InstanceIdentity:
        ...


class Ec2MetadataIdentityProvider(InstanceIdentityProvider):
    """Reads the identity document from IMDSv2."""

    def __init__(self, endpoint: str = IMDS_ENDPOINT, transport: Optional[httpx.BaseTransport] = None):
        self.endpoint = endpoint.rstrip("/")
        self._transport = transport

    def get_identity(self, deadline: Deadline) -> InstanceIdentity:
        deadline.check("fetching instance identity")
        try:
            with httpx.Client(timeout=deadline.remaining(), transport=self._transport) as client:
                token_resp = client.put(
                    f"{self.endpoint}/latest/api/token",
                    headers={"X-aws-ec2-metadata-token-ttl-seconds": str(IMDS_TOKEN_TTL_SECONDS)},
                )
                token_resp.raise_for_status()
                headers = {"X-aws-ec2-metadata-token": token_resp.text}

                doc_resp = client.get(
                    f"{self.endpoint}/latest/dynamic/instance-identity/document", headers=headers
                )
                doc_resp.raise_for_status()
                sig_resp = client.get(
                    f"{self.endpoint}/latest/dynamic/instance-identity/pkcs7", headers=headers
                )
                sig_resp.raise_for_status()
        except httpx.HTTPError as e:
            raise IdentityError("Unable to fetch instance identity from metadata service", e)

        try:
            document = json.loads(doc_resp.text)
            instance_id = document["instanceId"]
        except (ValueError, KeyError, TypeError) as e:
            raise IdentityError("Instance identity document is malformed", e)

        return InstanceIdentity(
            instance_identity_document=doc_resp.text,
            instance_identity_signature=sig_resp.text,
            instance_id=instance_id,
            region=document.get("region"),
        )
