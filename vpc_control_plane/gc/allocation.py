"""
Remote assignment to local allocation descriptor.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Address:
    address: str
    prefix_length: int


@dataclass
class Assignment:
    """Remote VPC service record of the resources handed to one task."""

    task_id: str
    branch_eni_id: str = ""
    branch_eni_mac: str = ""
    trunk_eni_id: str = ""
    vlan_id: int = 0
    allocation_index: int = 0
    ipv4_address: Optional[Address] = None
    ipv6_address: Optional[Address] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Assignment":
        def address(raw):
            if not raw:
                return None
            return Address(address=raw["address"], prefix_length=int(raw["prefix_length"]))

        return cls(
            task_id=data["task_id"],
            branch_eni_id=data.get("branch_eni_id", ""),
            branch_eni_mac=data.get("branch_eni_mac", ""),
            trunk_eni_id=data.get("trunk_eni_id", ""),
            vlan_id=int(data.get("vlan_id", 0)),
            allocation_index=int(data.get("allocation_index", 0)),
            ipv4_address=address(data.get("ipv4_address")),
            ipv6_address=address(data.get("ipv6_address")),
        )


@dataclass
class Allocation:
    """What the node set up locally for one task and must tear down."""

    task_id: str
    vlan_id: int
    allocation_index: int
    branch_eni_id: str
    trunk_eni_id: str
    addresses: List[Address] = field(default_factory=list)

    @property
    def route_table(self) -> int:
        return ROUTE_TABLE_OFFSET + self.allocation_index

    @property
    def vlan_device(self) -> str:
        return f"vlan{self.vlan_id}"


# Per-allocation policy routing tables start here, clear of main/local/default
ROUTE_TABLE_OFFSET = 1000


def assignment_to_allocation(assignment: Assignment) -> Allocation:
    addresses = [a for a in (assignment.ipv4_address, assignment.ipv6_address) if a is not None]
    return Allocation(
        task_id=assignment.task_id,
        vlan_id=assignment.vlan_id,
        allocation_index=assignment.allocation_index,
        branch_eni_id=assignment.branch_eni_id,
        trunk_eni_id=assignment.trunk_eni_id,
        addresses=addresses,
    )
