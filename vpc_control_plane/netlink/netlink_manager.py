#!/usr/bin/env python3
"""
Local Datapath Teardown

Uses netlink (via pyroute2) to remove what the node set up for one task's
branch ENI allocation:
- Policy routing rules that steer the task's addresses into its table
- Routes in the allocation's routing table
- The VLAN sub-interface on the trunk ENI

Every step treats "already gone" as success, so teardown can be repeated
safely after a partial failure or a previous GC cycle.
"""

import errno
import socket
from typing import Iterable

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError

from ..errors import TeardownError
from ..gc.allocation import Allocation
from ..logging_config import get_logger

logger = get_logger("vpc_control_plane.netlink")

# Netlink answers for objects that no longer exist
ALREADY_GONE = {errno.ENOENT, errno.ESRCH, errno.ENODEV, errno.EADDRNOTAVAIL}


class NetlinkManager:
    """
    Tears down per-task network state.

    ``teardown_network`` is the single entry point used by GC; the helpers are
    public so operators can run individual steps.
    """

    def teardown_network(self, allocation: Allocation) -> None:
        alloc_logger = logger.with_fields(task=allocation.task_id, vlan=allocation.vlan_id)
        alloc_logger.info("Tearing down network")
        try:
            with IPRoute() as ipr:
                self.delete_rules(ipr, allocation.route_table)
                self.flush_table(ipr, allocation.route_table)
                self.delete_link(ipr, allocation.vlan_device)
        except NetlinkError as e:
            raise TeardownError(f"Unable to tear down network for {allocation.task_id}", e)
        alloc_logger.info("Network torn down")

    def delete_rules(self, ipr: IPRoute, table: int) -> int:
        """Delete every policy rule (IPv4 and IPv6) that points at ``table``."""
        deleted = 0
        for family in (socket.AF_INET, socket.AF_INET6):
            for rule in self._rules_for_table(ipr, family, table):
                try:
                    ipr.rule(
                        "del",
                        family=family,
                        table=table,
                        priority=rule.get_attr("FRA_PRIORITY"),
                        src=rule.get_attr("FRA_SRC"),
                        src_len=rule["src_len"],
                    )
                    deleted += 1
                except NetlinkError as e:
                    if e.code not in ALREADY_GONE:
                        raise
        return deleted

    @staticmethod
    def _rules_for_table(ipr: IPRoute, family: int, table: int) -> Iterable:
        return [r for r in ipr.get_rules(family=family) if r.get_attr("FRA_TABLE") == table]

    def flush_table(self, ipr: IPRoute, table: int) -> None:
        for family in (socket.AF_INET, socket.AF_INET6):
            try:
                ipr.flush_routes(table=table, family=family)
            except NetlinkError as e:
                if e.code not in ALREADY_GONE:
                    raise

    def delete_link(self, ipr: IPRoute, ifname: str) -> bool:
        indices = ipr.link_lookup(ifname=ifname)
        if not indices:
            logger.debug(f"Link {ifname} not found for deletion")
            return False
        try:
            ipr.link("del", index=indices[0])
        except NetlinkError as e:
            if e.code not in ALREADY_GONE:
                raise
            return False
        logger.info(f"Deleted link {ifname}")
        return True
