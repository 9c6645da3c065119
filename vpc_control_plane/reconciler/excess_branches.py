"""
Excess branch ENI reclamation.

Trims every subnet's pool of unattached branch ENIs down to the warm pool
size, one ENI per cycle. The ledger row is deleted first and the cloud
interface second, so a failed cloud delete leaks an interface that an audit
can find, rather than a ledger row nobody can reclaim.
"""

import threading
from typing import Optional

from ..api.ec2_gateway import Ec2SessionManager, SessionKey
from ..api.store import ResourceStore, Subnet
from ..config import ReclaimerConfig
from ..deadline import Deadline
from ..errors import CloudError, ConsistencyViolation, ResourceLeakError, StoreError
from ..logging_config import get_logger
from ..metrics import METRICS, traced
from .scheduler import LongLivedTask

logger = get_logger("vpc_control_plane.excess_branches")


class ExcessBranchReclaimer:
    def __init__(
        self,
        store: ResourceStore,
        ec2: Ec2SessionManager,
        config: Optional[ReclaimerConfig] = None,
    ):
        self.store = store
        self.ec2 = ec2
        self.config = config or ReclaimerConfig()

    def do_delete_excess_branches(self, subnet: Subnet, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Run one reclamation cycle for ``subnet``.

        Returns True if a branch ENI was deleted, False if the subnet is at or
        under its warm pool size. Raises ConsistencyViolation (ledger rolled
        back) when the candidate still carries addresses, and ResourceLeakError
        when the ledger commit succeeded but the cloud delete did not.
        """
        deadline = Deadline(self.config.delete_excess_branch_eni_timeout, stop_event)
        cycle_logger = logger.with_fields(subnet=subnet.subnet_id, accountID=subnet.account_id, az=subnet.az)

        with traced("doDeleteExcessBranches", subnet=subnet.subnet_id, accountID=subnet.account_id, az=subnet.az):
            cycle_logger.debug("Beginning GC of excess branch ENIs")
            session = self.ec2.get_session(SessionKey(account_id=subnet.account_id, region=subnet.region))

            deadline.check("selecting excess branch ENI")
            with self.store.select_and_delete_excess_branch(
                subnet.subnet_id, self.config.warm_pool_per_subnet
            ) as pending:
                branch_eni = pending.branch_eni
                if branch_eni is None:
                    cycle_logger.info("Did not find branch ENI to delete")
                    return False

                eni_logger = cycle_logger.with_fields(eni=branch_eni)
                deadline.check("describing branch ENI")
                iface = session.describe_interface(branch_eni, deadline.child(self.config.describe_timeout))

                if iface.ipv6_count > 0:
                    self._consistency_violation(
                        subnet, eni_logger,
                        f"Could not GC interface {branch_eni}, had {iface.ipv6_count} IPv6 addresses still assigned",
                    )
                # The primary IPv4 address is expected
                if iface.ipv4_count > 1:
                    self._consistency_violation(
                        subnet, eni_logger,
                        f"Could not GC interface {branch_eni}, had {iface.ipv4_count} IPv4 addresses still assigned",
                    )

                deadline.check("committing branch ENI deletion")
                eni_logger.info("Deleting excess ENI")
                pending.commit()

            try:
                session.delete_interface(branch_eni, timeout=deadline.remaining())
            except CloudError as e:
                METRICS["branch_eni_leaks"].labels(subnet=subnet.subnet_id).inc()
                eni_logger.error(
                    f"Deleted (excess) branch ENI from database, but was unable to delete it from AWS; ENI leak: {e}"
                )
                raise ResourceLeakError(
                    f"Branch ENI {branch_eni} deleted from database but not from AWS", branch_eni, e
                )

            METRICS["branch_enis_deleted"].labels(subnet=subnet.subnet_id).inc()
            return True

    @staticmethod
    def _consistency_violation(subnet: Subnet, eni_logger, message: str) -> None:
        METRICS["consistency_violations"].labels(subnet=subnet.subnet_id).inc()
        eni_logger.warning(message)
        raise ConsistencyViolation(message)

    def _refresh_pool_gauge(self, subnet: Subnet) -> None:
        try:
            count = self.store.count_unattached_branches(subnet.subnet_id)
        except StoreError as e:
            logger.with_fields(subnet=subnet.subnet_id).debug(f"Could not refresh warm pool gauge: {e}")
            return
        METRICS["unattached_branch_enis"].labels(subnet=subnet.subnet_id).set(count)

    def work(self, subnet: Subnet, stop_event: threading.Event) -> bool:
        try:
            return self.do_delete_excess_branches(subnet, stop_event)
        finally:
            if not stop_event.is_set():
                self._refresh_pool_gauge(subnet)

    def long_lived_task(self) -> LongLivedTask:
        return LongLivedTask(
            task_name="delete_excess_branches",
            item_lister=self.store.list_subnets,
            work_func=self.work,
            backoff=self.config.backoff,
        )
