"""
Resource Store

Transactional access to the allocation ledger:
- Subnet listing (work items for the excess branch reclaimer)
- Excess branch ENI selection and deletion
- Unattached branch ENI counts for the warm pool gauge

The ledger is authoritative for "in use": a branch ENI with no row in
``branch_eni_attachments`` is unattached, whatever the cloud reports.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import StoreError
from ..logging_config import get_logger
from ..metrics import traced
from .models import (
    AvailabilityZone as AvailabilityZoneModel,
    BranchENI as BranchENIModel,
    BranchENIAttachment as BranchENIAttachmentModel,
    Subnet as SubnetModel,
)

logger = get_logger("vpc_control_plane.store")


@dataclass(frozen=True)
class Subnet:
    """A reclaimable shard. Immutable once read."""

    az: str
    vpc_id: str
    account_id: str
    subnet_id: str
    cidr: str
    region: str

    @property
    def key(self) -> str:
        return self.subnet_id


class PendingBranchDeletion:
    """
    A branch ENI deleted inside a still-open transaction.

    Nothing is persisted until ``commit()``. The owning context manager rolls
    the transaction back if the block exits without committing.
    """

    def __init__(self, session: Session, branch_eni: Optional[str]):
        self._session = session
        self.branch_eni = branch_eni
        self.committed = False

    def commit(self) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as e:
            raise StoreError("Cannot commit transaction", e)
        self.committed = True


class ResourceStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_subnets(self) -> List[Subnet]:
        """All subnets with their region. Fails as a whole; never partial."""
        with traced("getSubnets"):
            session = self._session_factory()
            try:
                rows = session.execute(
                    select(
                        SubnetModel.az,
                        SubnetModel.vpc_id,
                        SubnetModel.account_id,
                        SubnetModel.subnet_id,
                        SubnetModel.cidr,
                        AvailabilityZoneModel.region,
                    )
                    .join(
                        AvailabilityZoneModel,
                        (SubnetModel.az == AvailabilityZoneModel.zone_name)
                        & (SubnetModel.account_id == AvailabilityZoneModel.account_id),
                    )
                    .order_by(SubnetModel.subnet_id)
                ).all()
                subnets = [
                    Subnet(
                        az=row.az,
                        vpc_id=row.vpc_id,
                        account_id=row.account_id,
                        subnet_id=row.subnet_id,
                        cidr=row.cidr,
                        region=row.region,
                    )
                    for row in rows
                ]
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Could not list subnets: {e}")
                raise StoreError("Could not list subnets", e)
            finally:
                session.close()
        return subnets

    @contextmanager
    def select_and_delete_excess_branch(
        self, subnet_id: str, pool_target: int
    ) -> Iterator[PendingBranchDeletion]:
        """
        Delete at most one excess unattached branch ENI row in an open transaction.

        Unattached ENIs of the subnet are ordered newest first by ``id``; the
        first ``pool_target`` are the warm pool and are never touched, the next
        one is deleted. Eligibility and deletion happen in the same statement,
        so an attachment committed before this transaction is always seen.

        Usage:
            with store.select_and_delete_excess_branch(subnet_id, 50) as pending:
                if pending.branch_eni is not None:
                    ...checks...
                    pending.commit()
        """
        session = self._session_factory()
        pending = None
        try:
            attached = select(BranchENIAttachmentModel.branch_eni).where(
                BranchENIAttachmentModel.branch_eni.is_not(None)
            )
            candidate = (
                select(BranchENIModel.branch_eni)
                .where(BranchENIModel.branch_eni.not_in(attached))
                .where(BranchENIModel.subnet_id == subnet_id)
                .order_by(BranchENIModel.id.desc())
                .limit(1)
                .offset(pool_target)
            )
            stmt = (
                delete(BranchENIModel)
                .where(BranchENIModel.branch_eni.in_(candidate))
                .returning(BranchENIModel.branch_eni)
                .execution_options(synchronize_session=False)
            )
            try:
                branch_eni = session.execute(stmt).scalar_one_or_none()
            except SQLAlchemyError as e:
                raise StoreError("Cannot select branch ENI to delete", e)
            pending = PendingBranchDeletion(session, branch_eni)
            yield pending
        finally:
            if pending is None or not pending.committed:
                session.rollback()
            session.close()

    def count_unattached_branches(self, subnet_id: str) -> int:
        session = self._session_factory()
        try:
            attached = select(BranchENIAttachmentModel.branch_eni).where(
                BranchENIAttachmentModel.branch_eni.is_not(None)
            )
            count = session.execute(
                select(func.count())
                .select_from(BranchENIModel)
                .where(BranchENIModel.subnet_id == subnet_id)
                .where(BranchENIModel.branch_eni.not_in(attached))
            ).scalar_one()
            session.commit()
            return count
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"Could not count unattached branch ENIs in {subnet_id}", e)
        finally:
            session.close()
