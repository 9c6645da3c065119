"""Tests for the allocation ledger store"""

import random
import threading
import time

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import ACCOUNT_ID, REGION, add_branch_enis, add_subnet, attach, branch_enis_in
from vpc_control_plane.api.store import ResourceStore, Subnet
from vpc_control_plane.errors import StoreError


def test_list_subnets_joins_region(db, store):
    add_subnet(db, "subnet-b")
    add_subnet(db, "subnet-a", az="us-west-2a", region="us-west-2")

    subnets = store.list_subnets()

    assert [s.subnet_id for s in subnets] == ["subnet-a", "subnet-b"]
    assert subnets[0].region == "us-west-2"
    assert subnets[1] == Subnet(
        az="us-east-1a",
        vpc_id="vpc-1",
        account_id=ACCOUNT_ID,
        subnet_id="subnet-b",
        cidr="10.0.0.0/24",
        region=REGION,
    )
    assert subnets[1].key == "subnet-b"


def test_list_subnets_empty(store):
    assert store.list_subnets() == []


def test_list_subnets_failure_is_store_error():
    class BrokenSession:
        def execute(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        def rollback(self):
            pass

        def close(self):
            pass

    with pytest.raises(StoreError):
        ResourceStore(lambda: BrokenSession()).list_subnets()


def test_select_leaves_warm_pool(db, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2", "eni-3"])

    with store.select_and_delete_excess_branch("subnet-1", 3) as pending:
        assert pending.branch_eni is None


def test_select_deletes_oldest_beyond_pool(db, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2", "eni-3"])

    with store.select_and_delete_excess_branch("subnet-1", 2) as pending:
        # Newest first: eni-3 and eni-2 are the warm pool
        assert pending.branch_eni == "eni-1"
        pending.commit()

    assert branch_enis_in(db, "subnet-1") == ["eni-2", "eni-3"]


def test_select_skips_attached(db, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2", "eni-3"])
    attach(db, "eni-1")

    with store.select_and_delete_excess_branch("subnet-1", 1) as pending:
        assert pending.branch_eni == "eni-2"
        pending.commit()

    assert branch_enis_in(db, "subnet-1") == ["eni-1", "eni-3"]


def test_select_scoped_to_subnet(db, store):
    add_subnet(db, "subnet-1")
    add_subnet(db, "subnet-2")
    add_branch_enis(db, "subnet-2", ["eni-a", "eni-b"])

    with store.select_and_delete_excess_branch("subnet-1", 0) as pending:
        assert pending.branch_eni is None

    assert branch_enis_in(db, "subnet-2") == ["eni-a", "eni-b"]


def test_uncommitted_deletion_rolls_back(db, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2"])

    with store.select_and_delete_excess_branch("subnet-1", 1) as pending:
        assert pending.branch_eni == "eni-1"

    assert branch_enis_in(db, "subnet-1") == ["eni-1", "eni-2"]


def test_exception_in_block_rolls_back(db, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2"])

    with pytest.raises(RuntimeError):
        with store.select_and_delete_excess_branch("subnet-1", 0) as pending:
            assert pending.branch_eni == "eni-2"
            raise RuntimeError("describe failed")

    assert branch_enis_in(db, "subnet-1") == ["eni-1", "eni-2"]


def test_attach_after_reclaim_fails(db, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2"])

    with store.select_and_delete_excess_branch("subnet-1", 1) as pending:
        assert pending.branch_eni == "eni-1"
        pending.commit()

    with pytest.raises(IntegrityError):
        attach(db, "eni-1")
    db.rollback()
    assert store.count_unattached_branches("subnet-1") == 1


def test_attach_during_reclaim_fails_once_committed(db, db_factory, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2"])
    errors = []

    def attach_from_other_session():
        other = db_factory()
        try:
            attach(other, "eni-1")
        except IntegrityError as e:
            errors.append(e)
            other.rollback()
        finally:
            other.close()

    with store.select_and_delete_excess_branch("subnet-1", 1) as pending:
        assert pending.branch_eni == "eni-1"
        # The attaching writer waits on the open deletion
        attacher = threading.Thread(target=attach_from_other_session)
        attacher.start()
        time.sleep(0.2)
        pending.commit()

    attacher.join(timeout=10)
    assert not attacher.is_alive()
    assert len(errors) == 1
    assert branch_enis_in(db, "subnet-1") == ["eni-2"]


def test_count_unattached_branches(db, store):
    add_subnet(db, "subnet-1")
    add_branch_enis(db, "subnet-1", ["eni-1", "eni-2", "eni-3"])
    attach(db, "eni-2")

    assert store.count_unattached_branches("subnet-1") == 2
    assert store.count_unattached_branches("subnet-unknown") == 0


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_never_deletes_attached_or_warm_pool(db, store, seed):
    """Interleave attachments with reclamation; attached ENIs always survive."""
    rng = random.Random(seed)
    pool = 3
    add_subnet(db, "subnet-1")
    eni_ids = [f"eni-{i:03d}" for i in range(20)]
    add_branch_enis(db, "subnet-1", eni_ids)

    attached = set()
    for _ in range(40):
        if rng.random() < 0.3:
            remaining = [e for e in branch_enis_in(db, "subnet-1") if e not in attached]
            if remaining:
                eni = rng.choice(remaining)
                attach(db, eni)
                attached.add(eni)

        before = [e for e in branch_enis_in(db, "subnet-1") if e not in attached]
        with store.select_and_delete_excess_branch("subnet-1", pool) as pending:
            if pending.branch_eni is not None:
                assert pending.branch_eni not in attached
                # Only ever the newest ENI outside the warm pool
                assert pending.branch_eni == sorted(before, reverse=True)[pool]
                pending.commit()
            else:
                assert len(before) <= pool

        if pending.branch_eni is not None:
            assert store.count_unattached_branches("subnet-1") == len(before) - 1 >= pool

    survivors = branch_enis_in(db, "subnet-1")
    assert attached <= set(survivors)
    assert len([e for e in survivors if e not in attached]) <= pool
