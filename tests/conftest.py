import os

import pytest

# Keep DB and log output local during tests
os.environ.setdefault("DB_DIR", ".")
os.environ.pop("LOG_DIR", None)

from vpc_control_plane.api.models import (
    AvailabilityZone,
    BranchENI,
    BranchENIAttachment,
    Subnet,
    create_db_engine,
    create_session_factory,
    init_db,
)
from vpc_control_plane.api.store import ResourceStore

ACCOUNT_ID = "123456789012"
REGION = "us-east-1"


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'vpc_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(db_factory):
    database = db_factory()
    try:
        yield database
    finally:
        database.close()


@pytest.fixture
def store(db_factory):
    return ResourceStore(db_factory)


def add_subnet(db, subnet_id, az="us-east-1a", account_id=ACCOUNT_ID, region=REGION, vpc_id="vpc-1"):
    if db.get(AvailabilityZone, {"zone_name": az, "account_id": account_id}) is None:
        db.add(AvailabilityZone(zone_name=az, account_id=account_id, region=region))
    db.add(Subnet(subnet_id=subnet_id, az=az, vpc_id=vpc_id, account_id=account_id, cidr="10.0.0.0/24"))
    db.commit()


def add_branch_enis(db, subnet_id, eni_ids):
    """Insert branch ENIs in order; later IDs are newer."""
    for eni_id in eni_ids:
        db.add(BranchENI(branch_eni=eni_id, subnet_id=subnet_id))
        db.flush()
    db.commit()


def attach(db, eni_id, trunk_eni="eni-trunk", idx=1):
    db.add(BranchENIAttachment(branch_eni=eni_id, trunk_eni=trunk_eni, idx=idx))
    db.commit()


def branch_enis_in(db, subnet_id):
    db.expire_all()
    return [
        row.branch_eni
        for row in db.query(BranchENI).filter(BranchENI.subnet_id == subnet_id).order_by(BranchENI.id)
    ]
