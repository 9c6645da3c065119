# file: models.py

from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Index, create_engine, event, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class AvailabilityZone(Base):
    __tablename__ = "availability_zones"
    zone_name = Column(String, primary_key=True)
    account_id = Column(String, primary_key=True)
    region = Column(String, nullable=False)


class Subnet(Base):
    __tablename__ = "subnets"
    subnet_id = Column(String, primary_key=True)
    az = Column(String, nullable=False)
    vpc_id = Column(String, nullable=False)
    account_id = Column(String, nullable=False)
    cidr = Column(String, nullable=False)


class BranchENI(Base):
    __tablename__ = "branch_enis"
    # Autoincrement id is the creation ordering key used by the reclaimer
    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_eni = Column(String, unique=True, nullable=False)
    subnet_id = Column(String, ForeignKey("subnets.subnet_id"), nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())


class BranchENIAttachment(Base):
    __tablename__ = "branch_eni_attachments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # Attaching a branch ENI whose row the reclaimer already deleted must fail
    branch_eni = Column(String, ForeignKey("branch_enis.branch_eni"), nullable=False)
    trunk_eni = Column(String, nullable=True)
    idx = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


Index("branch_eni_attachments_branch_eni", BranchENIAttachment.branch_eni)


# ============================================================================
# Database Configuration
# ============================================================================


def create_db_engine(database_url: str, busy_timeout: float = 30.0) -> Engine:
    """
    Create the engine for the allocation ledger.

    SQLite is used for local runs and tests; the busy timeout bounds how long
    a writer waits on a concurrent transaction before failing the cycle.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
