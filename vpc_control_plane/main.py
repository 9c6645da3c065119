#!/usr/bin/env python3
"""
VPC Control Plane - Main Entry Points

vpc-control-plane runs the long-lived service:
- Excess branch ENI reclaimer, one loop per subnet
- Optional periodic assignment GC for this node
- Operator REST API (health, metrics, task status)

vpc-gc3 runs a single GC cycle on the node and exits non-zero on failure.
"""

import logging
import signal
import sys
import threading

import grpc
import uvicorn

from .api.ec2_gateway import Ec2SessionManager
from .api.models import create_db_engine, create_session_factory, init_db
from .api.rest_api_server import create_app
from .api.store import ResourceStore
from .api.vpc_service_client import AgentVPCServiceClient
from .config import GCConfig, ServiceConfig
from .errors import ControlPlaneError
from .gc import gc3
from .gc.identity import Ec2MetadataIdentityProvider
from .logging_config import setup_logging
from .netlink.netlink_manager import NetlinkManager
from .reconciler.excess_branches import ExcessBranchReclaimer
from .reconciler.scheduler import LongLivedTaskScheduler

logger = logging.getLogger("vpc_control_plane")


def build_scheduler(config: ServiceConfig) -> LongLivedTaskScheduler:
    """Wire up and start every enabled long-lived task."""
    scheduler = LongLivedTaskScheduler()

    if config.reclaimer_enabled:
        engine = create_db_engine(config.database_url)
        init_db(engine)
        store = ResourceStore(create_session_factory(engine))
        reclaimer = ExcessBranchReclaimer(store, Ec2SessionManager(config.aws), config.reclaimer)
        # Failure to list subnets is fatal at startup
        scheduler.start(reclaimer.long_lived_task())
        logger.info("✓ Excess branch reclaimer started")

    if config.gc.enabled:
        channel = grpc.insecure_channel(config.gc.vpc_service_address)
        task = gc3.gc_long_lived_task(
            config.gc,
            Ec2MetadataIdentityProvider(),
            AgentVPCServiceClient(channel),
            NetlinkManager().teardown_network,
        )
        scheduler.start(task)
        logger.info(f"✓ Assignment GC started against {config.gc.vpc_service_address}")

    return scheduler


def main():
    setup_logging()
    try:
        config = ServiceConfig.from_env()
        scheduler = build_scheduler(config)
    except ControlPlaneError as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)

    app = create_app(scheduler)
    try:
        logger.info(f"Starting REST API on port {config.rest_port}...")
        uvicorn.run(app, host="0.0.0.0", port=config.rest_port, log_level="info")
    finally:
        scheduler.stop(timeout=10)


def gc_main():
    setup_logging()
    try:
        config = GCConfig.from_env()
    except ControlPlaneError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())

    with grpc.insecure_channel(config.vpc_service_address) as channel:
        try:
            result = gc3.gc(
                config.timeout,
                Ec2MetadataIdentityProvider(),
                AgentVPCServiceClient(channel),
                gc3.Args.from_config(config),
                NetlinkManager().teardown_network,
                stop_event=stop_event,
            )
        except ControlPlaneError as e:
            logger.error(f"GC failed: {e}")
            sys.exit(1)

    logger.info(f"GC removed {len(result.removed)} assignment(s)")


if __name__ == "__main__":
    main()
