# File: config.py
"""
Runtime configuration.

Values come from environment variables with defaults matching production
constants. Configuration objects are built once in ``main`` and passed into
constructors explicitly.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigurationError


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", e)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", e)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def database_url_from_env() -> str:
    """DATABASE_URL wins; otherwise a SQLite file under DB_DIR."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    db_dir = os.getenv("DB_DIR", "/app/data")
    db_path = os.getenv("DB_PATH", os.path.join(db_dir, "vpc.db"))
    return f"sqlite:///{db_path}"


@dataclass
class BackoffPolicy:
    """Delays (seconds) between invocations of one long-lived task item."""

    time_between_errors: float = 10.0
    time_between_deletions: float = 5.0
    time_between_no_deletions: float = 120.0


@dataclass
class ReclaimerConfig:
    warm_pool_per_subnet: int = 50
    delete_excess_branch_eni_timeout: float = 30.0
    describe_timeout: float = 0.5
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_env(cls) -> "ReclaimerConfig":
        config = cls(
            warm_pool_per_subnet=_env_int("WARM_POOL_PER_SUBNET", 50),
            delete_excess_branch_eni_timeout=_env_float("DELETE_EXCESS_BRANCH_ENI_TIMEOUT", 30.0),
            describe_timeout=_env_float("DESCRIBE_ENI_TIMEOUT", 0.5),
            backoff=BackoffPolicy(
                time_between_errors=_env_float("TIME_BETWEEN_ERRORS", 10.0),
                time_between_deletions=_env_float("TIME_BETWEEN_DELETIONS", 5.0),
                time_between_no_deletions=_env_float("TIME_BETWEEN_NO_DELETIONS", 120.0),
            ),
        )
        if config.warm_pool_per_subnet < 0:
            raise ConfigurationError("WARM_POOL_PER_SUBNET must not be negative")
        return config


@dataclass
class AWSConfig:
    # Role assumed in accounts other than the caller's own; None disables assume-role.
    assume_role_name: Optional[str] = None
    own_account_id: Optional[str] = None
    connect_timeout: float = 5.0
    max_attempts: int = 3

    @classmethod
    def from_env(cls) -> "AWSConfig":
        return cls(
            assume_role_name=os.getenv("AWS_ASSUME_ROLE_NAME") or None,
            own_account_id=os.getenv("AWS_ACCOUNT_ID") or None,
            connect_timeout=_env_float("AWS_CONNECT_TIMEOUT", 5.0),
            max_attempts=_env_int("AWS_MAX_ATTEMPTS", 3),
        )


@dataclass
class GCConfig:
    source_of_truth: str = "kubernetes"
    kubernetes_pods_url: str = "https://localhost:10250/pods"
    mesos_state_url: str = "http://localhost:5051/state"
    vpc_service_address: str = "localhost:7001"
    timeout: float = 120.0
    enabled: bool = False
    backoff: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(
            time_between_errors=30.0,
            time_between_deletions=60.0,
            time_between_no_deletions=300.0,
        )
    )

    @classmethod
    def from_env(cls) -> "GCConfig":
        return cls(
            source_of_truth=os.getenv("GC_SOURCE_OF_TRUTH", "kubernetes"),
            kubernetes_pods_url=os.getenv("KUBERNETES_PODS_URL", "https://localhost:10250/pods"),
            mesos_state_url=os.getenv("MESOS_STATE_URL", "http://localhost:5051/state"),
            vpc_service_address=os.getenv("VPC_SERVICE_ADDRESS", "localhost:7001"),
            timeout=_env_float("GC_TIMEOUT", 120.0),
            enabled=_env_bool("GC_ENABLED", False),
            backoff=BackoffPolicy(
                time_between_errors=_env_float("GC_TIME_BETWEEN_ERRORS", 30.0),
                time_between_deletions=_env_float("GC_TIME_BETWEEN_REMOVALS", 60.0),
                time_between_no_deletions=_env_float("GC_INTERVAL", 300.0),
            ),
        )


@dataclass
class ServiceConfig:
    database_url: str
    rest_port: int = 8000
    reclaimer_enabled: bool = True
    reclaimer: ReclaimerConfig = field(default_factory=ReclaimerConfig)
    aws: AWSConfig = field(default_factory=AWSConfig)
    gc: GCConfig = field(default_factory=GCConfig)

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            database_url=database_url_from_env(),
            rest_port=_env_int("REST_PORT", 8000),
            reclaimer_enabled=_env_bool("RECLAIMER_ENABLED", True),
            reclaimer=ReclaimerConfig.from_env(),
            aws=AWSConfig.from_env(),
            gc=GCConfig.from_env(),
        )
