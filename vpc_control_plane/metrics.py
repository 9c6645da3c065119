# File: metrics.py
"""
Prometheus metrics and lightweight spans.

``traced`` plays the role of a tracing span: it times the block into
``span_duration``, counts failures by error kind, and logs span start/end at
debug level with the span's attributes.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import Counter, Gauge, Histogram

from .errors import ControlPlaneError, ErrorKind

logger = logging.getLogger("vpc_control_plane.trace")

METRICS = {
    "reconciler_cycles": Counter(
        "vpc_control_plane_long_lived_task_cycles_total",
        "Long-lived task invocations by outcome",
        ["task", "outcome"],
    ),
    "branch_enis_deleted": Counter(
        "vpc_control_plane_branch_enis_deleted_total",
        "Excess branch ENIs removed from the ledger and the cloud",
        ["subnet"],
    ),
    "branch_eni_leaks": Counter(
        "vpc_control_plane_branch_eni_leaks_total",
        "Branch ENIs deleted from the ledger that could not be deleted in the cloud",
        ["subnet"],
    ),
    "consistency_violations": Counter(
        "vpc_control_plane_consistency_violations_total",
        "Excess branch ENI candidates rejected because they still carry addresses",
        ["subnet"],
    ),
    "unattached_branch_enis": Gauge(
        "vpc_control_plane_unattached_branch_enis",
        "Unattached branch ENIs per subnet as last observed by the reclaimer",
        ["subnet"],
    ),
    "gc_assignments_removed": Counter(
        "vpc_control_plane_gc_assignments_removed_total",
        "Assignments torn down and unassigned by GC",
    ),
    "gc_assignments_failed": Counter(
        "vpc_control_plane_gc_assignments_failed_total",
        "Assignments GC failed to remove",
        ["step"],
    ),
    "span_duration": Histogram(
        "vpc_control_plane_span_duration_seconds",
        "Time spent in traced operations",
        ["span"],
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
    ),
    "span_errors": Counter(
        "vpc_control_plane_span_errors_total",
        "Traced operations that ended in error",
        ["span", "kind"],
    ),
}


def error_kind(error: BaseException) -> str:
    if isinstance(error, ControlPlaneError):
        return error.kind.value
    return "unknown"


@contextmanager
def traced(span_name: str, **attributes: Any) -> Iterator[None]:
    start = time.monotonic()
    logger.debug(f"span start {span_name} {attributes}")
    try:
        yield
    except BaseException as e:
        kind = error_kind(e)
        if kind != ErrorKind.CANCELLED.value:
            METRICS["span_errors"].labels(span=span_name, kind=kind).inc()
        logger.debug(f"span error {span_name} kind={kind}: {e}")
        raise
    finally:
        elapsed = time.monotonic() - start
        METRICS["span_duration"].labels(span=span_name).observe(elapsed)
        logger.debug(f"span end {span_name} ({elapsed * 1000:.1f}ms)")
