#!/usr/bin/env python3
"""
Long-Lived Task Scheduler

Generic driver for background work that is sharded by key:
- Lists work items once at startup (failure aborts scheduling)
- Runs one independent daemon thread per item
- Re-invokes the work function forever, choosing the next delay from the
  outcome of the previous invocation (error / did work / idle)
- Stops promptly and cleanly when the shared stop event is set
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from ..config import BackoffPolicy
from ..errors import Cancelled, ControlPlaneError
from ..logging_config import get_logger
from ..metrics import METRICS

logger = get_logger("vpc_control_plane.scheduler")


class KeyedItem(Protocol):
    @property
    def key(self) -> str: ...


class WorkOutcome(Enum):
    ERROR = "error"
    DID_WORK = "did_work"
    IDLE = "idle"


@dataclass
class LongLivedTask:
    """
    A named background job.

    ``item_lister()`` returns the work items; ``work_func(item, stop_event)``
    performs one unit of work for an item and returns True if it changed
    anything, False if there was nothing to do, or raises on failure.
    """

    task_name: str
    item_lister: Callable[[], List[KeyedItem]]
    work_func: Callable[[KeyedItem, threading.Event], bool]
    backoff: Optional[BackoffPolicy] = None


@dataclass
class ItemStatus:
    task_name: str
    key: str
    runs: int = 0
    last_outcome: Optional[WorkOutcome] = None
    last_error: Optional[str] = None
    last_run_at: Optional[datetime] = None
    stopped: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "task": self.task_name,
            "key": self.key,
            "runs": self.runs,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_error": self.last_error,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "stopped": self.stopped,
        }


class LongLivedTaskScheduler:
    """
    Runs registered long-lived tasks, one thread per (task, item key).

    The scheduler never shares mutable state between item loops except the
    status table, which is guarded by a lock.
    """

    def __init__(self, backoff: Optional[BackoffPolicy] = None, stop_event: Optional[threading.Event] = None):
        self.backoff = backoff or BackoffPolicy()
        self.stop_event = stop_event or threading.Event()
        self._threads: List[threading.Thread] = []
        self._status: Dict[str, ItemStatus] = {}
        self._lock = threading.Lock()

    def start(self, task: LongLivedTask) -> List[threading.Thread]:
        """
        List the task's items and start one worker thread per item.

        Raises whatever the lister raised; no worker is started in that case.
        """
        items = task.item_lister()
        logger.info(f"Starting long-lived task {task.task_name} with {len(items)} item(s)")

        started = []
        for item in items:
            status = ItemStatus(task_name=task.task_name, key=item.key)
            with self._lock:
                self._status[f"{task.task_name}/{item.key}"] = status
            thread = threading.Thread(
                target=self.run_item,
                args=(task, item, status),
                name=f"{task.task_name}-{item.key}",
                daemon=True,
            )
            thread.start()
            started.append(thread)
        self._threads.extend(started)
        return started

    def run_item(self, task: LongLivedTask, item: KeyedItem, status: Optional[ItemStatus] = None) -> None:
        """Worker loop for one item; returns only when the stop event is set."""
        status = status or ItemStatus(task_name=task.task_name, key=item.key)
        backoff = task.backoff or self.backoff
        item_logger = logger.with_fields(task=task.task_name, item=item.key)

        while not self.stop_event.is_set():
            try:
                did_work = task.work_func(item, self.stop_event)
            except Cancelled:
                break
            except ControlPlaneError as e:
                item_logger.error(f"{task.task_name} failed ({e.kind.value}): {e}")
                outcome, error = WorkOutcome.ERROR, str(e)
            except Exception as e:
                item_logger.exception(f"{task.task_name} failed unexpectedly: {e}")
                outcome, error = WorkOutcome.ERROR, str(e)
            else:
                outcome = WorkOutcome.DID_WORK if did_work else WorkOutcome.IDLE
                error = None

            self._record(status, outcome, error)
            METRICS["reconciler_cycles"].labels(task=task.task_name, outcome=outcome.value).inc()

            if self.wait(self.delay_for(outcome, backoff)):
                break

        with self._lock:
            status.stopped = True
        item_logger.info(f"{task.task_name} loop stopped")

    @staticmethod
    def delay_for(outcome: WorkOutcome, backoff: BackoffPolicy) -> float:
        if outcome is WorkOutcome.ERROR:
            return backoff.time_between_errors
        if outcome is WorkOutcome.DID_WORK:
            return backoff.time_between_deletions
        return backoff.time_between_no_deletions

    def wait(self, delay: float) -> bool:
        """Wait ``delay`` seconds; True means the scheduler was stopped."""
        return self.stop_event.wait(delay)

    def _record(self, status: ItemStatus, outcome: WorkOutcome, error: Optional[str]) -> None:
        with self._lock:
            status.runs += 1
            status.last_outcome = outcome
            status.last_error = error
            status.last_run_at = datetime.now(timezone.utc)

    def statuses(self) -> List[ItemStatus]:
        with self._lock:
            return list(self._status.values())

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal every loop to stop and wait for the threads to exit."""
        self.stop_event.set()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
