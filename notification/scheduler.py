#!/usr/bin/env python3
"""
Cancellable delay scheduler for in-process deferred publishes.

Timers live only in this process. On shutdown they are either cancelled
(dropped, an at-least-once gap the reconciliation sweep has to close) or
drained by running them immediately. The RQ transport does not use this: its
deferred publishes are persisted in Redis.
"""

import logging
import threading
import uuid
from typing import Callable, Dict, Any

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for one pending timer."""

    def __init__(self, scheduler: "DelayScheduler", task_id: str, timer: threading.Timer,
                 fn: Callable[..., Any], args: tuple):
        self.id = task_id
        self._scheduler = scheduler
        self._timer = timer
        self._fn = fn
        self._args = args

    def cancel(self) -> bool:
        """Cancel the task. Returns False if it already ran or was cancelled."""
        return self._scheduler._cancel(self.id)


class DelayScheduler:
    """Runs callables after a delay on daemon timer threads."""

    def __init__(self, name: str = "notification-scheduler"):
        self.name = name
        self._tasks: Dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._tasks)

    def call_later(self, delay_seconds: float, fn: Callable[..., Any], *args) -> ScheduledTask:
        """Schedule fn(*args) to run after delay_seconds."""
        task_id = uuid.uuid4().hex
        timer = threading.Timer(max(0.0, delay_seconds), self._run, args=(task_id,))
        timer.daemon = True
        timer.name = f"{self.name}-{task_id[:8]}"
        task = ScheduledTask(self, task_id, timer, fn, args)
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Scheduler {self.name} is shut down")
            self._tasks[task_id] = task
        timer.start()
        return task

    def _run(self, task_id: str) -> None:
        with self._lock:
            task = self._tasks.pop(task_id, None)
        if task is None:
            return
        try:
            task._fn(*task._args)
        except Exception as e:
            logger.error(f"Scheduled task {task_id} failed: {e}", exc_info=True)

    def _cancel(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        task._timer.cancel()
        return True

    def shutdown(self, drain: bool = False) -> int:
        """
        Stop accepting tasks and dispose of the pending ones.

        Args:
            drain: Run pending tasks now instead of dropping them.

        Returns:
            Number of pending tasks that were drained or dropped.
        """
        with self._lock:
            self._closed = True
            tasks = list(self._tasks.values())
            self._tasks.clear()

        for task in tasks:
            task._timer.cancel()
            if drain:
                try:
                    task._fn(*task._args)
                except Exception as e:
                    logger.error(f"Draining scheduled task {task.id} failed: {e}", exc_info=True)

        if tasks and not drain:
            logger.warning(f"Scheduler {self.name} dropped {len(tasks)} pending task(s) on shutdown")
        return len(tasks)
