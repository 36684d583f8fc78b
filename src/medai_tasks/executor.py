from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Condition, Lock
import time
from typing import Callable

from medai_tasks.observability import get_logger

_log = get_logger('medai_tasks.executor')

TaskRunner = Callable[[str], None]


class TaskExecutor:
    """Bounded worker pool with a single-flight guard per task id.

    Submitting a task that is already running does not start a second
    worker; it schedules exactly one follow-up run after the current one
    returns. That keeps a retry issued while a failed run is still unwinding
    from being lost.
    """

    def __init__(self, *, max_workers: int = 4, thread_name_prefix: str = 'medai-task'):
        self.max_workers = max(1, int(max_workers))
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=thread_name_prefix)
        self._lock = Lock()
        self._idle = Condition(self._lock)
        self._in_flight: set[str] = set()
        self._rerun: set[str] = set()
        self._closed = False

    def submit(self, task_id: str, runner: TaskRunner) -> bool:
        with self._lock:
            if self._closed:
                _log.warning('executor_closed_submit_ignored task_id=%s', task_id)
                return False
            if task_id in self._in_flight:
                self._rerun.add(task_id)
                _log.debug('task_run_coalesced task_id=%s', task_id)
                return True
            self._in_flight.add(task_id)
        self._pool.submit(self._run, task_id, runner)
        return True

    def is_running(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._in_flight

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def wait_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + float(timeout)
        with self._idle:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait)

    def _run(self, task_id: str, runner: TaskRunner) -> None:
        while True:
            try:
                runner(task_id)
            except Exception:
                _log.error('task_runner_crashed task_id=%s', task_id, exc_info=True)
            with self._idle:
                if task_id in self._rerun and not self._closed:
                    self._rerun.discard(task_id)
                    continue
                self._rerun.discard(task_id)
                self._in_flight.discard(task_id)
                self._idle.notify_all()
                return


class InlineExecutor:
    """Runs submissions synchronously on the caller's thread."""

    def __init__(self):
        self.submitted: list[str] = []
        self._running: set[str] = set()
        self._rerun: set[str] = set()

    def submit(self, task_id: str, runner: TaskRunner) -> bool:
        self.submitted.append(task_id)
        if task_id in self._running:
            self._rerun.add(task_id)
            return True
        self._running.add(task_id)
        try:
            while True:
                runner(task_id)
                if task_id not in self._rerun:
                    break
                self._rerun.discard(task_id)
        finally:
            self._running.discard(task_id)
        return True

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    @property
    def in_flight_count(self) -> int:
        return len(self._running)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return True

    def shutdown(self, *, wait: bool = True) -> None:
        return None
