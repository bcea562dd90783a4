from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
import logging
import queue
import threading
import time
from typing import Any

LOGGER = logging.getLogger("rfq_maker")

Task = Callable[[], Any]

_STOP = object()


class ExecutionQueue:
    """Strict FIFO with a single worker thread.

    A task starts only after the previous one has returned or raised. There is
    no priority, no cancellation and no reordering.
    """

    def __init__(self, name: str = "execution-queue") -> None:
        self.name = name
        self._tasks: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._pending = 0
        self._closed = False
        self._idle = threading.Condition(self._lock)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        with self._lock:
            self._closed = False
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()

    def enqueue(self, task: Task) -> Future:
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("execution queue is stopped")
            self._pending += 1
        self._tasks.put((task, future))
        return future

    def drain(self, timeout_seconds: float | None = None) -> bool:
        deadline = None if timeout_seconds is None else time.time() + timeout_seconds
        with self._idle:
            while self._pending > 0:
                remaining = None if deadline is None else deadline - time.time()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(timeout=remaining)
        return True

    def stop(self, timeout_seconds: float | None = None, discard_pending: bool = False) -> int:
        """Close the queue and stop the worker.

        With `discard_pending`, tasks that have not started yet are cancelled
        instead of run; the task already in progress is left to finish on the
        daemon worker. Returns the number of cancelled tasks.
        """
        with self._lock:
            if self._closed:
                return 0
            self._closed = True
        dropped = self._discard_waiting() if discard_pending else 0
        self._tasks.put(_STOP)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout_seconds)
        self._thread = None
        return dropped

    def _discard_waiting(self) -> int:
        dropped = 0
        while True:
            try:
                item = self._tasks.get_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                continue
            _task, future = item
            future.cancel()
            dropped += 1
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()
        return dropped

    def _run_loop(self) -> None:
        while True:
            item = self._tasks.get()
            if item is _STOP:
                return
            task, future = item
            if future.set_running_or_notify_cancel():
                try:
                    result = task()
                except Exception as exc:
                    LOGGER.debug("queue_task_failed error=%s", exc)
                    future.set_exception(exc)
                else:
                    future.set_result(result)
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()
