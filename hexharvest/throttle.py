"""
Per-provider throttle: bounded in-flight calls plus a minimum spacing
between call starts.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Executor
from typing import Any, Callable

logger = logging.getLogger(__name__)

_STOP = object()


class RateLimiter:
    def __init__(self, max_concurrent: int = 1, min_time: float = 0.0, name: str = "limiter"):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if min_time < 0:
            raise ValueError("min_time must be >= 0")
        self.name = name
        self.max_concurrent = max_concurrent
        self.min_time = min_time
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._spacing_lock = threading.Lock()
        self._last_start = None
        self._pending = queue.Queue()
        self._gate = None
        self._gate_lock = threading.Lock()
        self.running = 0
        self.started = 0

    def acquire(self):
        """Block until a slot is free and ``min_time`` has passed since the last start."""
        self._slots.acquire()
        with self._spacing_lock:
            now = time.monotonic()
            if self._last_start is not None:
                sleep_time = self.min_time - (now - self._last_start)
                if sleep_time > 0:
                    time.sleep(sleep_time)
                    now = time.monotonic()
            self._last_start = now
            self.running += 1
            self.started += 1

    def release(self):
        with self._spacing_lock:
            self.running -= 1
        self._slots.release()

    def schedule(self, executor: Executor, fn: Callable[..., Any], *args: Any) -> None:
        """Queue ``fn(*args)``; it is submitted to ``executor`` once the throttle admits it.

        The wait happens on this limiter's gate thread, so pool workers never
        block on the throttle. The slot is released when the future completes.
        """
        self._ensure_gate()
        self._pending.put((executor, fn, args))

    def pending(self) -> int:
        return self._pending.qsize()

    def close(self):
        with self._gate_lock:
            if self._gate is not None:
                self._pending.put(_STOP)
                self._gate = None

    def _ensure_gate(self):
        with self._gate_lock:
            if self._gate is None:
                self._gate = threading.Thread(target=self._run_gate, name=f"throttle-{self.name}", daemon=True)
                self._gate.start()

    def _run_gate(self):
        while True:
            job = self._pending.get()
            if job is _STOP:
                return
            executor, fn, args = job
            self.acquire()
            try:
                future = executor.submit(fn, *args)
            except RuntimeError as e:
                # executor already shut down
                self.release()
                logger.warning("[%s] dropping scheduled job: %s", self.name, e)
                continue
            future.add_done_callback(lambda _f: self.release())
