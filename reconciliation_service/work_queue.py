"""
Keyed work queue.

Work submitted under the same key runs one item at a time in submission
order; different keys run in parallel on a bounded thread pool.
"""
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, Tuple
import logging

from common.settings import settings

logger = logging.getLogger(__name__)

_Item = Tuple[Callable[..., Any], tuple, Future]

class KeyedWorkQueue:
    def __init__(self, max_workers: int = None, name: str = "reconcile"):
        self.max_workers = max_workers or settings.queue_workers
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name)
        self._pending: Dict[str, Deque[_Item]] = {}
        self._cond = threading.Condition()
        self._outstanding = 0
        self._closed = False
        self._stats = {"submitted": 0, "completed": 0, "failed": 0}

    def submit(self, key: str, fn: Callable[..., Any], *args) -> Future:
        future: Future = Future()
        with self._cond:
            if self._closed:
                raise RuntimeError("work queue is shut down")
            self._stats["submitted"] += 1
            self._outstanding += 1
            queue = self._pending.get(key)
            if queue is not None:
                # A drainer is already running for this key
                queue.append((fn, args, future))
                return future
            self._pending[key] = deque([(fn, args, future)])
        self._executor.submit(self._drain, key)
        return future

    def run(self, key: str, fn: Callable[..., Any], *args, timeout: float = None) -> Any:
        """Submit and wait for the result"""
        return self.submit(key, fn, *args).result(timeout=timeout)

    def _drain(self, key: str):
        while True:
            with self._cond:
                # The running item stays at the head until it finishes
                fn, args, future = self._pending[key][0]

            ok = True
            if future.set_running_or_notify_cancel():
                try:
                    future.set_result(fn(*args))
                except Exception as e:
                    logger.exception(f"Work item for {key} failed: {e}")
                    future.set_exception(e)
                    ok = False

            with self._cond:
                queue = self._pending[key]
                queue.popleft()
                self._stats["completed" if ok else "failed"] += 1
                self._outstanding -= 1
                self._cond.notify_all()
                if not queue:
                    del self._pending[key]
                    return

    def wait_idle(self, timeout: float = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def stats(self) -> Dict[str, Any]:
        with self._cond:
            return {
                **self._stats,
                "outstanding": self._outstanding,
                "active_keys": len(self._pending),
                "max_workers": self.max_workers,
            }

    def shutdown(self, wait: bool = True):
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=wait)
