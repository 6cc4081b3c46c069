"""
Payment poller: a fixed-interval sweep that asks the gateway about every
non-terminal payment, oldest first, and feeds the answers to the keyed work
queue. A payment whose previous poll event is still queued is skipped.
"""
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging

from common.schemas import ReconcileResult, SweepResult
from common.settings import settings
from common.tracing import reconciler_tracer
from ledger_service.models import utcnow
from reconciliation_service.ingestion import SOURCE_POLL, StatusEvent
from reconciliation_service.repository import PaymentRepository

logger = logging.getLogger(__name__)

class PaymentPoller:
    def __init__(self, repository: PaymentRepository, queue, handler: Callable[[StatusEvent], Any],
                 interval_seconds: float = None, max_age_hours: int = None, batch_size: int = None):
        self.repository = repository
        self.queue = queue
        self.handler = handler
        self.interval_seconds = interval_seconds or settings.poll_interval_seconds
        self.max_age_hours = max_age_hours or settings.poll_max_age_hours
        self.batch_size = batch_size

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._processing: Set[str] = set()
        self._stats = {"sweeps": 0, "submitted": 0, "skipped": 0, "errors": 0,
                       "last_sweep_at": None, "last_error": None}

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Run one sweep now and then every interval. False if already running."""
        with self._lock:
            if self.is_running:
                return False
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="payment-poller", daemon=True)
            self._thread.start()
        logger.info(f"🔄 Payment polling started (every {self.interval_seconds}s)")
        return True

    def stop(self, timeout: float = 5.0) -> bool:
        with self._lock:
            if not self.is_running:
                return False
            self._stop.set()
            thread = self._thread
        thread.join(timeout)
        if thread.is_alive():
            # Still inside a sweep; it exits at the next stop check and start() refuses until then
            logger.warning(f"Payment poller did not stop within {timeout}s, still finishing a sweep")
            return True
        with self._lock:
            if self._thread is thread:
                self._thread = None
        logger.info("⏹️ Payment polling stopped")
        return True

    def _run(self):
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception as e:
                # One bad sweep must not end the loop
                logger.exception(f"Polling sweep failed: {e}")
                with self._lock:
                    self._stats["errors"] += 1
                    self._stats["last_error"] = str(e)
            self._stop.wait(self.interval_seconds)

    def sweep(self) -> Tuple[int, int, List[Tuple[str, Future]]]:
        """Submit one poll event per eligible payment; (checked, skipped, submissions)"""
        with reconciler_tracer.start_span("poll_sweep") as span:
            payments = self.repository.list_pollable(self.max_age_hours, limit=self.batch_size)
            submitted: List[Tuple[str, Future]] = []
            skipped = 0
            for payment in payments:
                ref = payment.external_reference
                with self._lock:
                    if ref in self._processing:
                        skipped += 1
                        continue
                    self._processing.add(ref)
                event = StatusEvent(external_reference=ref, gateway_status=None, source=SOURCE_POLL,
                                    trace_id=span.trace_id)
                future = self.queue.submit(ref, self.handler, event)
                future.add_done_callback(lambda _f, ref=ref: self._done(ref))
                submitted.append((ref, future))

            with self._lock:
                self._stats["sweeps"] += 1
                self._stats["submitted"] += len(submitted)
                self._stats["skipped"] += skipped
                self._stats["last_sweep_at"] = utcnow().isoformat()
            span.add_tag("poll.checked", len(payments))
            span.add_tag("poll.submitted", len(submitted))

        if payments:
            logger.info(f"🔍 Polled {len(payments)} pending payments, {len(submitted)} queued, {skipped} in flight")
        return len(payments), skipped, submitted

    def _done(self, ref: str):
        with self._lock:
            self._processing.discard(ref)

    def check_now(self, wait: bool = True, timeout: float = None) -> SweepResult:
        checked, skipped, submitted = self.sweep()
        results = []
        if wait:
            for ref, future in submitted:
                try:
                    results.append(future.result(timeout=timeout).to_result())
                except Exception as e:
                    # Already logged by the queue worker
                    results.append(ReconcileResult(external_reference=ref, action="error", detail=str(e)))
        return SweepResult(checked=checked, submitted=len(submitted), skipped=skipped, results=results)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                "is_running": self.is_running,
                "interval_seconds": self.interval_seconds,
                "max_age_hours": self.max_age_hours,
                "in_flight": len(self._processing),
            }
