"""Scheduler integration for the subscription renewal sweep."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional

from ratework.app.services.subscriptions import get_renewal_sweeper, get_subscription_config
from ratework.app.subscriptions.sweeper import RenewalSweeper, SweepSummary

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_SweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "processed": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: SweepSummary) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["processed"] = int(_SWEEP_METRICS.get("processed", 0)) + summary.processed
        _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS.get("failures", 0)) + summary.failures
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS.get("failures", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_sweep_job(
    *,
    now: Optional[datetime] = None,
    sweeper: Optional[RenewalSweeper] = None,
) -> SweepSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    active_sweeper = sweeper or get_renewal_sweeper()
    _record_run_start(current_time)
    try:
        summary = active_sweeper.sweep(current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Renewal sweep job failed")
        raise
    else:
        _record_run_success(current_time, summary)
        logger.info(
            "Renewal sweep job completed",
            extra={
                "candidates": summary.candidates,
                "processed": summary.processed,
                "failures": summary.failures,
            },
        )
        return summary


class _SweepWorker(Thread):
    def __init__(
        self,
        *,
        initial_delay: float,
        interval: float,
        job: Callable[[], SweepSummary] = run_sweep_job,
    ):
        super().__init__(daemon=True, name="renewal-sweeper")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._job = job
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self._job()
            except Exception:
                # Errors are logged inside run_sweep_job; keep the schedule.
                pass
            if self._stop_event.wait(self._interval):
                break


def start_renewal_sweeper(
    *,
    initial_delay: float = 0.0,
    interval: Optional[float] = None,
    job: Callable[[], SweepSummary] = run_sweep_job,
) -> bool:
    """Start the background sweep thread; returns ``False`` when already running."""

    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return False
        effective_interval = interval if interval is not None else get_subscription_config().sweep_interval_seconds
        _worker = _SweepWorker(initial_delay=initial_delay, interval=effective_interval, job=job)
        _worker.start()
        logger.info(
            "Renewal sweeper started",
            extra={
                "initial_delay_seconds": round(initial_delay, 2),
                "interval_seconds": effective_interval,
            },
        )
        return True


def shutdown_renewal_sweeper(timeout: float = 1.0) -> None:
    global _worker
    with _scheduler_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=timeout)
        logger.info("Renewal sweeper stopped")


def is_renewal_sweeper_running() -> bool:
    with _scheduler_lock:
        return _worker is not None and _worker.is_alive()


def get_sweeper_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "processed": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_sweeper_metrics",
    "is_renewal_sweeper_running",
    "run_sweep_job",
    "shutdown_renewal_sweeper",
    "start_renewal_sweeper",
]
