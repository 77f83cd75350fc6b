"""Background worker driving the role shop maintenance tick."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from roleshop.app.roles import TickSummary
from roleshop.app.services.roleshop import get_role_shop_service, get_role_shop_settings

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_workers: Dict[str, "_MaintenanceWorker"] = {}

_MAINTENANCE_METRICS: Dict[str, object] = {
    "ticks": 0,
    "suspended": 0,
    "auctions_completed": 0,
    "reminders_sent": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _MAINTENANCE_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: TickSummary) -> None:
    with _metrics_lock:
        metrics = _MAINTENANCE_METRICS
        metrics["ticks"] = int(metrics.get("ticks", 0)) + 1
        metrics["suspended"] = int(metrics.get("suspended", 0)) + summary.suspended
        metrics["auctions_completed"] = int(metrics.get("auctions_completed", 0)) + summary.auctions_completed
        metrics["reminders_sent"] = int(metrics.get("reminders_sent", 0)) + summary.reminders_sent
        metrics["failures"] = int(metrics.get("failures", 0)) + summary.failures
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(failed_at: datetime, error: Exception) -> None:
    with _metrics_lock:
        metrics = _MAINTENANCE_METRICS
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def run_maintenance_job(*, now: Optional[datetime] = None) -> TickSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        summary = get_role_shop_service().run_maintenance_tick()
    except Exception as exc:
        _record_run_failure(current_time, exc)
        logger.exception("Role shop maintenance job failed")
        raise
    completed_at = summary.completed_at or current_time
    _record_run_success(completed_at, summary)
    logger.info(
        "Role shop maintenance job completed",
        extra={
            "suspended": summary.suspended,
            "auctions_completed": summary.auctions_completed,
            "reminders_sent": summary.reminders_sent,
            "failures": summary.failures,
        },
    )
    return summary


class _MaintenanceWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True)
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_maintenance_job()
            except Exception:
                # Failures are logged and counted by run_maintenance_job.
                pass
            if self._stop_event.wait(self._interval):
                break


def start_maintenance_scheduler() -> bool:
    settings = get_role_shop_settings()
    with _scheduler_lock:
        if _workers:
            return True
        if not settings.scheduler_enabled:
            logger.info("Role shop maintenance scheduler disabled")
            return False
        worker = _MaintenanceWorker(
            initial_delay=settings.initial_delay_seconds,
            interval=settings.tick_seconds,
        )
        _workers["maintenance"] = worker
        worker.start()
        logger.info(
            "Role shop maintenance scheduler started",
            extra={
                "initial_delay_seconds": round(settings.initial_delay_seconds, 2),
                "interval_seconds": round(settings.tick_seconds, 2),
            },
        )
        return True


def shutdown_maintenance_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Role shop maintenance scheduler stopped")


def get_maintenance_metrics() -> Dict[str, object]:
    with _metrics_lock:
        value = _MAINTENANCE_METRICS
        return {
            **value,
            "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
            "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _MAINTENANCE_METRICS.update(
            {
                "ticks": 0,
                "suspended": 0,
                "auctions_completed": 0,
                "reminders_sent": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "start_maintenance_scheduler",
    "shutdown_maintenance_scheduler",
    "get_maintenance_metrics",
    "run_maintenance_job",
]
