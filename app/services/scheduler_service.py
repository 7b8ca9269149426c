"""
ERP Approval Engine
Scheduler Service.

Lightweight background job scheduler implemented with a single daemon
thread, so the engine needs no Celery/APScheduler deployment. Jobs can
also be triggered manually via the API or run by the standalone worker
(``scripts/run_escalation_worker.py``).

Architecture:
    - Job functions register themselves with ``@register_job``
    - Each job has an interval (seconds), optionally taken from app config
    - Every run is recorded on the ScheduledJob model
    - A failing job is logged and recorded; it never stops the loop
"""

from __future__ import annotations

import logging
import time
import threading
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

# Loop granularity; job intervals are checked against this tick
TICK_SECONDS = 1.0


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, tuple[int, str | None]] = {}


def register_job(name: str, interval: int = 300, config_key: str | None = None):
    """Decorator to register a job function.

    Usage:
        @register_job("approval_escalation", interval=300,
                      config_key="ESCALATION_INTERVAL_SECONDS")
        def run_approval_escalation(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        _job_intervals[name] = (interval, config_key)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context; start it when enabled."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED"):
            cls.start()

    @classmethod
    def job_interval(cls, job_name: str) -> int:
        interval, config_key = _job_intervals.get(job_name, (300, None))
        if cls._app is not None and config_key:
            return int(cls._app.config.get(config_key, interval))
        return interval

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip()[:500],
                        interval_seconds=cls.job_interval(name),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record is None:
                    job_record = ScheduledJob(job_name=job_name,
                                              interval_seconds=cls.job_interval(job_name))
                    db.session.add(job_record)
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def _is_enabled(cls, job_name: str) -> bool:
        try:
            with cls._app.app_context():
                record = ScheduledJob.query.filter_by(job_name=job_name).first()
                return record.is_enabled if record else True
        except Exception:
            logger.exception("Could not read job record for %s; running anyway", job_name)
            return True

    @classmethod
    def run_pending(cls, next_runs: dict[str, float], now: float) -> list[str]:
        """Run every enabled job whose next run time has passed."""
        ran = []
        for name in list(_job_registry):
            if now < next_runs.get(name, 0.0):
                continue
            next_runs[name] = now + cls.job_interval(name)
            if not cls._is_enabled(name):
                continue
            cls.run_job(name)
            ran.append(name)
        return ran

    @classmethod
    def _loop(cls, stop_event: threading.Event) -> None:
        next_runs: dict[str, float] = {}
        logger.info("Scheduler loop started")
        while not stop_event.is_set():
            try:
                cls.run_pending(next_runs, time.monotonic())
            except Exception:
                logger.exception("Scheduler tick failed")
            stop_event.wait(TICK_SECONDS)
        logger.info("Scheduler loop stopped")

    @classmethod
    def start(cls) -> None:
        """Start the daemon thread (no-op when already running)."""
        if cls._thread is not None and cls._thread.is_alive():
            return
        if not cls._app:
            raise RuntimeError("SchedulerService.init_app() must be called first")
        try:
            cls.ensure_jobs_registered()
        except Exception:
            logger.exception("Could not create scheduled job records")
        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(cls._stop_event,),
            name="approval-scheduler", daemon=True,
        )
        cls._thread.start()

    @classmethod
    def stop(cls, timeout: float = 10.0) -> None:
        if cls._stop_event is not None:
            cls._stop_event.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._thread = None
        cls._stop_event = None

    @classmethod
    def is_running(cls) -> bool:
        return cls._thread is not None and cls._thread.is_alive()

    # ── Job records ──────────────────────────────────────────────────────

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "interval_seconds": cls.job_interval(name),
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        if job_name not in _job_registry:
            return None
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            job_record = ScheduledJob(job_name=job_name, interval_seconds=cls.job_interval(job_name))
            db.session.add(job_record)
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()
