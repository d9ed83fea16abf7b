"""
Electronic Approval Engine
Scheduler Service.

Background work (currently the deferred auto-approval runner) is written as
plain functions registered by name.  Nothing in-process fires them on a
timer: an external cron calling ``flask run-auto-approvals`` or the manual
trigger endpoint does.  Each run is recorded on a ScheduledJob row.
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, has_app_context

from eapproval.core.exceptions import NotFoundError
from eapproval.models import db
from eapproval.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


_job_registry: dict[str, tuple[Callable, int]] = {}


def register_job(name: str, interval_seconds: int = 3600):
    """Register ``fn(app)`` under ``name``.

        @register_job("auto_approval_runner", interval_seconds=60)
        def auto_approval_runner(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = (fn, interval_seconds)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return {name: fn for name, (fn, _) in _job_registry.items()}


class SchedulerService:
    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService ready: %s", ", ".join(sorted(_job_registry)) or "no jobs")

    @classmethod
    def _context(cls):
        # inside a request or test the caller's session must be reused
        if has_app_context():
            return nullcontext()
        return cls._app.app_context()

    @staticmethod
    def _record_for(name: str) -> ScheduledJob:
        record = ScheduledJob.query.filter_by(job_name=name).first()
        if record is None:
            fn, interval = _job_registry[name]
            record = ScheduledJob(
                job_name=name,
                description=(fn.__doc__ or name).strip().splitlines()[0],
                interval_seconds=interval,
            )
            db.session.add(record)
            db.session.flush()
        return record

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run one registered job and return its outcome.

        The returned dict always carries ``job_name``, ``status``
        (success | failed | skipped | error), ``duration_ms``, ``result``
        and ``error``.  A failing job is logged and rolled back; the
        exception never escapes.
        """
        outcome = {"job_name": job_name, "status": "error", "duration_ms": 0,
                   "result": None, "error": None}
        if job_name not in _job_registry:
            outcome["error"] = f"Unknown job: {job_name}"
            return outcome
        if cls._app is None:
            outcome["error"] = "Scheduler not initialized"
            return outcome

        fn, _ = _job_registry[job_name]
        with cls._context():
            if cls._record_for(job_name).is_paused:
                db.session.commit()
                logger.info("Job %s is paused; skipped", job_name, extra={"job_name": job_name})
                outcome["status"] = "skipped"
                return outcome

            started = time.monotonic()
            try:
                outcome["result"] = fn(cls._app)
                outcome["status"] = "success"
            except Exception as exc:
                db.session.rollback()
                outcome["status"] = "failed"
                outcome["error"] = str(exc)
                logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
            outcome["duration_ms"] = int((time.monotonic() - started) * 1000)

            result = outcome["result"]
            cls._record_for(job_name).mark_run(
                outcome["status"],
                outcome["duration_ms"],
                summary=result if isinstance(result, dict) else None,
                error=outcome["error"],
            )
            db.session.commit()
        return outcome

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = [cls._record_for(name).to_dict() for name in sorted(_job_registry)]
        db.session.commit()
        return jobs

    @classmethod
    def set_paused(cls, job_name: str, paused: bool) -> dict:
        if job_name not in _job_registry:
            raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
        record = cls._record_for(job_name)
        record.state = "paused" if paused else "active"
        db.session.commit()
        logger.info("Job %s %s", job_name, record.state, extra={"job_name": job_name})
        return record.to_dict()
