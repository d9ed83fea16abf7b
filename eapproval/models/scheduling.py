"""
Electronic Approval Engine
Background job bookkeeping.

ScheduledJob keeps one row per registered job function: whether it may run,
how often an external trigger is expected to fire it, and the outcome of the
most recent run.
"""

from datetime import UTC, datetime

from eapproval.models import db

JOB_STATES = ("active", "paused")
RUN_OUTCOMES = ("success", "failed", "skipped")


def _utcnow():
    return datetime.now(UTC)


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=3600,
                                 comment="Expected trigger interval")
    state = db.Column(db.String(20), nullable=False, default="active",
                      comment="active | paused")

    last_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_outcome = db.Column(db.String(20), nullable=True)
    last_elapsed_ms = db.Column(db.Integer, nullable=True)
    last_summary = db.Column(db.JSON, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    runs = db.Column(db.Integer, nullable=False, default=0)
    failures = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_paused(self) -> bool:
        return self.state == "paused"

    def mark_run(self, outcome, elapsed_ms, summary=None, error=None):
        """Fold one execution into the counters; ``error`` only sticks on failure."""
        self.last_started_at = _utcnow()
        self.last_outcome = outcome
        self.last_elapsed_ms = elapsed_ms
        self.last_summary = summary
        self.runs = (self.runs or 0) + 1
        if outcome == "failed":
            self.failures = (self.failures or 0) + 1
            self.last_error = error

    def to_dict(self):
        return {
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "state": self.state,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_outcome": self.last_outcome,
            "last_elapsed_ms": self.last_elapsed_ms,
            "last_summary": self.last_summary,
            "last_error": self.last_error,
            "runs": self.runs,
            "failures": self.failures,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} {self.state}>"
