"""
Transition event sink.

The approval engine collects one ``TransitionEvent`` per state change while it
works and hands the list to ``dispatch`` only after its transaction commits,
so listeners never observe a transition that was rolled back.

Listeners are registered with a decorator, the same way scheduler jobs are:

    @register_transition_listener
    def notify(event):
        ...

A failing listener is logged and skipped; it never undoes the transition and
never stops the remaining listeners.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from eapproval.models import db
from eapproval.models.audit import write_audit
from eapproval.models.base import utcnow

logger = logging.getLogger(__name__)

ACTION_SUBMIT = "approval.submit"
ACTION_DECISION = "approval.decision"
ACTION_STAGE_ADVANCE = "approval.stage_advance"
ACTION_APPROVE = "approval.approve"
ACTION_REJECT = "approval.reject"
ACTION_CANCEL = "approval.cancel"


@dataclass(frozen=True)
class TransitionEvent:
    instance_id: int
    tenant_id: int
    action: str
    from_status: str | None
    to_status: str
    stage_index: int | None = None
    actor_id: int | None = None
    details: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["occurred_at"] = self.occurred_at.isoformat()
        return d


# ── Listener registry ────────────────────────────────────────────────────────

_listeners: list[Callable[[TransitionEvent], None]] = []


def register_transition_listener(fn: Callable[[TransitionEvent], None]):
    """Register ``fn`` to receive every committed transition."""
    if fn not in _listeners:
        _listeners.append(fn)
    return fn


def unregister_transition_listener(fn) -> None:
    if fn in _listeners:
        _listeners.remove(fn)


def get_listeners() -> list[Callable[[TransitionEvent], None]]:
    return list(_listeners)


def dispatch(events: list[TransitionEvent]) -> int:
    """Deliver committed events to every listener.

    Returns:
        Number of listener failures (logged, not raised).
    """
    failures = 0
    for event in events:
        for listener in list(_listeners):
            try:
                listener(event)
            except Exception:
                failures += 1
                logger.exception(
                    "Transition listener %s failed for %s",
                    getattr(listener, "__name__", listener), event.action,
                    extra={"instance_id": event.instance_id, "tenant_id": event.tenant_id},
                )
    return failures


# ── Built-in listeners ───────────────────────────────────────────────────────


@register_transition_listener
def audit_listener(event: TransitionEvent) -> None:
    """Append the transition to the audit trail in its own transaction."""
    try:
        write_audit(
            entity_type="approval_instance",
            entity_id=event.instance_id,
            action=event.action,
            tenant_id=event.tenant_id,
            actor_user_id=event.actor_id,
            diff={
                "from_status": event.from_status,
                "to_status": event.to_status,
                "stage_index": event.stage_index,
                **event.details,
            },
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


@register_transition_listener
def log_listener(event: TransitionEvent) -> None:
    logger.info(
        "%s: %s -> %s",
        event.action, event.from_status, event.to_status,
        extra={
            "instance_id": event.instance_id,
            "tenant_id": event.tenant_id,
            "stage_index": event.stage_index,
            "from_status": event.from_status,
            "to_status": event.to_status,
            "actor_id": event.actor_id,
        },
    )
