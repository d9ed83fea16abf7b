"""
Approval State Machine.

Drives an ApprovalInstance from submission to a terminal status.

    Instance:  PENDING → APPROVED | REJECTED | CANCELLED        (terminal)
    Stage:     NOT_STARTED → WAITING → SATISFIED | FAILED | SKIPPED
    Slot:      PENDING → APPROVED | REJECTED | SKIPPED          (set once)

Aggregation per stage mode:
    ALL         satisfied when every required slot is APPROVED,
                failed as soon as a required slot is REJECTED
    ANY         satisfied on the first APPROVED, failed when all REJECTED
    SEQUENTIAL  slots act strictly in slot order; first REJECTED fails,
                last APPROVED satisfies

A FAILED APPROVAL stage rejects the request.  A FAILED AGREEMENT stage
rejects it under the BLOCKING policy and is only recorded under ADVISORY.
REFERENCE stages are satisfied at submission and never block.

Concurrency:
    Every operation on an instance runs under an in-process per-instance lock
    and touches the instance row, whose ``version`` column is SQLAlchemy's
    version counter.  A writer holding a stale version gets
    ``VersionConflictError`` after rollback.  Transition events are
    dispatched only after the commit succeeds.

Every public mutation validates before it writes and rolls the session back
on any failure, so a rejected call leaves no partial state behind.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from eapproval.core.exceptions import (
    AlreadyDecidedError,
    ApproverNotAuthorizedError,
    EngineError,
    InstanceNotPendingError,
    InvariantError,
    NotFoundError,
    NotRequesterError,
    OutOfSequenceError,
    PayloadValidationError,
    StageNotCurrentError,
    ValidationError,
    VersionConflictError,
)
from eapproval.models import db
from eapproval.models.auto_approval import (
    SCHEDULE_APPLIED,
    SCHEDULE_CANCELLED,
    SCHEDULE_PENDING,
    ScheduledAutoApproval,
)
from eapproval.models.instance import (
    DECISION_APPROVED,
    DECISION_PENDING,
    DECISION_REJECTED,
    DECISION_SKIPPED,
    HUMAN_DECISIONS,
    INSTANCE_STATUSES,
    SOURCE_HUMAN,
    SOURCE_SYSTEM,
    STAGE_FAILED,
    STAGE_NOT_STARTED,
    STAGE_SATISFIED,
    STAGE_SKIPPED,
    STAGE_WAITING,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_REJECTED,
    ApprovalInstance,
    ApprovalInstanceStage,
    ApprovalSlot,
    auto_rule_source,
    validate_instance_transition,
    validate_stage_transition,
)
from eapproval.models.route_template import (
    MODE_ALL,
    MODE_ANY,
    MODE_SEQUENTIAL,
    POLICY_BLOCKING,
    STAGE_AGREEMENT,
    STAGE_APPROVAL,
    STAGE_REFERENCE,
)
from eapproval.services import auto_approval, form_schema, route_resolver
from eapproval.services.category_service import get_category_row
from eapproval.services.org_directory import OrgDirectory
from eapproval.services.transition_events import (
    ACTION_APPROVE,
    ACTION_CANCEL,
    ACTION_DECISION,
    ACTION_REJECT,
    ACTION_STAGE_ADVANCE,
    ACTION_SUBMIT,
    TransitionEvent,
    dispatch,
)

logger = logging.getLogger(__name__)

_DECISION_ALIASES = {
    "APPROVE": DECISION_APPROVED,
    "APPROVED": DECISION_APPROVED,
    "REJECT": DECISION_REJECTED,
    "REJECTED": DECISION_REJECTED,
}

STATISTICS_PERIODS = {"week": 7, "month": 30, "quarter": 91, "year": 365}


# ═════════════════════════════════════════════════════════════════════════════
# Per-instance locking
# ═════════════════════════════════════════════════════════════════════════════

_instance_locks: dict[int, threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def instance_lock(instance_id: int):
    """Serialise operations on one instance within this process."""
    with _locks_guard:
        lock = _instance_locks.setdefault(instance_id, threading.Lock())
    with lock:
        yield


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt is not None and dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _load_instance(instance_id: int, tenant_id: int | None = None) -> ApprovalInstance:
    instance = db.session.get(ApprovalInstance, instance_id)
    if instance is None or (tenant_id is not None and instance.tenant_id != tenant_id):
        raise NotFoundError(resource="ApprovalInstance", resource_id=instance_id, tenant_id=tenant_id)
    return instance


def _event(instance, action, from_status, to_status, *, stage_index=None, actor_id=None, **details):
    return TransitionEvent(
        instance_id=instance.id,
        tenant_id=instance.tenant_id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        stage_index=stage_index,
        actor_id=actor_id,
        details=details,
    )


def _set_stage_status(stage: ApprovalInstanceStage, new_status: str, now: datetime) -> None:
    if not validate_stage_transition(stage.status, new_status):
        raise InvariantError(
            f"Stage {stage.order_index}: invalid transition {stage.status} → {new_status}"
        )
    stage.status = new_status
    if new_status == STAGE_WAITING:
        stage.activated_at = now
    else:
        stage.completed_at = now


def _skip_pending_slots(stage: ApprovalInstanceStage, now: datetime) -> None:
    for slot in stage.slots:
        if slot.decision == DECISION_PENDING:
            slot.decision = DECISION_SKIPPED
            slot.decision_source = SOURCE_SYSTEM
            slot.decided_at = now


def _next_sequential_slot(stage: ApprovalInstanceStage):
    for slot in sorted(stage.slots, key=lambda s: s.slot_order):
        if slot.decision == DECISION_PENDING:
            return slot
    return None


def _stage_outcome(stage: ApprovalInstanceStage) -> str | None:
    """Aggregate slot decisions; None while the stage is still open."""
    decisions = [s.decision for s in stage.slots]

    if stage.mode == MODE_ANY:
        if DECISION_APPROVED in decisions:
            return STAGE_SATISFIED
        if decisions and all(d == DECISION_REJECTED for d in decisions):
            return STAGE_FAILED
        return None

    if stage.mode == MODE_SEQUENTIAL:
        for slot in sorted(stage.slots, key=lambda s: s.slot_order):
            if slot.decision == DECISION_REJECTED:
                return STAGE_FAILED
            if slot.decision == DECISION_PENDING:
                return None
        return STAGE_SATISFIED

    # MODE_ALL
    required = [s.decision for s in stage.slots if s.is_required]
    if DECISION_REJECTED in required:
        return STAGE_FAILED
    if all(d == DECISION_APPROVED for d in required):
        return STAGE_SATISFIED
    return None


def _failure_blocks(instance: ApprovalInstance, stage: ApprovalInstanceStage) -> bool:
    if stage.stage_type == STAGE_APPROVAL:
        return True
    return stage.stage_type == STAGE_AGREEMENT and instance.agreement_policy == POLICY_BLOCKING


def _next_actionable(instance: ApprovalInstance, after_index: int):
    for stage in instance.stages:
        if (stage.order_index > after_index
                and stage.stage_type != STAGE_REFERENCE
                and stage.status == STAGE_NOT_STARTED):
            return stage
    return None


def _cancel_scheduled(now: datetime, reason: str, *, instance_id=None, slot_id=None) -> int:
    q = ScheduledAutoApproval.query.filter_by(status=SCHEDULE_PENDING)
    if slot_id is not None:
        q = q.filter_by(slot_id=slot_id)
    if instance_id is not None:
        q = q.filter_by(instance_id=instance_id)
    return q.update(
        {"status": SCHEDULE_CANCELLED, "resolved_at": now, "outcome": reason},
        synchronize_session="fetch",
    )


def _record_decision(instance, slot, decision, source, actor_id, comment, now, events) -> None:
    slot.decision = decision
    slot.decision_source = source
    slot.comment = comment
    slot.decided_at = now
    cancelled = _cancel_scheduled(now, f"superseded by {source} decision", slot_id=slot.id)
    instance.last_transition_at = now
    events.append(_event(
        instance, ACTION_DECISION, STATUS_PENDING, instance.status,
        stage_index=slot.stage.order_index, actor_id=actor_id,
        approver_id=slot.approver_id, decision=decision, source=source,
        cancelled_auto_approvals=cancelled,
    ))


def _conclude(instance, status, now, actor_id, events, reason=None) -> None:
    from_status = instance.status
    if not validate_instance_transition(from_status, status):
        raise InstanceNotPendingError(instance.id, from_status)

    instance.status = status
    instance.completed_at = now
    instance.last_transition_at = now
    for stage in instance.stages:
        if stage.status in (STAGE_NOT_STARTED, STAGE_WAITING):
            _set_stage_status(stage, STAGE_SKIPPED, now)
            _skip_pending_slots(stage, now)
    _cancel_scheduled(now, f"instance {status}", instance_id=instance.id)

    action = {
        STATUS_APPROVED: ACTION_APPROVE,
        STATUS_REJECTED: ACTION_REJECT,
        STATUS_CANCELLED: ACTION_CANCEL,
    }[status]
    details = {"reason": reason} if reason else {}
    events.append(_event(
        instance, action, from_status, status,
        stage_index=instance.current_stage_index, actor_id=actor_id, **details,
    ))


def _settle(instance: ApprovalInstance, now: datetime, actor_id, events) -> None:
    """Close finished stages and advance until one is open or the instance ends.

    Evaluation is state-based, so decisions recorded ahead of time on later
    stages (auto-approvals) settle as soon as their stage is reached.
    """
    while instance.status == STATUS_PENDING:
        stage = instance.current_stage
        outcome = _stage_outcome(stage)
        if outcome is None:
            return

        _set_stage_status(stage, outcome, now)
        _skip_pending_slots(stage, now)

        if outcome == STAGE_FAILED and _failure_blocks(instance, stage):
            _conclude(instance, STATUS_REJECTED, now, actor_id, events)
            return

        nxt = _next_actionable(instance, stage.order_index)
        if nxt is None:
            _conclude(instance, STATUS_APPROVED, now, actor_id, events)
            return

        _set_stage_status(nxt, STAGE_WAITING, now)
        instance.current_stage_index = nxt.order_index
        instance.last_transition_at = now
        events.append(_event(
            instance, ACTION_STAGE_ADVANCE, STATUS_PENDING, STATUS_PENDING,
            stage_index=nxt.order_index, actor_id=actor_id,
            completed_stage=stage.order_index, stage_outcome=outcome,
        ))


def _authorize(instance: ApprovalInstance, approver_id: int, stage_index: int | None) -> ApprovalSlot:
    """Find the slot ``approver_id`` may decide now, or raise why not."""
    if instance.status != STATUS_PENDING:
        raise InstanceNotPendingError(instance.id, instance.status)

    current_index = instance.current_stage_index
    if stage_index is not None and stage_index != current_index:
        raise StageNotCurrentError(stage_index, current_index)

    stage = instance.current_stage
    slot = stage.slot_for(approver_id)
    if slot is None:
        later = any(
            s.order_index > current_index
            and s.stage_type != STAGE_REFERENCE
            and s.slot_for(approver_id) is not None
            for s in instance.stages
        )
        if later:
            raise OutOfSequenceError(
                f"Approver {approver_id} acts in a later stage of instance {instance.id}",
                {"current_stage_index": current_index},
            )
        raise ApproverNotAuthorizedError(approver_id, instance.id)

    if slot.is_decided:
        raise AlreadyDecidedError(approver_id, slot.decision)

    if stage.mode == MODE_SEQUENTIAL:
        expected = _next_sequential_slot(stage)
        if expected is not slot:
            raise OutOfSequenceError(
                f"Approver {approver_id} must wait for approver {expected.approver_id}",
                {"next_approver_id": expected.approver_id},
            )
    return slot


def _normalize_decision(decision) -> str:
    value = _DECISION_ALIASES.get(str(decision or "").strip().upper())
    if value not in HUMAN_DECISIONS:
        raise ValidationError(
            "decision must be APPROVED or REJECTED",
            {"decision": "invalid"},
        )
    return value


def _status_dict(instance: ApprovalInstance) -> dict:
    stage = instance.current_stage
    return {
        "instance_id": instance.id,
        "status": instance.status,
        "current_stage_index": instance.current_stage_index,
        "current_stage_status": stage.status if stage else None,
        "version": instance.version,
        "is_terminal": instance.is_terminal,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════


def _instantiate(tenant_id, requester_id, category, payload, title, route, now) -> ApprovalInstance:
    instance = ApprovalInstance(
        tenant_id=tenant_id,
        category_id=category.id,
        category_code=category.code,
        template_id=route.template_id,
        route_source=route.source,
        requester_id=requester_id,
        title=title,
        payload=payload,
        status=STATUS_PENDING,
        agreement_policy=route.agreement_policy,
        submitted_at=now,
        last_transition_at=now,
    )
    for snap in route.stages:
        stage = ApprovalInstanceStage(
            order_index=snap.order_index,
            name=snap.name,
            stage_type=snap.stage_type,
            mode=snap.mode,
            status=STAGE_NOT_STARTED,
        )
        stage.slots = [
            ApprovalSlot(
                approver_id=s.approver_id,
                is_required=s.is_required,
                slot_order=s.slot_order,
                decision=DECISION_PENDING,
            )
            for s in snap.slots
        ]
        instance.stages.append(stage)
    return instance


def _start(instance: ApprovalInstance, now: datetime) -> None:
    for stage in instance.stages:
        if stage.stage_type == STAGE_REFERENCE:
            _set_stage_status(stage, STAGE_SATISFIED, now)
            _skip_pending_slots(stage, now)

    first = _next_actionable(instance, -1)
    if first is None:
        raise InvariantError("route has no AGREEMENT or APPROVAL stage")
    _set_stage_status(first, STAGE_WAITING, now)
    instance.current_stage_index = first.order_index


def _apply_auto_approval(instance, directory, now, events) -> None:
    rules = auto_approval.active_rules_for(instance.tenant_id, instance.category_id)
    if not rules:
        return
    requester = directory.get_member(instance.requester_id)
    outcome = auto_approval.evaluate(instance, rules, requester)
    if not outcome.matched:
        return

    slots = auto_approval.target_slots(instance, outcome)
    if not slots:
        return
    if outcome.delay > timedelta(0):
        auto_approval.schedule(instance, outcome, slots, now)
        return

    source = auto_rule_source(outcome.rule_id)
    for slot in slots:
        _record_decision(instance, slot, DECISION_APPROVED, source, None, None, now, events)
    logger.info("Auto-approved %d slot(s) on instance %s via rule %s",
                len(slots), instance.id, outcome.rule_id,
                extra={"instance_id": instance.id, "rule_id": outcome.rule_id})
    _settle(instance, now, None, events)


def submit_request(
    tenant_id: int,
    requester_id: int,
    category_id: int,
    payload: dict | None,
    title: str | None = None,
    explicit_route: dict | None = None,
    *,
    directory=None,
) -> dict:
    """Validate, route and start a new approval request.

    Args:
        tenant_id: Tenant scope.
        requester_id: Submitting user.
        category_id: ApprovalCategory PK.
        payload: Field values for the category's schema.
        title: Optional display title.
        explicit_route: ``{"template_id": id}`` or ``{"stages": [...]}``;
            None uses the category / global defaults, then the hierarchy.
        directory: Organisation directory override.

    Returns:
        Serialized instance, including its stage snapshot.

    Raises:
        NotFoundError, ValidationError, PayloadValidationError,
        ResolutionError subtypes, InvariantError
    """
    events: list[TransitionEvent] = []
    try:
        if category_id is None:
            raise ValidationError("category_id is required", {"category_id": "required"})
        category = get_category_row(tenant_id, category_id)
        if not category.is_active:
            raise ValidationError(f"category {category.code} is inactive", {"category_id": "inactive"})

        clean, errors = form_schema.validate_payload(category.field_schema or [], payload)
        if errors:
            raise PayloadValidationError(errors)

        explicit_route = explicit_route or {}
        if not isinstance(explicit_route, dict):
            raise ValidationError("explicit_route must be an object", {"explicit_route": "invalid"})

        directory = directory or OrgDirectory(tenant_id)
        route = route_resolver.resolve(
            tenant_id,
            requester_id,
            category,
            explicit_template_id=explicit_route.get("template_id"),
            manual_stages=explicit_route.get("stages"),
            directory=directory,
        )

        now = _now()
        instance = _instantiate(tenant_id, requester_id, category, clean, title, route, now)
        _start(instance, now)
        db.session.add(instance)
        db.session.flush()
        events.append(_event(
            instance, ACTION_SUBMIT, None, STATUS_PENDING,
            stage_index=instance.current_stage_index, actor_id=requester_id,
            route_source=route.source, template_id=route.template_id,
        ))

        _apply_auto_approval(instance, directory, now, events)
        db.session.commit()
    except (EngineError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("Approval request submitted: category=%s requester=%s status=%s",
                instance.category_code, requester_id, instance.status,
                extra={"instance_id": instance.id, "tenant_id": tenant_id})
    dispatch(events)
    return instance.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


def decide(
    instance_id: int,
    approver_id: int,
    decision: str,
    comment: str | None = None,
    *,
    stage_index: int | None = None,
    expected_version: int | None = None,
    tenant_id: int | None = None,
) -> dict:
    """Record a human decision and advance the workflow.

    Args:
        instance_id: ApprovalInstance PK.
        approver_id: Acting user.
        decision: "APPROVED"/"APPROVE" or "REJECTED"/"REJECT".
        comment: Optional free text kept on the slot.
        stage_index: Stage the caller believes is active; checked if given.
        expected_version: Instance version the caller last read; checked if
            given.
        tenant_id: Optional tenant scope.

    Returns:
        {"instance_id", "status", "current_stage_index",
         "current_stage_status", "version", "is_terminal"}

    Raises:
        InstanceNotPendingError, StageNotCurrentError, OutOfSequenceError,
        ApproverNotAuthorizedError, AlreadyDecidedError, VersionConflictError
    """
    decision = _normalize_decision(decision)
    events: list[TransitionEvent] = []

    with instance_lock(instance_id):
        try:
            instance = _load_instance(instance_id, tenant_id)
            if expected_version is not None and expected_version != instance.version:
                raise VersionConflictError(instance_id, expected_version, instance.version)

            slot = _authorize(instance, approver_id, stage_index)
            now = _now()
            _record_decision(instance, slot, decision, SOURCE_HUMAN, approver_id, comment, now, events)
            _settle(instance, now, approver_id, events)
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            logger.warning("Version conflict deciding instance %s", instance_id,
                           extra={"instance_id": instance_id, "actor_id": approver_id})
            raise VersionConflictError(instance_id) from None
        except (EngineError, SQLAlchemyError):
            db.session.rollback()
            raise

    logger.info("Decision %s by %s recorded; instance now %s",
                decision, approver_id, instance.status,
                extra={"instance_id": instance_id, "actor_id": approver_id})
    dispatch(events)
    return _status_dict(instance)


def apply_scheduled_auto_approval(action_id: int, now: datetime | None = None) -> str | None:
    """Apply one deferred auto-approval through the versioned path.

    The action is CANCELLED when its instance is no longer PENDING or its slot
    was already decided (a human got there first).

    Returns:
        The resulting action status, or None when the action does not exist.

    Raises:
        VersionConflictError: another writer committed first; the action
            stays PENDING.
    """
    action = db.session.get(ScheduledAutoApproval, action_id)
    if action is None:
        return None
    if action.status != SCHEDULE_PENDING:
        return action.status

    instance_id = action.instance_id
    events: list[TransitionEvent] = []
    with instance_lock(instance_id):
        try:
            now = now or _now()
            instance = _load_instance(instance_id)
            slot = db.session.get(ApprovalSlot, action.slot_id)

            if instance.status != STATUS_PENDING:
                action.status, action.outcome = SCHEDULE_CANCELLED, f"instance {instance.status}"
            elif slot is None or slot.is_decided:
                action.status, action.outcome = SCHEDULE_CANCELLED, "slot already decided"
            else:
                action.status, action.outcome = SCHEDULE_APPLIED, "auto-approved"
                _record_decision(instance, slot, DECISION_APPROVED, auto_rule_source(action.rule_id),
                                 None, None, now, events)
                _settle(instance, now, None, events)
            action.resolved_at = now
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            raise VersionConflictError(instance_id) from None
        except (EngineError, SQLAlchemyError):
            db.session.rollback()
            raise

    dispatch(events)
    return action.status


# ═════════════════════════════════════════════════════════════════════════════
# Cancellation
# ═════════════════════════════════════════════════════════════════════════════


def cancel(
    instance_id: int,
    requester_id: int,
    *,
    tenant_id: int | None = None,
    reason: str | None = None,
) -> dict:
    """Withdraw a PENDING request.  Only its requester may do so.

    Open stages and slots become SKIPPED and pending scheduled
    auto-approvals are cancelled.

    Raises:
        InstanceNotPendingError, NotRequesterError
    """
    events: list[TransitionEvent] = []
    with instance_lock(instance_id):
        try:
            instance = _load_instance(instance_id, tenant_id)
            if instance.status != STATUS_PENDING:
                raise InstanceNotPendingError(instance_id, instance.status)
            if requester_id != instance.requester_id:
                raise NotRequesterError(requester_id, instance_id)

            instance.cancelled_by = requester_id
            _conclude(instance, STATUS_CANCELLED, _now(), requester_id, events, reason)
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            raise VersionConflictError(instance_id) from None
        except (EngineError, SQLAlchemyError):
            db.session.rollback()
            raise

    dispatch(events)
    return instance.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_instance(instance_id: int, tenant_id: int | None = None) -> dict:
    return _load_instance(instance_id, tenant_id).to_dict()


def get_pending_for(approver_id: int, tenant_id: int | None = None) -> list[dict]:
    """Instances waiting on ``approver_id`` right now.

    Only the current stage counts; in a SEQUENTIAL stage only the approver
    whose turn it is sees the request.
    """
    q = (
        ApprovalInstance.query
        .join(ApprovalInstanceStage, db.and_(
            ApprovalInstanceStage.instance_id == ApprovalInstance.id,
            ApprovalInstanceStage.order_index == ApprovalInstance.current_stage_index,
        ))
        .join(ApprovalSlot, ApprovalSlot.stage_id == ApprovalInstanceStage.id)
        .filter(
            ApprovalInstance.status == STATUS_PENDING,
            ApprovalSlot.approver_id == approver_id,
            ApprovalSlot.decision == DECISION_PENDING,
        )
    )
    if tenant_id is not None:
        q = q.filter(ApprovalInstance.tenant_id == tenant_id)

    pending = []
    for instance in q.order_by(ApprovalInstance.submitted_at, ApprovalInstance.id).all():
        stage = instance.current_stage
        if stage.mode == MODE_SEQUENTIAL:
            nxt = _next_sequential_slot(stage)
            if nxt is None or nxt.approver_id != approver_id:
                continue
        pending.append(instance.to_summary())
    return pending


def list_requests_for(requester_id: int, tenant_id: int | None = None, status: str | None = None) -> list[dict]:
    """Requests filed by ``requester_id``, newest first."""
    q = ApprovalInstance.query.filter(ApprovalInstance.requester_id == requester_id)
    if tenant_id is not None:
        q = q.filter(ApprovalInstance.tenant_id == tenant_id)
    if status:
        status = status.upper()
        if status not in INSTANCE_STATUSES:
            raise ValidationError(f"unknown status {status!r}", {"status": "invalid"})
        q = q.filter(ApprovalInstance.status == status)
    instances = q.order_by(ApprovalInstance.submitted_at.desc(), ApprovalInstance.id.desc()).all()
    return [i.to_summary() for i in instances]


def list_references_for(user_id: int, tenant_id: int | None = None) -> list[dict]:
    """Requests on which ``user_id`` is a REFERENCE (informational) recipient."""
    q = (
        ApprovalInstance.query
        .join(ApprovalInstanceStage, ApprovalInstanceStage.instance_id == ApprovalInstance.id)
        .join(ApprovalSlot, ApprovalSlot.stage_id == ApprovalInstanceStage.id)
        .filter(
            ApprovalInstanceStage.stage_type == STAGE_REFERENCE,
            ApprovalSlot.approver_id == user_id,
        )
    )
    if tenant_id is not None:
        q = q.filter(ApprovalInstance.tenant_id == tenant_id)
    instances = q.distinct().order_by(ApprovalInstance.submitted_at.desc(), ApprovalInstance.id.desc()).all()
    return [i.to_summary() for i in instances]


def _percent(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 1) if whole else 0.0


def _status_counts(instances) -> dict:
    counts = {status: 0 for status in INSTANCE_STATUSES}
    for inst in instances:
        counts[inst.status] = counts.get(inst.status, 0) + 1
    return counts


def get_statistics(
    tenant_id: int,
    period: str = "month",
    category_id: int | None = None,
    requester_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    """Counts and percentages per status for requests submitted in ``period``.

    Periods are rolling windows ending now: week (7 days), month (30),
    quarter (91), year (365).
    """
    period = (period or "month").lower()
    if period not in STATISTICS_PERIODS:
        raise ValidationError(
            f"period must be one of {', '.join(STATISTICS_PERIODS)}",
            {"period": "invalid"},
        )
    now = now or _now()
    since = now - timedelta(days=STATISTICS_PERIODS[period])

    q = ApprovalInstance.query_for_tenant(tenant_id).filter(ApprovalInstance.submitted_at >= since)
    if category_id is not None:
        q = q.filter(ApprovalInstance.category_id == category_id)
    if requester_id is not None:
        q = q.filter(ApprovalInstance.requester_id == requester_id)
    instances = q.all()

    total = len(instances)
    counts = _status_counts(instances)
    decided = counts[STATUS_APPROVED] + counts[STATUS_REJECTED]

    durations = [
        (_aware(i.completed_at) - _aware(i.submitted_at)).total_seconds() / 3600
        for i in instances
        if i.status in (STATUS_APPROVED, STATUS_REJECTED) and i.completed_at and i.submitted_at
    ]

    by_category: dict[int, list] = {}
    for inst in instances:
        by_category.setdefault(inst.category_id, []).append(inst)
    breakdown = []
    for cid, rows in sorted(by_category.items()):
        c = _status_counts(rows)
        breakdown.append({
            "category_id": cid,
            "category_code": rows[0].category_code,
            "total": len(rows),
            "approved": c[STATUS_APPROVED],
            "rejected": c[STATUS_REJECTED],
            "pending": c[STATUS_PENDING],
            "cancelled": c[STATUS_CANCELLED],
            "approval_rate": _percent(c[STATUS_APPROVED], c[STATUS_APPROVED] + c[STATUS_REJECTED]),
        })

    return {
        "period": period,
        "since": since.isoformat(),
        "total": total,
        "counts": counts,
        "percentages": {status: _percent(n, total) for status, n in counts.items()},
        "approval_rate": _percent(counts[STATUS_APPROVED], decided),
        "avg_processing_hours": round(sum(durations) / len(durations), 2) if durations else None,
        "by_category": breakdown,
    }
