"""
Auto-Approval Rule Engine.

Rules let a category skip human approvers when a request matches:

    target users / departments   both empty = every requester, otherwise the
                                 requester must be listed in either set
    conditions                   all must hold (payload amount, requester
                                 level or department, payload field value)
    bypass approvers             slots to auto-approve; empty = every slot of
                                 the first actionable stage
    delay                        0 = applied at submission, otherwise deferred
                                 to the ``auto_approval_runner`` job

``evaluate`` is pure: it looks at the instance, the candidate rules and the
requester metadata and returns an ``AutoApprovalOutcome``.  The first active
rule in creation order that matches wins.

Deferred actions are ``ScheduledAutoApproval`` rows.  The runner applies them
through the approval engine's versioned path; a human decision on the same
slot cancels them, and whichever write commits first wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from flask import current_app

from eapproval.core.exceptions import NotFoundError, ValidationError
from eapproval.models import db
from eapproval.models.auto_approval import (
    CONDITION_DEPARTMENT_EQUALS,
    CONDITION_FIELD_EQUALS,
    CONDITION_MAX_AMOUNT,
    CONDITION_MAX_REQUESTER_LEVEL,
    CONDITION_MIN_AMOUNT,
    CONDITION_MIN_REQUESTER_LEVEL,
    CONDITION_TYPES,
    DEFAULT_AMOUNT_FIELD,
    SCHEDULE_PENDING,
    AutoApprovalRule,
    ScheduledAutoApproval,
)
from eapproval.models.category import ApprovalCategory
from eapproval.models.instance import DECISION_PENDING
from eapproval.models.route_template import STAGE_REFERENCE
from eapproval.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoApprovalOutcome:
    matched: bool
    rule_id: int | None = None
    bypass_approver_ids: frozenset = field(default_factory=frozenset)
    delay: timedelta = timedelta(0)


NO_MATCH = AutoApprovalOutcome(matched=False)


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation (pure)
# ═════════════════════════════════════════════════════════════════════════════


def _number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _targets_match(rule, requester_id: int, department_id) -> bool:
    users = rule.target_user_ids or []
    departments = rule.target_department_ids or []
    if not users and not departments:
        return True
    if requester_id in users:
        return True
    return department_id is not None and department_id in departments


def _condition_holds(condition: dict, payload: dict, requester) -> bool:
    kind = condition.get("type")
    value = condition.get("value")

    if kind in (CONDITION_MAX_AMOUNT, CONDITION_MIN_AMOUNT):
        amount = _number(payload.get(condition.get("field") or DEFAULT_AMOUNT_FIELD))
        if amount is None:
            return False
        return amount <= value if kind == CONDITION_MAX_AMOUNT else amount >= value

    if kind in (CONDITION_MIN_REQUESTER_LEVEL, CONDITION_MAX_REQUESTER_LEVEL):
        if requester is None:
            return False
        if kind == CONDITION_MIN_REQUESTER_LEVEL:
            return requester.level >= value
        return requester.level <= value

    if kind == CONDITION_DEPARTMENT_EQUALS:
        return requester is not None and requester.department_id == value

    if kind == CONDITION_FIELD_EQUALS:
        return payload.get(condition.get("field")) == value

    return False


def rule_matches(rule, instance, requester) -> bool:
    if not rule.is_active or rule.category_id != instance.category_id:
        return False
    department_id = requester.department_id if requester is not None else None
    if not _targets_match(rule, instance.requester_id, department_id):
        return False
    payload = instance.payload or {}
    return all(_condition_holds(c, payload, requester) for c in (rule.conditions or []))


def evaluate(instance, rules, requester) -> AutoApprovalOutcome:
    """Return the outcome of the first matching rule (by creation order).

    Args:
        instance: Anything exposing ``category_id``, ``requester_id`` and
                  ``payload`` (an ApprovalInstance, usually not yet committed).
        rules: Candidate AutoApprovalRule rows in any order.
        requester: ``MemberInfo`` of the requester, or None when unknown.
    """
    # ids are assigned in creation order; unsaved rules keep their given order
    ordered = sorted(rules, key=lambda r: (r.id is None, r.id or 0))
    for rule in ordered:
        if rule_matches(rule, instance, requester):
            return AutoApprovalOutcome(
                matched=True,
                rule_id=rule.id,
                bypass_approver_ids=frozenset(rule.bypass_approver_ids or []),
                delay=rule.delay,
            )
    return NO_MATCH


def active_rules_for(tenant_id: int, category_id: int) -> list[AutoApprovalRule]:
    return (
        AutoApprovalRule.query_for_tenant(tenant_id)
        .filter_by(category_id=category_id, is_active=True)
        .order_by(AutoApprovalRule.id)
        .all()
    )


def target_slots(instance, outcome: AutoApprovalOutcome) -> list:
    """Pending slots the outcome applies to.

    With a bypass set: every pending slot held by a bypass approver in any
    actionable stage.  Without one: every pending slot of the current stage.
    """
    if not outcome.matched:
        return []
    if outcome.bypass_approver_ids:
        return [
            slot
            for stage in instance.stages
            if stage.stage_type != STAGE_REFERENCE and not stage.is_terminal
            for slot in stage.slots
            if slot.decision == DECISION_PENDING and slot.approver_id in outcome.bypass_approver_ids
        ]
    stage = instance.current_stage
    if stage is None:
        return []
    return [slot for slot in stage.slots if slot.decision == DECISION_PENDING]


def schedule(instance, outcome: AutoApprovalOutcome, slots, now: datetime) -> list[ScheduledAutoApproval]:
    """Persist deferred actions for ``slots`` (flush only)."""
    due_at = now + outcome.delay
    actions = [
        ScheduledAutoApproval(
            tenant_id=instance.tenant_id,
            instance_id=instance.id,
            slot_id=slot.id,
            rule_id=outcome.rule_id,
            due_at=due_at,
            status=SCHEDULE_PENDING,
        )
        for slot in slots
    ]
    db.session.add_all(actions)
    db.session.flush()
    logger.info("Scheduled %d auto-approval(s) for instance %s due %s (rule %s)",
                len(actions), instance.id, due_at.isoformat(), outcome.rule_id,
                extra={"instance_id": instance.id, "rule_id": outcome.rule_id})
    return actions


# ═════════════════════════════════════════════════════════════════════════════
# Rule CRUD
# ═════════════════════════════════════════════════════════════════════════════


def _int_list(data: dict, key: str) -> list[int]:
    raw = data.get(key) or []
    if not isinstance(raw, list) or not all(isinstance(v, int) and not isinstance(v, bool) for v in raw):
        raise ValidationError(f"{key} must be a list of integer ids", {key: "invalid"})
    return list(dict.fromkeys(raw))


def _validate_conditions(raw) -> list[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("conditions must be a list", {"conditions": "invalid"})
    conditions = []
    for i, cond in enumerate(raw):
        where = f"conditions[{i}]"
        if not isinstance(cond, dict) or cond.get("type") not in CONDITION_TYPES:
            raise ValidationError(
                f"{where}: type must be one of {', '.join(sorted(CONDITION_TYPES))}",
                {where: "invalid type"},
            )
        kind = cond["type"]
        value = cond.get("value")
        if value is None:
            raise ValidationError(f"{where}: value is required", {where: "value required"})
        if kind != CONDITION_FIELD_EQUALS and _number(value) is None:
            raise ValidationError(f"{where}: value must be numeric", {where: "not numeric"})
        if kind == CONDITION_FIELD_EQUALS and not cond.get("field"):
            raise ValidationError(f"{where}: field is required", {where: "field required"})
        clean = {"type": kind, "value": value if kind == CONDITION_FIELD_EQUALS else _number(value)}
        if cond.get("field"):
            clean["field"] = cond["field"]
        conditions.append(clean)
    return conditions


def _validate_delay(value) -> int:
    if value is None:
        return 0
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError("delay_seconds must be a non-negative integer", {"delay_seconds": "invalid"})
    return value


def get_rule_row(tenant_id: int, rule_id: int) -> AutoApprovalRule:
    rule = db.session.get(AutoApprovalRule, rule_id)
    if rule is None or rule.tenant_id != tenant_id:
        raise NotFoundError(resource="AutoApprovalRule", resource_id=rule_id, tenant_id=tenant_id)
    return rule


def get_rule(tenant_id: int, rule_id: int) -> dict:
    return get_rule_row(tenant_id, rule_id).to_dict()


def list_rules(tenant_id: int, category_id: int | None = None) -> list[dict]:
    q = AutoApprovalRule.query_for_tenant(tenant_id)
    if category_id is not None:
        q = q.filter_by(category_id=category_id)
    return [r.to_dict() for r in q.order_by(AutoApprovalRule.id).all()]


def create_rule(tenant_id: int, data: dict) -> dict:
    """Create an auto-approval rule after validating every field."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", {"name": "required"})
    category = db.session.get(ApprovalCategory, data.get("category_id") or 0)
    if category is None or category.tenant_id != tenant_id:
        raise ValidationError("category_id does not exist", {"category_id": "unknown category"})

    rule = AutoApprovalRule(
        tenant_id=tenant_id,
        category_id=category.id,
        name=name,
        target_user_ids=_int_list(data, "target_user_ids"),
        target_department_ids=_int_list(data, "target_department_ids"),
        conditions=_validate_conditions(data.get("conditions")),
        bypass_approver_ids=_int_list(data, "bypass_approver_ids"),
        delay_seconds=_validate_delay(data.get("delay_seconds")),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(rule)
    db.session.commit()
    logger.info("AutoApprovalRule created id=%s category=%s tenant=%s",
                rule.id, category.id, tenant_id, extra={"rule_id": rule.id})
    return rule.to_dict()


def update_rule(tenant_id: int, rule_id: int, data: dict) -> dict:
    rule = get_rule_row(tenant_id, rule_id)
    changes = {}
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", {"name": "required"})
        changes["name"] = name
    for key in ("target_user_ids", "target_department_ids", "bypass_approver_ids"):
        if key in data:
            changes[key] = _int_list(data, key)
    if "conditions" in data:
        changes["conditions"] = _validate_conditions(data["conditions"])
    if "delay_seconds" in data:
        changes["delay_seconds"] = _validate_delay(data["delay_seconds"])
    if "is_active" in data:
        changes["is_active"] = bool(data["is_active"])

    for key, value in changes.items():
        setattr(rule, key, value)
    db.session.commit()
    logger.info("AutoApprovalRule updated id=%s", rule.id, extra={"rule_id": rule.id})
    return rule.to_dict()


def delete_rule(tenant_id: int, rule_id: int) -> None:
    rule = get_rule_row(tenant_id, rule_id)
    db.session.delete(rule)
    db.session.commit()
    logger.info("AutoApprovalRule deleted id=%s", rule_id, extra={"rule_id": rule_id})


# ═════════════════════════════════════════════════════════════════════════════
# Deferred runner
# ═════════════════════════════════════════════════════════════════════════════


def run_due_auto_approvals(now: datetime | None = None, limit: int | None = None) -> dict:
    """Apply every PENDING scheduled auto-approval whose due time has passed.

    Each action is applied in its own transaction through
    ``approval_engine.apply_scheduled_auto_approval``.  Version conflicts
    leave the action PENDING for the next run.
    """
    from eapproval.core.exceptions import VersionConflictError
    from eapproval.services import approval_engine

    now = now or datetime.now(timezone.utc)
    if limit is None:
        limit = current_app.config.get("AUTO_APPROVAL_BATCH_SIZE", 200)

    due_ids = [
        row.id
        for row in ScheduledAutoApproval.query
        .filter(ScheduledAutoApproval.status == SCHEDULE_PENDING,
                ScheduledAutoApproval.due_at <= now)
        .order_by(ScheduledAutoApproval.due_at, ScheduledAutoApproval.id)
        .limit(limit)
        .all()
    ]

    results = {"due": len(due_ids), "applied": 0, "cancelled": 0, "conflicts": 0}
    for action_id in due_ids:
        try:
            status = approval_engine.apply_scheduled_auto_approval(action_id, now=now)
        except VersionConflictError:
            results["conflicts"] += 1
            logger.warning("Scheduled auto-approval %s lost a version race; retrying next run", action_id)
            continue
        if status == "APPLIED":
            results["applied"] += 1
        elif status == "CANCELLED":
            results["cancelled"] += 1

    if due_ids:
        logger.info("Auto-approval runner: %s", results, extra={"job_name": "auto_approval_runner"})
    return results


@register_job("auto_approval_runner", interval_seconds=60)
def auto_approval_runner(app) -> dict:
    """Apply due deferred auto-approvals."""
    return run_due_auto_approvals()
