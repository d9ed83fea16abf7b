"""
Electronic Approval Engine
Auto-approval rule models.

Models:
    - AutoApprovalRule: category-scoped rule that bypasses human approvers
      when its targets and conditions match a submitted request.
    - ScheduledAutoApproval: deferred auto-decision for one slot (rules with a
      non-zero delay).  Processed by the ``auto_approval_runner`` job.
"""

from datetime import timedelta

from eapproval.models import db
from eapproval.models.base import TenantModel, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

CONDITION_MAX_AMOUNT = "max_amount"
CONDITION_MIN_AMOUNT = "min_amount"
CONDITION_MIN_REQUESTER_LEVEL = "min_requester_level"
CONDITION_MAX_REQUESTER_LEVEL = "max_requester_level"
CONDITION_DEPARTMENT_EQUALS = "department_equals"
CONDITION_FIELD_EQUALS = "field_equals"

CONDITION_TYPES = frozenset({
    CONDITION_MAX_AMOUNT,
    CONDITION_MIN_AMOUNT,
    CONDITION_MIN_REQUESTER_LEVEL,
    CONDITION_MAX_REQUESTER_LEVEL,
    CONDITION_DEPARTMENT_EQUALS,
    CONDITION_FIELD_EQUALS,
})

# Conditions that read a payload field; the field defaults to "amount"
PAYLOAD_CONDITIONS = frozenset({CONDITION_MAX_AMOUNT, CONDITION_MIN_AMOUNT, CONDITION_FIELD_EQUALS})
DEFAULT_AMOUNT_FIELD = "amount"

SCHEDULE_PENDING = "PENDING"
SCHEDULE_APPLIED = "APPLIED"
SCHEDULE_CANCELLED = "CANCELLED"


class AutoApprovalRule(TenantModel):
    """Auto-approval rule; first active match by creation order is applied."""

    __tablename__ = "auto_approval_rules"

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_categories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    target_user_ids = db.Column(db.JSON, nullable=False, default=list,
                                comment="Empty = every requester")
    target_department_ids = db.Column(db.JSON, nullable=False, default=list,
                                      comment="Empty = every department")
    conditions = db.Column(db.JSON, nullable=False, default=list,
                           comment="Ordered [{type, value, field?}]")
    bypass_approver_ids = db.Column(db.JSON, nullable=False, default=list,
                                    comment="Empty = whole first actionable stage")
    delay_seconds = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def delay(self) -> timedelta:
        return timedelta(seconds=self.delay_seconds or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "category_id": self.category_id,
            "name": self.name,
            "target_user_ids": list(self.target_user_ids or []),
            "target_department_ids": list(self.target_department_ids or []),
            "conditions": list(self.conditions or []),
            "bypass_approver_ids": list(self.bypass_approver_ids or []),
            "delay_seconds": self.delay_seconds,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AutoApprovalRule {self.id}: {self.name}>"


class ScheduledAutoApproval(TenantModel):
    """Deferred auto-approval for one approver slot."""

    __tablename__ = "scheduled_auto_approvals"
    __table_args__ = (
        db.Index("ix_scheduled_auto_approval_status_due", "status", "due_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_slots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    rule_id = db.Column(db.Integer, nullable=False)
    due_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=SCHEDULE_PENDING)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    outcome = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "slot_id": self.slot_id,
            "rule_id": self.rule_id,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "status": self.status,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "outcome": self.outcome,
        }
