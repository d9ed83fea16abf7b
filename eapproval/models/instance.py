"""
Electronic Approval Engine
Approval instance models and state-machine tables.

Models:
    - ApprovalInstance: one submitted request travelling through its route.
    - ApprovalInstanceStage: stage snapshot copied from the resolved route.
    - ApprovalSlot: approver slot snapshot plus its decision record.

The instance owns its stage/slot rows outright.  Nothing here points back at
RouteTemplate rows except ``template_id`` (informational, used for the
template in-use check).

``version`` is mapped as the SQLAlchemy version counter: every UPDATE of the
instance row is issued with ``WHERE version = :old`` and bumps the value, so
concurrent writers on the same instance cannot both commit.
"""

from eapproval.models import db
from eapproval.models.base import TenantModel, utcnow

# ── Instance lifecycle ───────────────────────────────────────────────────────

STATUS_PENDING = "PENDING"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"
STATUS_CANCELLED = "CANCELLED"
INSTANCE_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED)
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED})

INSTANCE_TRANSITIONS = {
    STATUS_PENDING:   [STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED],
    STATUS_APPROVED:  [],
    STATUS_REJECTED:  [],
    STATUS_CANCELLED: [],
}

# ── Stage lifecycle ──────────────────────────────────────────────────────────

STAGE_NOT_STARTED = "NOT_STARTED"
STAGE_WAITING = "WAITING"
STAGE_SATISFIED = "SATISFIED"
STAGE_FAILED = "FAILED"
STAGE_SKIPPED = "SKIPPED"

STAGE_TRANSITIONS = {
    STAGE_NOT_STARTED: [STAGE_WAITING, STAGE_SATISFIED, STAGE_SKIPPED],
    STAGE_WAITING:     [STAGE_SATISFIED, STAGE_FAILED, STAGE_SKIPPED],
    STAGE_SATISFIED:   [],
    STAGE_FAILED:      [],
    STAGE_SKIPPED:     [],
}

# ── Slot decisions ───────────────────────────────────────────────────────────

DECISION_PENDING = "PENDING"
DECISION_APPROVED = "APPROVED"
DECISION_REJECTED = "REJECTED"
DECISION_SKIPPED = "SKIPPED"
HUMAN_DECISIONS = (DECISION_APPROVED, DECISION_REJECTED)

SOURCE_HUMAN = "HUMAN"
SOURCE_SYSTEM = "SYSTEM"
AUTO_RULE_SOURCE_PREFIX = "AUTO_RULE:"

ROUTE_SOURCE_TEMPLATE = "TEMPLATE"
ROUTE_SOURCE_MANUAL = "MANUAL"
ROUTE_SOURCE_HIERARCHY = "HIERARCHY"


def validate_instance_transition(old_status, new_status):
    """Return True if ApprovalInstance status transition is valid."""
    return new_status in INSTANCE_TRANSITIONS.get(old_status, [])


def validate_stage_transition(old_status, new_status):
    """Return True if ApprovalInstanceStage status transition is valid."""
    return new_status in STAGE_TRANSITIONS.get(old_status, [])


def auto_rule_source(rule_id) -> str:
    return f"{AUTO_RULE_SOURCE_PREFIX}{rule_id}"


class ApprovalInstance(TenantModel):
    """A concrete, in-flight (or concluded) approval workflow."""

    __tablename__ = "approval_instances"
    __table_args__ = (
        db.Index("ix_approval_instance_status_requester", "status", "requester_id"),
        db.Index("ix_approval_instance_template_status", "template_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_categories.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    category_code = db.Column(db.String(60), nullable=False,
                              comment="Snapshot of the category code at submission")
    template_id = db.Column(db.Integer, nullable=True,
                            comment="Source RouteTemplate (NULL for manual/hierarchy routes)")
    route_source = db.Column(db.String(20), nullable=False)
    requester_id = db.Column(db.Integer, nullable=False, index=True)
    title = db.Column(db.String(300), nullable=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    current_stage_index = db.Column(db.Integer, nullable=True)
    agreement_policy = db.Column(db.String(20), nullable=False)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_transition_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)
    version = db.Column(db.Integer, nullable=False)

    stages = db.relationship(
        "ApprovalInstanceStage",
        back_populates="instance",
        order_by="ApprovalInstanceStage.order_index",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_stage(self):
        if self.current_stage_index is None:
            return None
        for stage in self.stages:
            if stage.order_index == self.current_stage_index:
                return stage
        return None

    def to_summary(self) -> dict:
        stage = self.current_stage
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "category_id": self.category_id,
            "category_code": self.category_code,
            "requester_id": self.requester_id,
            "title": self.title,
            "status": self.status,
            "current_stage_index": self.current_stage_index,
            "current_stage_type": stage.stage_type if stage else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "version": self.version,
        }

    def to_dict(self) -> dict:
        d = self.to_summary()
        d.update({
            "template_id": self.template_id,
            "route_source": self.route_source,
            "payload": dict(self.payload or {}),
            "agreement_policy": self.agreement_policy,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_by": self.cancelled_by,
            "stages": [s.to_dict() for s in self.stages],
        })
        return d

    def __repr__(self):
        return f"<ApprovalInstance {self.id} {self.category_code} {self.status}>"


class ApprovalInstanceStage(db.Model):
    """Stage snapshot owned by an instance."""

    __tablename__ = "approval_instance_stages"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "order_index", name="uq_instance_stage_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_index = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=True)
    stage_type = db.Column(db.String(20), nullable=False)
    mode = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STAGE_NOT_STARTED)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    instance = db.relationship("ApprovalInstance", back_populates="stages")
    slots = db.relationship(
        "ApprovalSlot",
        back_populates="stage",
        order_by="ApprovalSlot.slot_order",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in {STAGE_SATISFIED, STAGE_FAILED, STAGE_SKIPPED}

    def slot_for(self, approver_id):
        for slot in self.slots:
            if slot.approver_id == approver_id:
                return slot
        return None

    def to_dict(self) -> dict:
        return {
            "order_index": self.order_index,
            "name": self.name,
            "stage_type": self.stage_type,
            "mode": self.mode,
            "status": self.status,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "slots": [s.to_dict() for s in self.slots],
        }


class ApprovalSlot(db.Model):
    """Approver slot snapshot and its (single, final) decision."""

    __tablename__ = "approval_slots"
    __table_args__ = (
        db.UniqueConstraint("stage_id", "approver_id", name="uq_approval_slot_stage_approver"),
        db.Index("ix_approval_slot_approver_decision", "approver_id", "decision"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_instance_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    approver_id = db.Column(db.Integer, nullable=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    slot_order = db.Column(db.Integer, nullable=False, default=0)
    decision = db.Column(db.String(20), nullable=False, default=DECISION_PENDING)
    decision_source = db.Column(db.String(40), nullable=True,
                                comment="HUMAN | SYSTEM | AUTO_RULE:<rule id>")
    comment = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    stage = db.relationship("ApprovalInstanceStage", back_populates="slots")

    @property
    def is_decided(self) -> bool:
        return self.decision != DECISION_PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "approver_id": self.approver_id,
            "is_required": self.is_required,
            "slot_order": self.slot_order,
            "decision": self.decision,
            "decision_source": self.decision_source,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }
