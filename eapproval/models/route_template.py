"""
Electronic Approval Engine
Route Template Store models.

Models:
    - RouteTemplate: named, reusable sequence of approval stages; bound to a
      category or global (category_id NULL).
    - RouteStage: one step of a template (type + aggregation mode).
    - RouteStageApprover: an approver slot inside a stage.

Templates are never referenced by running instances for routing decisions:
ApprovalInstance copies the stage list at submission time.
"""

from eapproval.models import db
from eapproval.models.base import TenantModel, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

STAGE_AGREEMENT = "AGREEMENT"
STAGE_APPROVAL = "APPROVAL"
STAGE_REFERENCE = "REFERENCE"
STAGE_TYPES = (STAGE_AGREEMENT, STAGE_APPROVAL, STAGE_REFERENCE)

MODE_ALL = "ALL"
MODE_ANY = "ANY"
MODE_SEQUENTIAL = "SEQUENTIAL"
AGGREGATION_MODES = (MODE_ALL, MODE_ANY, MODE_SEQUENTIAL)

POLICY_BLOCKING = "BLOCKING"
POLICY_ADVISORY = "ADVISORY"
AGREEMENT_POLICIES = (POLICY_BLOCKING, POLICY_ADVISORY)


class RouteTemplate(TenantModel):
    """Reusable approval route."""

    __tablename__ = "route_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_categories.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL = applies to all categories",
    )
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    agreement_policy = db.Column(
        db.String(20), nullable=False, default=POLICY_BLOCKING,
        comment="BLOCKING: AGREEMENT rejection rejects the request | ADVISORY: recorded only",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    stages = db.relationship(
        "RouteStage",
        back_populates="template",
        order_by="RouteStage.order_index",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_stages: bool = True) -> dict:
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "category_id": self.category_id,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "agreement_policy": self.agreement_policy,
            "stage_count": len(self.stages),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_stages:
            d["stages"] = [s.to_dict() for s in self.stages]
        return d

    def __repr__(self):
        return f"<RouteTemplate {self.id}: {self.name}>"


class RouteStage(db.Model):
    """A stage definition belonging to exactly one template."""

    __tablename__ = "route_stages"
    __table_args__ = (
        db.UniqueConstraint("template_id", "order_index", name="uq_route_stage_template_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("route_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_index = db.Column(db.Integer, nullable=False, comment="0-based, contiguous")
    name = db.Column(db.String(200), nullable=True)
    stage_type = db.Column(db.String(20), nullable=False, default=STAGE_APPROVAL)
    mode = db.Column(db.String(20), nullable=False, default=MODE_ALL)

    template = db.relationship("RouteTemplate", back_populates="stages")
    approvers = db.relationship(
        "RouteStageApprover",
        back_populates="stage",
        order_by="RouteStageApprover.slot_order",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_index": self.order_index,
            "name": self.name,
            "stage_type": self.stage_type,
            "mode": self.mode,
            "approvers": [a.to_dict() for a in self.approvers],
        }


class RouteStageApprover(db.Model):
    """Approver slot inside a template stage."""

    __tablename__ = "route_stage_approvers"

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer,
        db.ForeignKey("route_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, nullable=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    slot_order = db.Column(db.Integer, nullable=False, default=0,
                           comment="Acting order; only meaningful for SEQUENTIAL stages")

    stage = db.relationship("RouteStage", back_populates="approvers")

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "is_required": self.is_required,
            "slot_order": self.slot_order,
        }
