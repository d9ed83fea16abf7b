"""
Electronic Approval Engine
Category Registry model.

Models:
    - ApprovalCategory: a request type ("LEAVE_REQUEST", "EXPENSE", ...) with
      its dynamic field schema and an optional default route template.

The category ``code`` is an external identifier other subsystems (leave
balance, attendance) use to correlate approval outcomes; it never changes
once created.
"""

from eapproval.models import db
from eapproval.models.base import TenantModel, utcnow


class ApprovalCategory(TenantModel):
    """A request type that can be submitted for approval."""

    __tablename__ = "approval_categories"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_approval_category_tenant_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(60), nullable=False,
                     comment="Immutable external identifier, e.g. LEAVE_REQUEST")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    field_schema = db.Column(db.JSON, nullable=False, default=list,
                             comment="Ordered list of field definitions")
    default_template_id = db.Column(
        db.Integer, nullable=True, index=True,
        comment="Bound default RouteTemplate; cleared when that template is deleted",
    )
    owner_user_id = db.Column(
        db.Integer, nullable=True,
        comment="Designated owner appended by hierarchy resolution (e.g. HR manager)",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "field_schema": list(self.field_schema or []),
            "default_template_id": self.default_template_id,
            "owner_user_id": self.owner_user_id,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ApprovalCategory {self.code}>"
