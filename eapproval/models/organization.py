"""
Electronic Approval Engine
Organisation directory model.

Models:
    - OrgMember: one person in a tenant's reporting structure.

The directory is owned by the HR/organisation subsystem; this table is the
data behind the default ``OrgDirectory`` collaborator.  The engine only reads
it, once, when it resolves a hierarchy route.
"""

from eapproval.models import db
from eapproval.models.base import TenantModel, utcnow


class OrgMember(TenantModel):
    """A member of the organisation chart."""

    __tablename__ = "org_members"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "user_id", name="uq_org_member_tenant_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    display_name = db.Column(db.String(200), nullable=True)
    department_id = db.Column(db.Integer, nullable=True, index=True)
    manager_user_id = db.Column(db.Integer, nullable=True,
                                comment="Direct manager's user_id; NULL at the top of the chart")
    level = db.Column(db.Integer, nullable=False, default=0,
                      comment="0 = staff; higher = more senior (team lead, head, ...)")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "display_name": self.display_name,
            "department_id": self.department_id,
            "manager_user_id": self.manager_user_id,
            "level": self.level,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<OrgMember user={self.user_id} level={self.level}>"
