"""
Electronic Approval Engine
Audit trail.

Every committed approval transition leaves exactly one AuditLog row, written
by the audit transition listener after the state change itself committed.
Rows are never updated or deleted by the application.
"""

from datetime import UTC, datetime

from eapproval.models import db


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_tenant_ts", "tenant_id", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False,
                       comment="approval.submit, approval.decision, approval.cancel ...")
    # NULL when the system or an auto-approval rule acted
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    diff = db.Column(db.JSON, nullable=False, default=dict,
                     comment="from_status, to_status, stage_index plus event details")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False,
                          default=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id}>"


def write_audit(*, entity_type, entity_id, action, tenant_id=None, actor_user_id=None, diff=None):
    """Add one audit row and flush it; committing is left to the caller."""
    entry = AuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff=_jsonable(diff or {}),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def _jsonable(value):
    # event details may carry datetimes or Decimals from the payload
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
