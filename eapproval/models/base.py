"""
TenantModel: Abstract base class for tenant-scoped models.

All engine tables are tenant-scoped.  Tenants themselves are owned by the
administration surface, so ``tenant_id`` is a plain indexed integer rather
than a foreign key.  This adds:
  - tenant_id column with index
  - query_for_tenant(tenant_id) classmethod
"""

from datetime import datetime, timezone

from eapproval.models import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(db.Integer, nullable=False, index=True)

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)
