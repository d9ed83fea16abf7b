"""
Organisation directory collaborator.

The approval engine needs two things from the organisation chart: requester
metadata (department, level) for auto-approval targeting, and the manager
chain for hierarchy-based routing.  ``OrgDirectory`` is the default
implementation backed by the ``org_members`` table; anything exposing the
same ``get_member`` / ``resolve_org_hierarchy`` methods can be passed to the
resolver and engine instead.

``resolve_org_hierarchy`` is a pure function over a member lookup so it can be
tested without a database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from flask import current_app

from eapproval.core.exceptions import HierarchyCycleDetectedError
from eapproval.models.organization import OrgMember

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberInfo:
    """Read-only view of one organisation member."""

    user_id: int
    department_id: int | None = None
    manager_user_id: int | None = None
    level: int = 0
    is_active: bool = True
    display_name: str | None = None


def resolve_org_hierarchy(
    user_id: int,
    get_member: Callable[[int], MemberInfo | None],
    *,
    max_depth: int = 20,
    max_approvers: int = 2,
    min_level: int = 1,
) -> list[int]:
    """Walk the manager chain upward from ``user_id``.

    The whole chain is walked (bounded by ``max_depth``) so a loop anywhere
    above the requester fails the resolution instead of being silently
    truncated.  The nearest active managers whose level is at least
    ``min_level`` are returned, closest first, at most ``max_approvers``.

    Raises:
        HierarchyCycleDetectedError: a user is revisited, or the chain is
            deeper than ``max_depth``.
    """
    visited = {user_id}
    approvers: list[int] = []

    member = get_member(user_id)
    current = member.manager_user_id if member else None
    depth = 0
    while current is not None:
        depth += 1
        if depth > max_depth:
            raise HierarchyCycleDetectedError(
                f"Manager chain of user {user_id} exceeds depth {max_depth}",
                {"user_id": user_id, "max_depth": max_depth},
            )
        if current in visited:
            raise HierarchyCycleDetectedError(
                f"Manager chain of user {user_id} revisits user {current}",
                {"user_id": user_id, "revisited": current},
            )
        visited.add(current)

        manager = get_member(current)
        if manager is None:
            break
        if manager.is_active and manager.level >= min_level and len(approvers) < max_approvers:
            approvers.append(manager.user_id)
        current = manager.manager_user_id

    return approvers


class OrgDirectory:
    """Default directory reading ``org_members`` for one tenant."""

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id
        self._cache: dict[int, MemberInfo | None] = {}

    def get_member(self, user_id: int) -> MemberInfo | None:
        if user_id in self._cache:
            return self._cache[user_id]
        row = OrgMember.query_for_tenant(self.tenant_id).filter_by(user_id=user_id).first()
        info = None
        if row is not None:
            info = MemberInfo(
                user_id=row.user_id,
                department_id=row.department_id,
                manager_user_id=row.manager_user_id,
                level=row.level or 0,
                is_active=bool(row.is_active),
                display_name=row.display_name,
            )
        self._cache[user_id] = info
        return info

    def resolve_org_hierarchy(self, user_id: int) -> list[int]:
        cfg = current_app.config
        approvers = resolve_org_hierarchy(
            user_id,
            self.get_member,
            max_depth=cfg.get("HIERARCHY_MAX_DEPTH", 20),
            max_approvers=cfg.get("HIERARCHY_MAX_APPROVERS", 2),
            min_level=cfg.get("HIERARCHY_MIN_APPROVER_LEVEL", 1),
        )
        logger.debug("Hierarchy for user %s in tenant %s: %s",
                     user_id, self.tenant_id, approvers)
        return approvers
