"""
Route Resolver.

Turns a submission into a ``ResolvedRoute``: an immutable, ordered tuple of
stage snapshots the approval engine copies onto the new instance.

Resolution order:
    1. explicit template id
    2. manual stage list (validated like a template)
    3. the category's bound default template
    4. an active template marked default for the category
    5. the global default template (category NULL)
    6. organisation hierarchy (manager chain + category owner)

Every failure raises a ``ResolutionError`` subtype (or ``InvariantError`` for
a bad manual route) before anything is persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app

from eapproval.core.exceptions import (
    NoApproverResolvedError,
    TemplateInactiveError,
    TemplateNotFoundError,
    ValidationError,
)
from eapproval.models import db
from eapproval.models.instance import (
    ROUTE_SOURCE_HIERARCHY,
    ROUTE_SOURCE_MANUAL,
    ROUTE_SOURCE_TEMPLATE,
)
from eapproval.models.route_template import MODE_ALL, STAGE_APPROVAL, RouteTemplate
from eapproval.services.org_directory import OrgDirectory
from eapproval.services.route_template_service import normalize_stages

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotSnapshot:
    approver_id: int
    is_required: bool = True
    slot_order: int = 0


@dataclass(frozen=True)
class StageSnapshot:
    order_index: int
    name: str
    stage_type: str
    mode: str
    slots: tuple[SlotSnapshot, ...]


@dataclass(frozen=True)
class ResolvedRoute:
    source: str
    template_id: int | None
    agreement_policy: str
    stages: tuple[StageSnapshot, ...]

    @property
    def approver_ids(self) -> list[int]:
        return [slot.approver_id for stage in self.stages for slot in stage.slots]


def _snapshot_template(template: RouteTemplate) -> ResolvedRoute:
    stages = tuple(
        StageSnapshot(
            order_index=stage.order_index,
            name=stage.name,
            stage_type=stage.stage_type,
            mode=stage.mode,
            slots=tuple(
                SlotSnapshot(a.user_id, bool(a.is_required), a.slot_order)
                for a in stage.approvers
            ),
        )
        for stage in template.stages
    )
    return ResolvedRoute(ROUTE_SOURCE_TEMPLATE, template.id, template.agreement_policy, stages)


def _snapshot_manual(raw_stages, policy: str) -> ResolvedRoute:
    normalized = normalize_stages(raw_stages, require_actionable=True)
    stages = tuple(
        StageSnapshot(
            order_index=i,
            name=s["name"],
            stage_type=s["stage_type"],
            mode=s["mode"],
            slots=tuple(
                SlotSnapshot(a["user_id"], a["is_required"], a["slot_order"])
                for a in s["approvers"]
            ),
        )
        for i, s in enumerate(normalized)
    )
    return ResolvedRoute(ROUTE_SOURCE_MANUAL, None, policy, stages)


def _explicit_template(tenant_id: int, category, template_id) -> RouteTemplate:
    template = db.session.get(RouteTemplate, template_id)
    if template is None or template.tenant_id != tenant_id:
        raise TemplateNotFoundError(template_id)
    if template.category_id is not None and template.category_id != category.id:
        raise TemplateNotFoundError(template_id)
    if not template.is_active:
        raise TemplateInactiveError(template_id)
    return template


def _default_template(tenant_id: int, category) -> RouteTemplate | None:
    if category.default_template_id is not None:
        bound = db.session.get(RouteTemplate, category.default_template_id)
        if bound is not None and bound.tenant_id == tenant_id and bound.is_active:
            return bound

    base = RouteTemplate.query_for_tenant(tenant_id).filter(
        RouteTemplate.is_default.is_(True),
        RouteTemplate.is_active.is_(True),
    )
    own = base.filter(RouteTemplate.category_id == category.id).order_by(RouteTemplate.id).first()
    if own is not None:
        return own
    return base.filter(RouteTemplate.category_id.is_(None)).order_by(RouteTemplate.id).first()


def _hierarchy_route(requester_id: int, category, directory, policy: str) -> ResolvedRoute:
    approvers = list(directory.resolve_org_hierarchy(requester_id))
    owner = category.owner_user_id
    if owner is not None and owner != requester_id and owner not in approvers:
        approvers.append(owner)
    if not approvers:
        raise NoApproverResolvedError(requester_id)

    stages = tuple(
        StageSnapshot(
            order_index=i,
            name=f"Approver {i + 1}",
            stage_type=STAGE_APPROVAL,
            mode=MODE_ALL,
            slots=(SlotSnapshot(approver_id, True, 0),),
        )
        for i, approver_id in enumerate(approvers)
    )
    return ResolvedRoute(ROUTE_SOURCE_HIERARCHY, None, policy, stages)


def resolve(
    tenant_id: int,
    requester_id: int,
    category,
    explicit_template_id: int | None = None,
    manual_stages=None,
    directory=None,
) -> ResolvedRoute:
    """Resolve the route for one submission.

    Args:
        tenant_id: Tenant scope.
        requester_id: Submitting user.
        category: ApprovalCategory row.
        explicit_template_id: Template chosen by the requester.
        manual_stages: Stage definitions composed by the requester.
        directory: Organisation directory (defaults to ``OrgDirectory``).

    Raises:
        TemplateNotFoundError, TemplateInactiveError, NoApproverResolvedError,
        HierarchyCycleDetectedError, InvariantError
    """
    if explicit_template_id is not None and manual_stages is not None:
        raise ValidationError(
            "explicit route takes either template_id or stages, not both",
            {"explicit_route": "ambiguous"},
        )
    default_policy = current_app.config.get("DEFAULT_AGREEMENT_POLICY", "BLOCKING")

    if explicit_template_id is not None:
        route = _snapshot_template(_explicit_template(tenant_id, category, explicit_template_id))
    elif manual_stages is not None:
        route = _snapshot_manual(manual_stages, default_policy)
    else:
        template = _default_template(tenant_id, category)
        if template is not None:
            route = _snapshot_template(template)
        else:
            directory = directory or OrgDirectory(tenant_id)
            route = _hierarchy_route(requester_id, category, directory, default_policy)

    logger.info(
        "Route resolved for requester=%s category=%s: source=%s template=%s stages=%d",
        requester_id, category.code, route.source, route.template_id, len(route.stages),
        extra={"tenant_id": tenant_id},
    )
    return route
