"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes and machine-readable error codes
everywhere.  Each class carries a ``code`` (see ``eapproval.utils.errors.E``)
so a calling surface can tell "select a different approver" apart from
"someone already decided this".

Usage:
    from eapproval.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalCategory", resource_id=42)
    raise ValidationError("name is required", details={"name": "required"})
"""

from eapproval.utils.errors import E


class EngineError(Exception):
    """Base class for every error the approval engine reports to callers."""

    code = E.INTERNAL

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Lookup / validation ──────────────────────────────────────────────────────


class NotFoundError(EngineError):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts,
    so a 404 never confirms that another tenant's record exists.

    Args:
        resource: Human-readable model/entity name (e.g. "RouteTemplate").
        resource_id: The PK that was looked up.
        tenant_id: Optional; the scope that was enforced. For debug logging only.
    """

    code = E.NOT_FOUND

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(EngineError):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    code = E.VALIDATION_INVALID


class PayloadValidationError(ValidationError):
    """Request payload does not satisfy the category's field schema.

    ``errors`` is the list returned by ``form_schema.validate_payload``.
    """

    code = E.VALIDATION_PAYLOAD

    def __init__(self, errors: list[dict]) -> None:
        self.errors = errors
        details = {e["field"]: e["message"] for e in errors}
        super().__init__(f"Payload failed validation ({len(errors)} error(s))", details)


class InvariantError(ValidationError):
    """Route structure is invalid (zero stages, gaps in order, empty stage...).

    Raised at template-write time, never half-way through a submission.
    """

    code = E.INVARIANT


class ConflictError(EngineError):
    """Raised when an operation would create a duplicate unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = E.CONFLICT_DUPLICATE

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


# ── Route resolution ─────────────────────────────────────────────────────────


class ResolutionError(EngineError):
    """Submission could not produce a route; no instance was created."""

    code = E.RESOLUTION


class TemplateNotFoundError(ResolutionError):
    code = E.TEMPLATE_NOT_FOUND

    def __init__(self, template_id) -> None:
        self.template_id = template_id
        super().__init__(f"Route template {template_id} not found for this category")


class TemplateInactiveError(ResolutionError):
    code = E.TEMPLATE_INACTIVE

    def __init__(self, template_id) -> None:
        self.template_id = template_id
        super().__init__(f"Route template {template_id} is inactive")


class NoApproverResolvedError(ResolutionError):
    code = E.NO_APPROVER

    def __init__(self, requester_id) -> None:
        self.requester_id = requester_id
        super().__init__(f"No approver could be resolved for requester {requester_id}")


class HierarchyCycleDetectedError(ResolutionError):
    code = E.HIERARCHY_CYCLE


# ── Authorization ────────────────────────────────────────────────────────────


class AuthorizationError(EngineError):
    code = E.FORBIDDEN


class ApproverNotAuthorizedError(AuthorizationError):
    code = E.APPROVER_NOT_AUTHORIZED

    def __init__(self, approver_id, instance_id) -> None:
        super().__init__(
            f"User {approver_id} holds no slot in the current stage of instance {instance_id}"
        )


class NotRequesterError(AuthorizationError):
    code = E.NOT_REQUESTER

    def __init__(self, user_id, instance_id) -> None:
        super().__init__(f"User {user_id} is not the requester of instance {instance_id}")


# ── Sequencing ───────────────────────────────────────────────────────────────


class SequencingError(EngineError):
    code = E.CONFLICT_STATE


class InstanceNotPendingError(SequencingError):
    code = E.INSTANCE_NOT_PENDING

    def __init__(self, instance_id, status) -> None:
        self.status = status
        super().__init__(f"Instance {instance_id} is {status}, not PENDING")


class StageNotCurrentError(SequencingError):
    code = E.STAGE_NOT_CURRENT

    def __init__(self, stage_index, current_index) -> None:
        super().__init__(
            f"Stage {stage_index} is not the active stage (current={current_index})"
        )


class OutOfSequenceError(SequencingError):
    code = E.OUT_OF_SEQUENCE


class AlreadyDecidedError(SequencingError):
    code = E.ALREADY_DECIDED

    def __init__(self, approver_id, decision) -> None:
        self.decision = decision
        super().__init__(f"Approver {approver_id} slot already decided: {decision}")


# ── Concurrency / in-use ─────────────────────────────────────────────────────


class VersionConflictError(EngineError):
    """Another writer committed first; reload the instance and retry."""

    code = E.VERSION_CONFLICT

    def __init__(self, instance_id, expected=None, actual=None) -> None:
        self.expected = expected
        self.actual = actual
        msg = f"Instance {instance_id} was modified concurrently"
        if expected is not None:
            msg += f" (expected version {expected}, found {actual})"
        super().__init__(msg)


class TemplateInUseError(EngineError):
    code = E.TEMPLATE_IN_USE

    def __init__(self, template_id, pending_count: int) -> None:
        self.pending_count = pending_count
        super().__init__(
            f"Route template {template_id} is referenced by {pending_count} pending request(s)",
            {"pending_count": pending_count},
        )
