"""
Dynamic form schema for approval categories.

A category's ``field_schema`` is an ordered list of field definitions.  Each
definition is parsed into a frozen ``FieldDefinition`` tagged with its field
type, and every tag has exactly one validator function registered in
``_VALIDATORS``.  ``validate_payload`` is the only way a submitted payload
enters the engine: it returns a cleaned, type-coerced dict plus a list of
field errors, and unknown keys are rejected rather than passed through.

Field types:
    text, textarea, email, phone       → str
    number, currency                   → int | float
    date / time / datetime             → ISO-8601 string
    select / multiselect               → option value(s)
    boolean                            → bool
    file                               → list of file references (str)
    bank_account                       → {bank, account_number, holder}
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Callable

from eapproval.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

FIELD_TYPES = (
    "text", "textarea", "email", "phone",
    "number", "currency",
    "date", "time", "datetime",
    "select", "multiselect",
    "boolean", "file", "bank_account",
)

_CONSTRAINT_KEYS = frozenset({
    "min", "max", "min_length", "max_length", "pattern", "options", "max_files",
})

_TEXT_CONSTRAINTS = frozenset({"min_length", "max_length", "pattern"})

# constraint keys each field type enforces; anything else is refused at write time
_ALLOWED_CONSTRAINTS: dict[str, frozenset] = {
    "text": _TEXT_CONSTRAINTS,
    "textarea": _TEXT_CONSTRAINTS,
    "email": _TEXT_CONSTRAINTS,
    "phone": _TEXT_CONSTRAINTS,
    "number": frozenset({"min", "max"}),
    "currency": frozenset({"min", "max"}),
    "date": frozenset({"min", "max"}),
    "time": frozenset(),
    "datetime": frozenset(),
    "select": frozenset({"options"}),
    "multiselect": frozenset({"options"}),
    "boolean": frozenset(),
    "file": frozenset({"max_files"}),
    "bank_account": frozenset(),
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9][0-9\- ]{5,19}$")
_ACCOUNT_RE = re.compile(r"^[0-9][0-9\-]{5,29}$")


class FieldError(Exception):
    """Single-field failure raised inside a validator."""


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: str
    label: str = ""
    required: bool = False
    constraints: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "label": self.label or self.name,
            "required": self.required,
            "constraints": dict(self.constraints),
        }


# ── Schema parsing (write time) ──────────────────────────────────────────────


def parse_schema(raw_schema) -> list[FieldDefinition]:
    """Parse and validate a raw field schema list.

    Raises:
        ValidationError: on unknown types, duplicate names or bad constraints.
    """
    if raw_schema is None:
        return []
    if not isinstance(raw_schema, list):
        raise ValidationError("field_schema must be a list of field definitions")

    fields: list[FieldDefinition] = []
    seen: set[str] = set()
    errors: dict[str, str] = {}
    for i, raw in enumerate(raw_schema):
        if not isinstance(raw, dict):
            errors[f"[{i}]"] = "field definition must be an object"
            continue
        name = (raw.get("name") or "").strip()
        ftype = raw.get("type")
        if not name:
            errors[f"[{i}]"] = "name is required"
            continue
        if name in seen:
            errors[name] = "duplicate field name"
            continue
        if ftype not in FIELD_TYPES:
            errors[name] = f"type must be one of {', '.join(FIELD_TYPES)}"
            continue
        raw_constraints = raw.get("constraints") or {}
        if not isinstance(raw_constraints, dict):
            errors[name] = "constraints must be an object"
            continue
        constraints = dict(raw_constraints)
        problem = _constraint_problem(ftype, constraints)
        if problem:
            errors[name] = problem
            continue
        seen.add(name)
        fields.append(FieldDefinition(
            name=name,
            type=ftype,
            label=raw.get("label") or name,
            required=bool(raw.get("required", False)),
            constraints=constraints,
        ))

    if errors:
        raise ValidationError("Invalid field schema", details=errors)
    return fields


def _is_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _iso_date(value):
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _constraint_problem(ftype: str, c: dict) -> str | None:
    """Describe the first constraint that a validator of ``ftype`` could not apply."""
    unknown = set(c) - _CONSTRAINT_KEYS
    if unknown:
        return f"unknown constraint(s): {', '.join(sorted(unknown))}"
    unsupported = set(c) - _ALLOWED_CONSTRAINTS[ftype]
    if unsupported:
        return f"constraint(s) not supported for {ftype}: {', '.join(sorted(unsupported))}"

    for key in ("min_length", "max_length", "max_files"):
        if key in c and not _is_count(c[key]):
            return f"{key} must be a non-negative integer"
    if "min_length" in c and "max_length" in c and c["min_length"] > c["max_length"]:
        return "min_length must not exceed max_length"

    if "pattern" in c:
        if not isinstance(c["pattern"], str):
            return "pattern must be a string"
        try:
            re.compile(c["pattern"])
        except re.error:
            return "pattern is not a valid regular expression"

    if ftype in ("select", "multiselect"):
        options = c.get("options")
        if not isinstance(options, list) or not options:
            return "select fields need a non-empty options list"

    bounds = [c[k] for k in ("min", "max") if k in c]
    if ftype == "date":
        parsed = [_iso_date(b) for b in bounds]
        if None in parsed:
            return "min and max must be ISO-8601 dates"
        bounds = parsed
    elif bounds and not all(_is_number(b) for b in bounds):
        return "min and max must be numbers"
    if len(bounds) == 2 and bounds[0] > bounds[1]:
        return "min must not exceed max"
    return None


# ── Per-type validators ──────────────────────────────────────────────────────


def _check_length(value: str, c: dict) -> None:
    if "min_length" in c and len(value) < c["min_length"]:
        raise FieldError(f"must be at least {c['min_length']} characters")
    if "max_length" in c and len(value) > c["max_length"]:
        raise FieldError(f"must be at most {c['max_length']} characters")
    if "pattern" in c and not re.fullmatch(c["pattern"], value):
        raise FieldError("does not match the required format")


def _check_range(value, c: dict) -> None:
    if "min" in c and value < c["min"]:
        raise FieldError(f"must be ≥ {c['min']}")
    if "max" in c and value > c["max"]:
        raise FieldError(f"must be ≤ {c['max']}")


def _validate_text(value, c):
    if not isinstance(value, str):
        raise FieldError("must be a string")
    value = value.strip()
    _check_length(value, c)
    return value


def _validate_email(value, c):
    value = _validate_text(value, c)
    if not _EMAIL_RE.match(value):
        raise FieldError("must be a valid email address")
    return value.lower()


def _validate_phone(value, c):
    value = _validate_text(value, c)
    if not _PHONE_RE.match(value):
        raise FieldError("must be a valid phone number")
    return value


def _validate_number(value, c):
    if isinstance(value, bool):
        raise FieldError("must be a number")
    if isinstance(value, str):
        try:
            value = float(value) if "." in value else int(value)
        except ValueError:
            raise FieldError("must be a number") from None
    if not isinstance(value, (int, float)):
        raise FieldError("must be a number")
    _check_range(value, c)
    return value


def _validate_currency(value, c):
    value = _validate_number(value, c)
    if value < 0:
        raise FieldError("must not be negative")
    return value


def _parse_iso(value, parser: Callable[[str], Any], kind: str):
    if not isinstance(value, str):
        raise FieldError(f"must be an ISO-8601 {kind} string")
    try:
        return parser(value)
    except ValueError:
        raise FieldError(f"must be an ISO-8601 {kind} string") from None


def _validate_date(value, c):
    parsed = _parse_iso(value, date.fromisoformat, "date")
    if "min" in c and parsed < date.fromisoformat(c["min"]):
        raise FieldError(f"must be on or after {c['min']}")
    if "max" in c and parsed > date.fromisoformat(c["max"]):
        raise FieldError(f"must be on or before {c['max']}")
    return parsed.isoformat()


def _validate_time(value, c):
    return _parse_iso(value, time.fromisoformat, "time").isoformat()


def _validate_datetime(value, c):
    return _parse_iso(value, datetime.fromisoformat, "datetime").isoformat()


def _validate_select(value, c):
    if value not in c.get("options", []):
        raise FieldError("is not one of the allowed options")
    return value


def _validate_multiselect(value, c):
    if not isinstance(value, list):
        raise FieldError("must be a list of options")
    options = c.get("options", [])
    bad = [v for v in value if v not in options]
    if bad:
        raise FieldError(f"contains unknown option(s): {bad}")
    return list(dict.fromkeys(value))


def _validate_boolean(value, c):
    if not isinstance(value, bool):
        raise FieldError("must be true or false")
    return value


def _validate_file(value, c):
    refs = value if isinstance(value, list) else [value]
    if not all(isinstance(r, str) and r.strip() for r in refs):
        raise FieldError("must be one or more file references")
    if "max_files" in c and len(refs) > c["max_files"]:
        raise FieldError(f"accepts at most {c['max_files']} file(s)")
    return [r.strip() for r in refs]


def _validate_bank_account(value, c):
    if not isinstance(value, dict):
        raise FieldError("must be an object with bank, account_number and holder")
    bank = (value.get("bank") or "").strip()
    number = str(value.get("account_number") or "").strip()
    holder = (value.get("holder") or "").strip()
    if not bank or not holder:
        raise FieldError("bank and holder are required")
    if not _ACCOUNT_RE.match(number):
        raise FieldError("account_number is not valid")
    return {"bank": bank, "account_number": number, "holder": holder}


_VALIDATORS: dict[str, Callable[[Any, dict], Any]] = {
    "text": _validate_text,
    "textarea": _validate_text,
    "email": _validate_email,
    "phone": _validate_phone,
    "number": _validate_number,
    "currency": _validate_currency,
    "date": _validate_date,
    "time": _validate_time,
    "datetime": _validate_datetime,
    "select": _validate_select,
    "multiselect": _validate_multiselect,
    "boolean": _validate_boolean,
    "file": _validate_file,
    "bank_account": _validate_bank_account,
}


def _is_empty(value) -> bool:
    return value is None or value == "" or value == []


# ── Public API ───────────────────────────────────────────────────────────────


def validate_payload(schema, payload) -> tuple[dict, list[dict]]:
    """Validate a request payload against a category field schema.

    Args:
        schema: Raw field schema list (as stored on the category) or parsed
                FieldDefinition list.
        payload: Submitted values keyed by field name.

    Returns:
        (clean_payload, errors).  ``errors`` is a list of
        ``{"field": name, "message": text}``; when it is non-empty the clean
        payload must not be used.
    """
    fields = schema if schema and isinstance(schema[0], FieldDefinition) else parse_schema(schema)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return {}, [{"field": "_payload", "message": "payload must be an object"}]

    known = {f.name for f in fields}
    errors = [
        {"field": key, "message": "is not a field of this category"}
        for key in payload if key not in known
    ]
    clean: dict = {}
    for fdef in fields:
        value = payload.get(fdef.name)
        if _is_empty(value):
            if fdef.required:
                errors.append({"field": fdef.name, "message": "is required"})
            continue
        try:
            clean[fdef.name] = _VALIDATORS[fdef.type](value, fdef.constraints)
        except FieldError as exc:
            errors.append({"field": fdef.name, "message": str(exc)})

    if errors:
        logger.debug("Payload rejected: %d field error(s)", len(errors))
    return clean, errors
