"""
Constraint Validator

Checks a candidate value set against a DataModel's properties and the
validation rulesets they reference.  Pure apart from the uniqueness scan:
no writes, no other store access.

Per property, in ``order_index`` order:
  1. required / missing
  2. value shape for the declared type
  3. strings with a ruleset: regex search (uncompilable patterns are
     skipped with a warning, never rejected)
  4. unique strings: no other live entity of the model holds the value
  5. numbers: coercion (an error only when required), then min / max

Soft-deleted entities never take part in the uniqueness scan.  Every path
that brings an entity back to life re-validates, so the rule holds for
live rows everywhere.

Usage:
    from app.services.validation import validate, validate_or_raise

    result = validate(model, rulesets, {"code": "INV-0001"})
    if not result.valid:
        ...

    validate_or_raise(model, rulesets, values, existing_entity_id=entity.id)
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterable, Mapping

from sqlalchemy import select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.entity import Entity
from app.models.schema import DataModel, ModelProperty, ValidationRuleset
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

# Failure codes
REQUIRED = "REQUIRED"
TYPE_MISMATCH = "TYPE_MISMATCH"
PATTERN_MISMATCH = "PATTERN_MISMATCH"
NOT_UNIQUE = "NOT_UNIQUE"
BELOW_MIN = "BELOW_MIN"
ABOVE_MAX = "ABOVE_MAX"
UNKNOWN_PROPERTY = "UNKNOWN_PROPERTY"

_BOOLEAN_STRINGS = {"true": True, "false": False}


@dataclass(frozen=True)
class ValidationFailure:
    property: str
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"property": self.property, "code": self.code, "message": self.message}


@dataclass
class ValidationResult:
    failures: list[ValidationFailure] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.failures

    @property
    def first(self) -> ValidationFailure | None:
        return self.failures[0] if self.failures else None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "failures": [f.to_dict() for f in self.failures]}


class _StopValidation(Exception):
    pass


# ── Coercion helpers ─────────────────────────────────────────────────────────

def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def coerce_number(value: Any) -> int | float | None:
    """Return *value* as int/float, or None when it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
    else:
        return None
    if isinstance(number, float) and not math.isfinite(number):
        return None
    return number


def coerce_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _BOOLEAN_STRINGS.get(value.strip().lower())
    return None


def end_anchored(pattern: str) -> str:
    """
    Rewrite ``$`` outside character classes as ``\\Z``.

    Rulesets are authored with ECMAScript semantics, where ``$`` (without
    the multiline flag) matches only at the end of input.  Python's ``$``
    also matches before a trailing newline, which would let ``"INV-0001\\n"``
    through ``^INV-\\d{4}$``.
    """
    out = []
    in_class = False
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            out.append(pattern[i:i + 2])
            i += 2
            continue
        if in_class:
            if ch == "]":
                in_class = False
            out.append(ch)
            i += 1
            continue
        if ch == "[":
            in_class = True
            out.append(ch)
            i += 1
            # "[]" / "[^]" open a class whose first member is a literal "]"
            if pattern.startswith("^", i):
                out.append("^")
                i += 1
            if pattern.startswith("]", i):
                out.append("]")
                i += 1
            continue
        out.append(r"\Z" if ch == "$" else ch)
        i += 1
    return "".join(out)


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> re.Pattern:
    """Compile a ruleset pattern; raises ``re.error`` when it is malformed."""
    return re.compile(end_anchored(pattern))


def _ruleset_index(rulesets) -> dict[str, ValidationRuleset]:
    if rulesets is None:
        return {}
    if isinstance(rulesets, Mapping):
        return dict(rulesets)
    return {r.id: r for r in rulesets}


def load_rulesets() -> dict[str, ValidationRuleset]:
    """All rulesets keyed by id, ready to pass to ``validate``."""
    rows = db.session.execute(select(ValidationRuleset)).scalars().all()
    return {r.id: r for r in rows}


def has_unique_conflict(
    model_id: str, property_name: str, value: Any, exclude_entity_id: str | None = None,
) -> bool:
    """True when another live entity of the model already holds *value*."""
    stmt = select(Entity.id, Entity.data).where(
        Entity.model_id == model_id,
        Entity.active_clause(),
    )
    if exclude_entity_id is not None:
        stmt = stmt.where(Entity.id != exclude_entity_id)
    for _entity_id, data in db.session.execute(stmt):
        if (data or {}).get(property_name) == value:
            return True
    return False


# ── Per-property checks ──────────────────────────────────────────────────────

def _check_property(
    model: DataModel,
    prop: ModelProperty,
    value: Any,
    rulesets: dict[str, ValidationRuleset],
    existing_entity_id: str | None,
) -> ValidationFailure | None:
    name = prop.name

    if is_missing(value):
        if prop.required:
            return ValidationFailure(name, REQUIRED, f"Property '{name}' is required.")
        return None

    if prop.type == "string":
        if not isinstance(value, str):
            return ValidationFailure(name, TYPE_MISMATCH, f"Property '{name}' must be a string.")

        ruleset = rulesets.get(prop.validation_ruleset_id) if prop.validation_ruleset_id else None
        if ruleset is not None and value.strip() != "":
            try:
                regex = compile_pattern(ruleset.regex_pattern)
            except re.error as exc:
                logger.warning(
                    "Invalid regex pattern for ruleset %s (id=%s): %r (%s). Skipping rule.",
                    ruleset.name, ruleset.id, ruleset.regex_pattern, exc,
                )
            else:
                if not regex.search(value):
                    return ValidationFailure(
                        name, PATTERN_MISMATCH,
                        f"Value for '{name}' does not match the required format: "
                        f"{ruleset.name}. (Pattern: {ruleset.regex_pattern})",
                    )

        if prop.is_unique and has_unique_conflict(model.id, name, value, existing_entity_id):
            return ValidationFailure(
                name, NOT_UNIQUE,
                f"Value '{value}' for property '{name}' must be unique. It already exists.",
            )
        return None

    if prop.type == "number":
        number = coerce_number(value)
        if number is None:
            if prop.required:
                return ValidationFailure(
                    name, TYPE_MISMATCH,
                    f"Property '{name}' requires a valid number. Received: '{value}'.",
                )
            return None
        if prop.min_value is not None and number < prop.min_value:
            return ValidationFailure(
                name, BELOW_MIN,
                f"Value '{number}' for property '{name}' is less than the minimum "
                f"allowed value of {prop.min_value}.",
            )
        if prop.max_value is not None and number > prop.max_value:
            return ValidationFailure(
                name, ABOVE_MAX,
                f"Value '{number}' for property '{name}' is greater than the maximum "
                f"allowed value of {prop.max_value}.",
            )
        return None

    if prop.type == "boolean":
        if coerce_boolean(value) is None:
            return ValidationFailure(name, TYPE_MISMATCH, f"Property '{name}' must be a boolean.")
        return None

    if prop.type == "date":
        if not isinstance(value, str) or parse_date(value) is None:
            return ValidationFailure(name, TYPE_MISMATCH, f"Property '{name}' must be a date (YYYY-MM-DD).")
        return None

    if prop.type == "relationship":
        if prop.relationship_type == "many":
            if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
                return ValidationFailure(
                    name, TYPE_MISMATCH, f"Property '{name}' must be a list of record ids.",
                )
        elif not isinstance(value, str):
            return ValidationFailure(name, TYPE_MISMATCH, f"Property '{name}' must be a record id.")
        return None

    return None


def validate(
    model: DataModel,
    rulesets: Mapping[str, ValidationRuleset] | Iterable[ValidationRuleset] | None,
    values: Mapping[str, Any],
    existing_entity_id: str | None = None,
    *,
    first_failure: bool = False,
) -> ValidationResult:
    """
    Validate *values* against *model*.

    Args:
        model: The DataModel whose properties apply.
        rulesets: Rulesets keyed by id (or any iterable of them).
        values: Candidate value bag keyed by property name.
        existing_entity_id: Entity being updated; excluded from the uniqueness scan.
        first_failure: Stop at the first failing property.

    Returns:
        ValidationResult with one failure per failing property.
    """
    index = _ruleset_index(rulesets)
    values = values or {}
    result = ValidationResult()

    def _add(failure: ValidationFailure | None) -> None:
        if failure is None:
            return
        result.failures.append(failure)
        if first_failure:
            raise _StopValidation

    try:
        for prop in sorted(model.properties, key=lambda p: (p.order_index, p.name)):
            _add(_check_property(model, prop, values.get(prop.name), index, existing_entity_id))

        known = {p.name for p in model.properties}
        for key in sorted(k for k in values if k not in known):
            _add(ValidationFailure(
                key, UNKNOWN_PROPERTY, f"'{key}' is not a property of model '{model.name}'.",
            ))
    except _StopValidation:
        pass

    return result


def validate_or_raise(
    model: DataModel,
    rulesets,
    values: Mapping[str, Any],
    existing_entity_id: str | None = None,
    *,
    step: int | None = None,
) -> None:
    """
    First-failure validation for single-record writes.

    Raises:
        ValidationError: attributed to the first failing property
            (and to *step* during a wizard commit).
    """
    result = validate(model, rulesets, values, existing_entity_id, first_failure=True)
    failure = result.first
    if failure is not None:
        raise ValidationError(
            failure.message,
            field=failure.property,
            step=step,
            details={"code": failure.code},
        )


def normalize_values(model: DataModel, values: Mapping[str, Any]) -> dict:
    """
    Canonical storage form of an already validated value bag.

    Numbers become int/float, booleans bool, dates ``YYYY-MM-DD``;
    blank values become None.  An optional number that does not coerce is
    stored as None.
    """
    normalized: dict = {}
    props = {p.name: p for p in model.properties}
    for key, value in values.items():
        prop = props.get(key)
        if prop is None:
            continue
        if is_missing(value):
            normalized[key] = [] if prop.type == "relationship" and prop.relationship_type == "many" else None
        elif prop.type == "number":
            number = coerce_number(value)
            if number is None:
                logger.info("Dropping non-numeric value for optional property %s.%s", model.name, key)
            normalized[key] = number
        elif prop.type == "boolean":
            normalized[key] = coerce_boolean(value)
        elif prop.type == "date":
            parsed = parse_date(value)
            normalized[key] = parsed.isoformat() if parsed else None
        else:
            normalized[key] = value
    return normalized
