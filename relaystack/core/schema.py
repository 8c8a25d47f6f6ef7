"""Payload validation against an event type's field schema."""

from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from relaystack.core.models import FieldError, FieldSchema, FieldType


def _is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return False
        return True
    return False


_CHECKS = {
    FieldType.STRING: lambda v: isinstance(v, str),
    # bool is an int subclass but never a number here
    FieldType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    FieldType.BOOLEAN: lambda v: isinstance(v, bool),
    FieldType.DATE: _is_date,
    FieldType.ARRAY: lambda v: isinstance(v, (list, tuple)),
    FieldType.OBJECT: lambda v: isinstance(v, Mapping),
}


def matches_type(value: Any, field_type: FieldType) -> bool:
    """Return True if ``value`` is of the declared primitive kind."""
    return _CHECKS[field_type](value)


def validate_payload(
    schema: Mapping[str, FieldSchema], payload: Mapping[str, Any]
) -> list[FieldError]:
    """Check a payload against a schema.

    Required fields must be present and not None. Any field that is present
    must match its declared kind. Fields the schema does not mention are
    allowed through untouched.

    Returns:
        One FieldError per offending field, in schema order. Empty when valid.
    """
    errors: list[FieldError] = []
    for name, field in schema.items():
        value = payload.get(name)
        if value is None:
            if field.required:
                errors.append(FieldError(field=name, reason="missing", expected=field.type))
            continue
        if not matches_type(value, field.type):
            errors.append(
                FieldError(
                    field=name,
                    reason="type",
                    expected=field.type,
                    actual=type(value).__name__,
                )
            )
    return errors
