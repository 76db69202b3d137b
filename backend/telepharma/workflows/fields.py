# /telepharma/workflows/fields.py

"""
Pure field validation.

Maps one raw input plus the step's field type to a parsed scratch value or a
rejection. Nothing here performs I/O or touches conversation state; the
engine writes the returned value only when ``is_valid`` is True.
"""

import re
from datetime import datetime, timezone
from typing import Optional, Sequence, TypedDict, FrozenSet

from telepharma.config import strings
from telepharma.models.flow import ScratchValue, TextValue, DateValue, ChoiceValue, AttachmentValue
from telepharma.models.messages import Attachment
from telepharma.workflows.definitions import FieldType, InputMode, Option

DATE_PATTERN = re.compile(r"^[0-9]{2}/[0-9]{2}/[0-9]{4}$")
NUMBER_PATTERN = re.compile(r"^[0-9]+$")

EMPTY_INPUT = "EMPTY_INPUT"
INVALID_DATE = "INVALID_DATE"
INVALID_CHOICE = "INVALID_CHOICE"
RESERVED_TOKEN = "RESERVED_TOKEN"
UNSUPPORTED_INPUT = "UNSUPPORTED_INPUT"


class FieldContext(TypedDict):
    options: Sequence[Option]
    input_mode: InputMode
    reserved_tokens: FrozenSet[str]
    optional_sentinel: str
    min_birth_year: int
    now: datetime
    attachment: Optional[Attachment]


class FieldResult(TypedDict):
    """Result of validating one input against one field type."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]
    value: Optional[ScratchValue]
    absent: bool


def _accept(value: Optional[ScratchValue], absent: bool = False) -> FieldResult:
    return {"is_valid": True, "error_code": None, "message": None, "value": value, "absent": absent}


def _reject(error_code: str, message: str) -> FieldResult:
    return {"is_valid": False, "error_code": error_code, "message": message, "value": None, "absent": False}


def validate_text(raw_input: Optional[str], reserved_tokens: FrozenSet[str]) -> FieldResult:
    if raw_input is None or not raw_input.strip():
        return _reject(EMPTY_INPUT, strings.INVALID_INPUT)
    if raw_input.strip() in reserved_tokens:
        return _reject(RESERVED_TOKEN, strings.INVALID_INPUT)
    return _accept(TextValue(value=raw_input))


def validate_date(raw_input: Optional[str], now: datetime, min_year: int = 1900) -> FieldResult:
    """
    Accepts DD/MM/YYYY only. The date must exist on the calendar, fall in or
    after ``min_year`` and be a calendar day strictly before today. The parsed value is
    midnight UTC of that day.
    """
    candidate = (raw_input or "").strip()
    if not DATE_PATTERN.match(candidate):
        return _reject(INVALID_DATE, strings.INVALID_DATE)

    day, month, year = (int(part) for part in candidate.split("/"))
    try:
        parsed = datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return _reject(INVALID_DATE, strings.INVALID_DATE)

    if year < min_year or parsed.date() >= now.date():
        return _reject(INVALID_DATE, strings.INVALID_DATE)
    return _accept(DateValue(value=parsed))


def validate_choice(raw_input: Optional[str], options: Sequence[Option], input_mode: InputMode) -> FieldResult:
    candidate = (raw_input or "").strip()
    if not candidate:
        return _reject(EMPTY_INPUT, strings.INVALID_OPTION)

    if input_mode == InputMode.NUMBERED:
        if not NUMBER_PATTERN.match(candidate):
            return _reject(INVALID_CHOICE, strings.INVALID_OPTION)
        index = int(candidate)
        if not 1 <= index <= len(options):
            return _reject(INVALID_CHOICE, strings.INVALID_OPTION)
        return _accept(ChoiceValue(value=options[index - 1].value))

    for option in options:
        if option.token == candidate:
            return _accept(ChoiceValue(value=option.value))
    return _reject(INVALID_CHOICE, strings.INVALID_OPTION)


def validate_optional(raw_input: Optional[str], sentinel: str, reserved_tokens: FrozenSet[str]) -> FieldResult:
    if raw_input is not None and raw_input.strip().lower() == sentinel.lower():
        return _accept(None, absent=True)
    return validate_text(raw_input, reserved_tokens)


def validate_prescription(
    raw_input: Optional[str], attachment: Optional[Attachment], reserved_tokens: FrozenSet[str]
) -> FieldResult:
    if attachment is not None:
        return _accept(AttachmentValue(url=attachment.url, content_type=attachment.content_type))
    return validate_text(raw_input, reserved_tokens)


def validate_field(field_type: FieldType, raw_input: Optional[str], context: FieldContext) -> FieldResult:
    """Dispatches to the validator for ``field_type``."""
    attachment_only = context["attachment"] is not None and not (raw_input or "").strip()
    if attachment_only and field_type != FieldType.PRESCRIPTION:
        return _reject(UNSUPPORTED_INPUT, strings.UNSUPPORTED_INPUT)

    if field_type == FieldType.TEXT:
        return validate_text(raw_input, context["reserved_tokens"])
    if field_type == FieldType.DATE:
        return validate_date(raw_input, context["now"], context["min_birth_year"])
    if field_type == FieldType.CHOICE:
        return validate_choice(raw_input, context["options"], context["input_mode"])
    if field_type == FieldType.OPTIONAL:
        return validate_optional(raw_input, context["optional_sentinel"], context["reserved_tokens"])
    if field_type == FieldType.PRESCRIPTION:
        return validate_prescription(raw_input, context["attachment"], context["reserved_tokens"])
    raise ValueError(f"Field type '{field_type}' does not take input")
