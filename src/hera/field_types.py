"""Dynamic field value types and their coercion rules."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, ClassVar, Dict, Union


FIELD_TYPES = ("text", "number", "boolean", "date", "json")

STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
EDIT_FORMAT = "%Y-%m-%d"

_INT_RE = re.compile(r"[+-]?\d+")
_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_DATE_ONLY_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_SHORT_OFFSET_RE = re.compile(r"([+-]\d{2})$")


class FieldTypeMismatch(ValueError):
    """Raised when a value does not fit its declared field type."""

    code = "TYPE_MISMATCH"

    def __init__(self, field_type: str, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.field_type = field_type
        self.message = message
        self.path = path


class UnknownFieldType(ValueError):
    code = "UNKNOWN_FIELD_TYPE"

    def __init__(self, field_type: Any) -> None:
        super().__init__(f"Unknown field type: {field_type!r}")
        self.field_type = field_type


def _mismatch(field_type: str, value: Any, path: str | None, expected: str) -> FieldTypeMismatch:
    return FieldTypeMismatch(field_type, f"Expected {expected}, got {type(value).__name__}", path)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO-8601, date-only or Postgres-style text into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if _DATE_ONLY_RE.fullmatch(text):
            parsed = datetime.combine(date.fromisoformat(text), time.min)
        else:
            if text.endswith("Z") or text.endswith("z"):
                text = text[:-1] + "+00:00"
            text = _SHORT_OFFSET_RE.sub(r"\1:00", text)
            parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported date value: {type(value).__name__}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(STORAGE_FORMAT)


@dataclass(frozen=True)
class TextField:
    tag: ClassVar[str] = "text"

    def coerce(self, value: Any, path: str | None = None) -> str | None:
        if value is None or isinstance(value, str):
            return value
        raise _mismatch(self.tag, value, path, "text")


@dataclass(frozen=True)
class NumberField:
    tag: ClassVar[str] = "number"

    def coerce(self, value: Any, path: str | None = None) -> int | float | None:
        if value is None:
            return None
        if isinstance(value, bool):
            raise _mismatch(self.tag, value, path, "number")
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not math.isfinite(value):
                raise FieldTypeMismatch(self.tag, "Number must be finite", path)
            return value
        if isinstance(value, str):
            text = value.strip()
            if _INT_RE.fullmatch(text):
                return int(text)
            if _NUMBER_RE.fullmatch(text):
                number = float(text)
                if not math.isfinite(number):
                    raise FieldTypeMismatch(self.tag, "Number must be finite", path)
                return number
            raise FieldTypeMismatch(self.tag, f"Not a numeric string: {value!r}", path)
        raise _mismatch(self.tag, value, path, "number")


@dataclass(frozen=True)
class BooleanField:
    tag: ClassVar[str] = "boolean"

    def coerce(self, value: Any, path: str | None = None) -> bool | None:
        # no truthy-string coercion: "false" is not False
        if value is None or isinstance(value, bool):
            return value
        raise _mismatch(self.tag, value, path, "boolean")


@dataclass(frozen=True)
class DateField:
    """Stored as a full UTC timestamp, edited as ``yyyy-MM-dd``.

    A value without a time of day is midnight UTC.
    """

    tag: ClassVar[str] = "date"

    def coerce(self, value: Any, path: str | None = None) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, date)):
            raise _mismatch(self.tag, value, path, "date string")
        try:
            return format_timestamp(parse_timestamp(value))
        except ValueError:
            raise FieldTypeMismatch(self.tag, f"Unparseable date: {value!r}", path) from None

    def to_edit_value(self, stored: Any) -> str:
        if stored is None or stored == "":
            return ""
        return parse_timestamp(stored).strftime(EDIT_FORMAT)

    def from_edit_value(self, edit: Any, existing: Any = None, path: str | None = None) -> str | None:
        if edit is None or (isinstance(edit, str) and not edit.strip()):
            return None
        if not isinstance(edit, str) or not _DATE_ONLY_RE.fullmatch(edit.strip()):
            raise FieldTypeMismatch(self.tag, f"Expected yyyy-MM-dd, got {edit!r}", path)
        try:
            day = date.fromisoformat(edit.strip())
        except ValueError:
            raise FieldTypeMismatch(self.tag, f"Invalid calendar date: {edit!r}", path) from None
        clock = time.min
        if existing:
            clock = parse_timestamp(existing).time()
        return format_timestamp(datetime.combine(day, clock, tzinfo=timezone.utc))


def _check_json(obj: Any, path: str) -> None:
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise FieldTypeMismatch("json", f"Unsupported key type at {path}: {type(key).__name__}", path)
            _check_json(value, f"{path}.{key}")
        return
    if isinstance(obj, list):
        for idx, item in enumerate(obj):
            _check_json(item, f"{path}[{idx}]")
        return
    if obj is None or isinstance(obj, (str, int, bool)):
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise FieldTypeMismatch("json", f"Non-finite float at {path}: {obj!r}", path)
        return
    raise FieldTypeMismatch("json", f"Unsupported type at {path}: {type(obj).__name__}", path)


@dataclass(frozen=True)
class JsonField:
    tag: ClassVar[str] = "json"

    def coerce(self, value: Any, path: str | None = None) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                raise FieldTypeMismatch(self.tag, "Invalid JSON text", path) from None
        _check_json(value, "$")
        return value


FieldType = Union[TextField, NumberField, BooleanField, DateField, JsonField]

_FIELD_TYPES: Dict[str, FieldType] = {
    "text": TextField(),
    "number": NumberField(),
    "boolean": BooleanField(),
    "date": DateField(),
    "json": JsonField(),
}


def field_type(name: Any) -> FieldType:
    kind = _FIELD_TYPES.get(name) if isinstance(name, str) else None
    if kind is None:
        raise UnknownFieldType(name)
    return kind


def coerce(type_name: str, value: Any, path: str | None = None) -> Any:
    return field_type(type_name).coerce(value, path)


def to_edit_value(stored: Any) -> str:
    return _FIELD_TYPES["date"].to_edit_value(stored)


def from_edit_value(edit: Any, existing: Any = None) -> str | None:
    return _FIELD_TYPES["date"].from_edit_value(edit, existing)
