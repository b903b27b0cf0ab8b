"""HERA kernel: smart codes and dynamic field types."""

from .field_types import FIELD_TYPES, FieldTypeMismatch, UnknownFieldType, coerce, field_type
from .smart_code import SMART_CODE_TYPES, SmartCode, build, parse, validate

__all__ = [
    "FIELD_TYPES",
    "FieldTypeMismatch",
    "SMART_CODE_TYPES",
    "SmartCode",
    "UnknownFieldType",
    "build",
    "coerce",
    "field_type",
    "parse",
    "validate",
]
