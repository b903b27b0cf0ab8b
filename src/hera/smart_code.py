"""HERA smart code grammar: HERA.{INDUSTRY}.{MODULE}.{TYPE}.{SUBTYPE}.V{N}."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List


Issue = Dict[str, Any]

PREFIX = "HERA"
SMART_CODE_TYPES = ("ENT", "REL", "DYN", "TXN", "WF")
SEGMENT_COUNT = 6

_SEGMENT_NAMES = ("prefix", "industry", "module", "type", "subtype", "version")
_LETTERS_RE = re.compile(r"[A-Z]+")
_VERSION_RE = re.compile(r"V[1-9][0-9]*")
_LEGACY_VERSION_RE = re.compile(r"v[1-9][0-9]*")
# STOCK_AT, PRICE2, HAS_CATEGORY
_LEGACY_SEGMENT_RE = re.compile(r"[A-Za-z][A-Za-z0-9]*(?:_[A-Za-z0-9]+)*")
_NON_LETTERS_RE = re.compile(r"[^A-Z]")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass(frozen=True)
class SmartCode:
    industry: str
    module: str
    type: str
    subtype: str
    version: int = 1

    def __str__(self) -> str:
        return f"{PREFIX}.{self.industry}.{self.module}.{self.type}.{self.subtype}.V{self.version}"

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(str(self).split("."))

    def with_version(self, version: int) -> "SmartCode":
        return build(self.industry, self.module, self.type, self.subtype, version)


def _normalize_segment(value: Any) -> str:
    letters = _NON_LETTERS_RE.sub("", str(value or "").upper())
    return letters or "X"


def _normalize_version(version: Any) -> int:
    if isinstance(version, bool):
        return 1
    if isinstance(version, str):
        version = version.strip().lstrip("Vv")
    try:
        number = int(version)
    except (TypeError, ValueError, OverflowError):
        return 1
    return number if number >= 1 else 1


def build(industry: Any, module: Any, type: Any, subtype: Any, version: Any = 1) -> SmartCode:
    """Assemble a smart code from free text.

    Every segment is reduced to uppercase ASCII letters. A segment left empty
    after normalization becomes ``X``, an unrecognised type becomes ``ENT`` and
    a version below 1 becomes 1, so the result always validates.
    """
    kind = _normalize_segment(type)
    if kind not in SMART_CODE_TYPES:
        kind = "ENT"
    return SmartCode(
        industry=_normalize_segment(industry),
        module=_normalize_segment(module),
        type=kind,
        subtype=_normalize_segment(subtype),
        version=_normalize_version(version),
    )


def _check_segment(index: int, segment: str, errors: List[Issue], warnings: List[Issue]) -> None:
    name = _SEGMENT_NAMES[index]
    path = f"segments[{index}]"
    if _LETTERS_RE.fullmatch(segment):
        if index == 3 and segment not in SMART_CODE_TYPES:
            errors.append(
                _issue(
                    "UNKNOWN_TYPE",
                    f"type must be one of {', '.join(SMART_CODE_TYPES)}",
                    path,
                    {"segment": segment},
                )
            )
        return
    if segment and _LETTERS_RE.fullmatch(segment.upper()):
        errors.append(_issue("NOT_UPPERCASE", f"{name} segment must be uppercase", path, {"segment": segment}))
        return
    errors.append(
        _issue(
            "INVALID_CHARACTERS",
            f"{name} segment must contain uppercase letters only",
            path,
            {"segment": segment},
        )
    )
    if _LEGACY_SEGMENT_RE.fullmatch(segment):
        warnings.append(
            _issue(
                "LEGACY_SEGMENT",
                f"{name} segment {segment!r} looks like a legacy code; use {_normalize_segment(segment)!r}",
                path,
                {"segment": segment, "suggested": _normalize_segment(segment)},
            )
        )


def validate(raw: Any) -> dict:
    errors: List[Issue] = []
    warnings: List[Issue] = []
    if not isinstance(raw, str):
        errors.append(_issue("MALFORMED_SEGMENT_COUNT", "smart code must be a string", None))
        return {"valid": False, "errors": errors, "warnings": warnings}

    segments = raw.split(".")
    if len(segments) != SEGMENT_COUNT:
        errors.append(
            _issue(
                "MALFORMED_SEGMENT_COUNT",
                f"smart code must have {SEGMENT_COUNT} segments, got {len(segments)}",
                None,
                {"count": len(segments)},
            )
        )
        return {"valid": False, "errors": errors, "warnings": warnings}

    if segments[0] != PREFIX:
        errors.append(_issue("INVALID_PREFIX", f"smart code must start with {PREFIX}", "segments[0]", {"segment": segments[0]}))

    for index in range(1, 5):
        _check_segment(index, segments[index], errors, warnings)

    version = segments[5]
    if not _VERSION_RE.fullmatch(version):
        errors.append(
            _issue(
                "BAD_VERSION_FORMAT",
                "version segment must be V followed by a positive integer",
                "segments[5]",
                {"segment": version},
            )
        )
        if _LEGACY_VERSION_RE.fullmatch(version):
            warnings.append(
                _issue(
                    "LEGACY_VERSION",
                    f"lowercase version {version!r}; use {version.upper()!r}",
                    "segments[5]",
                    {"segment": version, "suggested": version.upper()},
                )
            )

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def is_valid(raw: Any) -> bool:
    return validate(raw)["valid"]


def parse(raw: Any) -> SmartCode | None:
    if not validate(raw)["valid"]:
        return None
    _, industry, module, kind, subtype, version = raw.split(".")
    return SmartCode(industry=industry, module=module, type=kind, subtype=subtype, version=int(version[1:]))
