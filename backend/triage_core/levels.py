from __future__ import annotations

from typing import Any

from memory.models import ExternalTriageLevel, InvalidInput

from .models import InternalTriageLevel, UnhandledTriageLevel

_MAPPING: dict[InternalTriageLevel, ExternalTriageLevel] = {
    InternalTriageLevel.EMERGENCY: ExternalTriageLevel.EMERGENCY,
    InternalTriageLevel.URGENT: ExternalTriageLevel.URGENT,
    InternalTriageLevel.SOON: ExternalTriageLevel.SOON,
    InternalTriageLevel.NON_URGENT: ExternalTriageLevel.SELF_CARE,
    InternalTriageLevel.MONITOR: ExternalTriageLevel.SELF_CARE,
    InternalTriageLevel.SELF_CARE: ExternalTriageLevel.SELF_CARE,
}

_unmapped = set(InternalTriageLevel) - set(_MAPPING)
if _unmapped:
    raise UnhandledTriageLevel(
        "Internal triage levels without an external mapping: " + ", ".join(sorted(level.value for level in _unmapped))
    )


def map_to_external(level: Any) -> ExternalTriageLevel:
    if not isinstance(level, InternalTriageLevel):
        raise UnhandledTriageLevel(f"Unhandled internal triage level: {level!r}")
    try:
        return _MAPPING[level]
    except KeyError:
        raise UnhandledTriageLevel(f"Unhandled internal triage level: {level!r}") from None


def parse_internal_level(value: Any) -> InternalTriageLevel:
    if isinstance(value, InternalTriageLevel):
        return value
    cleaned = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return InternalTriageLevel(cleaned)
    except ValueError:
        allowed = ", ".join(level.value for level in InternalTriageLevel)
        raise InvalidInput(f"Unrecognized triage level '{value}'. Expected one of: {allowed}.") from None
