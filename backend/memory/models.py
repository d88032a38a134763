from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class EngineError(Exception):
    pass


class NotFound(EngineError):
    pass


class InvalidInput(EngineError):
    pass


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ForWhom(str, Enum):
    SELF = "self"
    FAMILY_MEMBER = "family_member"


class AgeGroup(str, Enum):
    INFANT = "infant"
    CHILD = "child"
    TEEN = "teen"
    ADULT = "adult"
    SENIOR = "senior"


class ExternalTriageLevel(str, Enum):
    EMERGENCY = "emergency"
    URGENT = "urgent"
    SOON = "soon"
    SELF_CARE = "self_care"


class FeedbackRating(str, Enum):
    HELPFUL = "helpful"
    NOT_HELPFUL = "not_helpful"


class FeedbackReason(str, Enum):
    TOO_LONG = "too_long"
    DIDNT_ANSWER = "didnt_answer"
    FELT_UNSAFE = "felt_unsafe"
    OTHER = "other"


FEEDBACK_REASON_LABELS = {
    FeedbackReason.TOO_LONG: "Too long",
    FeedbackReason.DIDNT_ANSWER: "Didn't answer",
    FeedbackReason.FELT_UNSAFE: "Felt unsafe",
    FeedbackReason.OTHER: "Other",
}


class MemoryType(str, Enum):
    ALLERGY = "allergy"
    CONDITION = "condition"
    MEDICATION = "medication"
    PREFERENCE = "preference"
    TRIGGER = "trigger"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def coerce_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidInput(f"Unrecognized {field_name} '{value}'. Expected one of: {allowed}.") from None


def age_group_for(age: float | None) -> AgeGroup | None:
    if age is None:
        return None
    if age < 1:
        return AgeGroup.INFANT
    if age <= 12:
        return AgeGroup.CHILD
    if age <= 17:
        return AgeGroup.TEEN
    if age <= 64:
        return AgeGroup.ADULT
    return AgeGroup.SENIOR


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    return value


class _Record:
    def as_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))


@dataclass
class Episode(_Record):
    id: str
    user_id: str
    title: str
    for_whom: ForWhom
    created_at: str
    updated_at: str
    last_message_snippet: str
    message_count: int
    is_active: bool = True
    age: float | None = None
    age_group: AgeGroup | None = None
    relationship: str | None = None
    triage_level: ExternalTriageLevel | None = None
    escalated: bool = False


@dataclass
class Message(_Record):
    id: str
    episode_id: str
    role: Role
    text: str
    created_at: str
    seq: int = 0


@dataclass
class FeedbackEntry(_Record):
    id: str
    user_id: str
    episode_id: str
    message_id: str
    rating: FeedbackRating
    created_at: str
    reason: FeedbackReason | None = None
    custom_reason: str | None = None
    message_snippet: str | None = None


@dataclass
class MemoryCandidate(_Record):
    id: str
    type: MemoryType
    label: str
    value: str
    confidence: Confidence
    reason: str | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "label": self.label,
            "value": self.value,
            "confidence": self.confidence.value,
        }


@dataclass
class MemoryItem(_Record):
    id: str
    user_id: str
    type: MemoryType
    label: str
    value: str
    confidence: Confidence
    source: str
    created_at: str
    updated_at: str
    source_episode_id: str | None = None


@dataclass
class SessionContext:
    """Per-session state passed explicitly to every episode operation.

    ``active_episode_id`` starts as ``None`` and is overwritten by start,
    resume, close and delete; the last writer wins.
    """

    user_id: str
    session_key: str
    active_episode_id: str | None = None
