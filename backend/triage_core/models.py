from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from memory.models import AgeGroup, EngineError, Episode, ForWhom, Message, Role


class UnhandledTriageLevel(EngineError):
    pass


class InternalTriageLevel(str, Enum):
    EMERGENCY = "emergency"
    URGENT = "urgent"
    SOON = "soon"
    NON_URGENT = "non_urgent"
    MONITOR = "monitor"
    SELF_CARE = "self_care"


_PREGNANCY_RE = re.compile(r"\bpregnan(t|cy)\b", re.IGNORECASE)
_NOT_PREGNANT_RE = re.compile(r"\bnot\s+pregnant\b", re.IGNORECASE)


@dataclass(frozen=True)
class TriageContext:
    """What the engine knows about the person the conversation is about."""

    for_whom: ForWhom = ForWhom.SELF
    age: float | None = None
    age_group: AgeGroup | None = None
    relationship: str | None = None
    pregnant: bool = False

    @classmethod
    def from_episode(cls, episode: Episode, transcript: Sequence[Message] = ()) -> "TriageContext":
        return cls(
            for_whom=episode.for_whom,
            age=episode.age,
            age_group=episode.age_group,
            relationship=episode.relationship,
            pregnant=mentions_pregnancy(user_text(transcript)),
        )

    @property
    def is_infant(self) -> bool:
        return self.age_group == AgeGroup.INFANT

    @property
    def is_child(self) -> bool:
        return self.age_group in {AgeGroup.INFANT, AgeGroup.CHILD}

    @property
    def is_senior(self) -> bool:
        return self.age_group == AgeGroup.SENIOR


def user_messages(transcript: Sequence[Message]) -> list[str]:
    return [message.text for message in transcript if message.role == Role.USER]


def user_text(transcript: Sequence[Message]) -> str:
    return "\n".join(user_messages(transcript))


def mentions_pregnancy(text: str) -> bool:
    if not text or _NOT_PREGNANT_RE.search(text):
        return False
    return bool(_PREGNANCY_RE.search(text))
