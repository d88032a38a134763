from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from memory.models import ForWhom, Message, Role

from .models import TriageContext, mentions_pregnancy, user_text

MAX_QUESTIONS = 2


class FollowUpGap(str, Enum):
    ONSET = "onset"
    LOCATION = "location"
    SEVERITY = "severity"
    ASSOCIATED_SYMPTOMS = "associated_symptoms"
    RISK_FACTORS = "risk_factors"


GAP_PRIORITY: tuple[FollowUpGap, ...] = (
    FollowUpGap.ONSET,
    FollowUpGap.LOCATION,
    FollowUpGap.SEVERITY,
    FollowUpGap.ASSOCIATED_SYMPTOMS,
    FollowUpGap.RISK_FACTORS,
)

# Each gap has one wording per subject; the transcript is checked against all
# of them so a gap asked in either voice is never asked again.
_QUESTIONS: dict[FollowUpGap, dict[str, str]] = {
    FollowUpGap.ONSET: {
        "self": "When did this start?",
        "other": "When did this start for them?",
    },
    FollowUpGap.LOCATION: {
        "self": "Where exactly do you feel it?",
        "other": "Where exactly does it hurt for them?",
    },
    FollowUpGap.SEVERITY: {
        "self": "On a scale of 1 to 10, how bad is it right now?",
        "other": "On a scale of 1 to 10, how bad does it seem for them right now?",
    },
    FollowUpGap.ASSOCIATED_SYMPTOMS: {
        "self": "Have you noticed anything else along with it, like fever, nausea or dizziness?",
        "other": "Have they had anything else along with it, like fever, vomiting or unusual sleepiness?",
    },
    FollowUpGap.RISK_FACTORS: {
        "self": "How old are you, and do you have any long-term health conditions or any chance of pregnancy?",
        "self_age_known": "Do you have any long-term health conditions, or is there any chance you could be pregnant?",
        "other": "Do they have any long-term health conditions?",
    },
}

_PAIN_RE = re.compile(r"\b(pain|pains|painful|ache|aches|aching|hurts?|hurting|sore|cramps?|cramping|tender)\b|\w+ache\b", re.IGNORECASE)
_ONSET_RE = re.compile(
    r"\b(since|ago|yesterday|today|tonight|last\s+(night|week|month)|this\s+(morning|afternoon|evening|week)|"
    r"started|began|begun|for\s+(a\s+few|\d+|two|three|several|a\s+couple\s+of)\s+\w+|all\s+day|overnight|"
    r"(an?|\d+|few|couple\s+of)\s+(minutes?|hours?|days?|weeks?|months?)|suddenly|just\s+now|on\s+and\s+off)\b",
    re.IGNORECASE,
)
_LOCATION_RE = re.compile(
    r"\b(head|forehead|temples?|face|jaw|teeth|tooth|ears?|eyes?|throat|neck|shoulders?|arms?|elbows?|wrists?|"
    r"hands?|fingers?|chest|ribs?|breasts?|spine|stomach|belly|abdomen|abdominal|tummy|hips?|groin|pelvis|pelvic|"
    r"legs?|thighs?|knees?|calf|calves|shins?|ankles?|foot|feet|toes?|joints?|muscles?|\w+aches?|migraines?|"
    r"(my|his|her|their|the|lower|upper)\s+back|(my|his|her|their|left|right)\s+side|all\s+over|everywhere)\b",
    re.IGNORECASE,
)
_SEVERITY_RE = re.compile(
    r"\b(\d{1,2})\s*(/|out\s+of)\s*10\b|\b(mild|mildly|slight|slightly|moderate|severe|severely|terrible|awful|"
    r"unbearable|excruciating|worst|manageable|tolerable|bearable|not\s+(too|that)\s+bad|really\s+bad|very\s+bad)\b",
    re.IGNORECASE,
)
_ASSOCIATED_RE = re.compile(
    r"\b(also|as\s+well|along\s+with|accompanied|no\s+other|nothing\s+else|that'?s\s+(it|all)|only\s+symptom|"
    r"just\s+the)\b",
    re.IGNORECASE,
)
_SYMPTOM_RE = re.compile(
    r"\b(fever|chills|nausea|nauseous|vomit\w*|throwing\s+up|dizz\w*|cough\w*|rash|diarrh?ea|fatigue|tired|"
    r"headache|sore\s+throat|runny\s+nose|congest\w*|sweat\w*|swelling|numb\w*|weak\w*|short\s+of\s+breath|"
    r"shortness\s+of\s+breath)\b",
    re.IGNORECASE,
)
_AGE_RE = re.compile(r"\b\d{1,3}\s*(years?|yrs?|y/o|yo)\b|\b(i'?m|i\s+am|aged?)\s+\d{1,3}\b", re.IGNORECASE)
_CONDITION_RE = re.compile(
    r"\b(diabet\w*|asthma|copd|hypertension|high\s+blood\s+pressure|heart\s+(disease|condition)|cancer|"
    r"kidney\s+disease|liver\s+disease|immunocompromised|hiv|epilepsy|chronic|condition|take\s+\w+|"
    r"medication|medicine)\b",
    re.IGNORECASE,
)
_NO_RISK_RE = re.compile(
    r"\b(no\s+(other\s+)?(long[- ]term\s+|chronic\s+|medical\s+|health\s+)?(conditions?|problems|issues)|"
    r"none|nope|not\s+pregnant|otherwise\s+healthy|generally\s+healthy|healthy\s+otherwise)\b",
    re.IGNORECASE,
)


@dataclass
class FollowUpDecision:
    questions: list[str] = field(default_factory=list)
    gaps: list[FollowUpGap] = field(default_factory=list)

    @property
    def needed(self) -> bool:
        return bool(self.questions)


def _voice(context: TriageContext) -> str:
    return "other" if context.for_whom == ForWhom.FAMILY_MEMBER else "self"


def _question_for(gap: FollowUpGap, context: TriageContext) -> str:
    variants = _QUESTIONS[gap]
    voice = _voice(context)
    if gap == FollowUpGap.RISK_FACTORS and voice == "self" and context.age is not None:
        return variants["self_age_known"]
    return variants[voice]


def _already_asked(gap: FollowUpGap, transcript: Sequence[Message]) -> bool:
    assistant_text = "\n".join(m.text for m in transcript if m.role == Role.ASSISTANT).lower()
    if not assistant_text:
        return False
    return any(variant.lower() in assistant_text for variant in _QUESTIONS[gap].values())


def is_pain_complaint(text: str) -> bool:
    return bool(_PAIN_RE.search(text or ""))


class FollowUpEngine:
    """Picks at most two clarifying questions from what the transcript is missing.

    Stateless: everything it needs is in the transcript and the context.
    """

    def __init__(self, max_questions: int = MAX_QUESTIONS) -> None:
        self.max_questions = max(0, min(MAX_QUESTIONS, max_questions))

    def applicable_gaps(self, transcript: Sequence[Message]) -> list[FollowUpGap]:
        text = user_text(transcript)
        return [gap for gap in GAP_PRIORITY if gap != FollowUpGap.LOCATION or is_pain_complaint(text)]

    def is_filled(self, gap: FollowUpGap, transcript: Sequence[Message], context: TriageContext) -> bool:
        if _already_asked(gap, transcript):
            return True
        text = user_text(transcript)
        if gap == FollowUpGap.ONSET:
            return bool(_ONSET_RE.search(text))
        if gap == FollowUpGap.LOCATION:
            return bool(_LOCATION_RE.search(text))
        if gap == FollowUpGap.SEVERITY:
            return bool(_SEVERITY_RE.search(text))
        if gap == FollowUpGap.ASSOCIATED_SYMPTOMS:
            distinct = {match.group(0).lower() for match in _SYMPTOM_RE.finditer(text)}
            return bool(_ASSOCIATED_RE.search(text)) or len(distinct) >= 2
        if gap == FollowUpGap.RISK_FACTORS:
            age_known = context.age is not None or bool(_AGE_RE.search(text))
            history_known = (
                context.pregnant
                or mentions_pregnancy(text)
                or bool(_CONDITION_RE.search(text))
                or bool(_NO_RISK_RE.search(text))
            )
            return age_known and history_known
        raise ValueError(f"Unknown follow-up gap: {gap!r}")

    def open_gaps(self, transcript: Sequence[Message], context: TriageContext) -> list[FollowUpGap]:
        return [gap for gap in self.applicable_gaps(transcript) if not self.is_filled(gap, transcript, context)]

    def next_questions(self, transcript: Sequence[Message], context: TriageContext | None = None) -> FollowUpDecision:
        context = context or TriageContext()
        gaps = self.open_gaps(transcript, context)[: self.max_questions]
        return FollowUpDecision(questions=[_question_for(gap, context) for gap in gaps], gaps=gaps)

    def completeness(self, transcript: Sequence[Message], context: TriageContext | None = None) -> int:
        context = context or TriageContext()
        applicable = self.applicable_gaps(transcript)
        if not applicable:
            return 100
        filled = sum(1 for gap in applicable if self.is_filled(gap, transcript, context))
        return int(filled * 100 / len(applicable) + 0.5)
