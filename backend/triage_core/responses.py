from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from memory.models import ExternalTriageLevel, ForWhom

from .emergency import CALL_EMERGENCY, EmergencyVerdict
from .models import TriageContext, UnhandledTriageLevel


@dataclass(frozen=True)
class CallToAction:
    label: str
    action: str


@dataclass(frozen=True)
class CTAConfig:
    primary: CallToAction
    variant: str
    secondary: CallToAction | None = None
    hint: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "primary": {"label": self.primary.label, "action": self.primary.action, "variant": self.variant},
            "secondary": (
                {"label": self.secondary.label, "action": self.secondary.action} if self.secondary else None
            ),
            "hint": self.hint,
        }


_CTA: dict[ExternalTriageLevel, CTAConfig] = {
    ExternalTriageLevel.EMERGENCY: CTAConfig(
        primary=CallToAction("Call emergency services", "emergency_call"),
        variant="emergency",
        secondary=CallToAction("Find nearest ER", "find_er"),
        hint="Do not delay seeking care",
    ),
    ExternalTriageLevel.URGENT: CTAConfig(
        primary=CallToAction("Talk to a doctor today", "connect_doctor"),
        variant="urgent",
        secondary=CallToAction("Book a home visit", "book_home_visit"),
        hint="Same-day consultations available",
    ),
    ExternalTriageLevel.SOON: CTAConfig(
        primary=CallToAction("Schedule a teleconsult", "schedule_teleconsult"),
        variant="primary",
        secondary=CallToAction("Home visit options", "home_visit_options"),
        hint="Book at your convenience",
    ),
    ExternalTriageLevel.SELF_CARE: CTAConfig(
        primary=CallToAction("See self-care tips", "self_care_tips"),
        variant="default",
        secondary=CallToAction("Talk to a doctor if needed", "connect_doctor"),
        hint="Monitor and follow up if things change",
    ),
}


def cta_for(level: ExternalTriageLevel) -> CTAConfig:
    try:
        return _CTA[level]
    except KeyError:
        raise UnhandledTriageLevel(f"No call to action for triage level: {level!r}") from None


_ASSESSMENTS: dict[ExternalTriageLevel, str] = {
    ExternalTriageLevel.EMERGENCY: (
        "Based on what you've shared, this needs emergency care now. " + CALL_EMERGENCY
    ),
    ExternalTriageLevel.URGENT: (
        "Based on what you've shared, it would be best to speak with a doctor today. "
        "If anything gets suddenly worse, call emergency services."
    ),
    ExternalTriageLevel.SOON: (
        "Based on what you've shared, it's worth arranging a visit with a doctor in the next few days. "
        "Keep an eye on how things change in the meantime."
    ),
    ExternalTriageLevel.SELF_CARE: (
        "Based on what you've shared, this can most likely be looked after at home for now. "
        "Rest, fluids and simple comfort measures often help. "
        "If it isn't improving in a few days, or new symptoms appear, check in with a doctor."
    ),
}

DISCLAIMER = "This is general guidance, not a diagnosis."


def _subject_phrase(context: TriageContext) -> str:
    if context.for_whom == ForWhom.FAMILY_MEMBER:
        return f"your {context.relationship}" if context.relationship else "them"
    return "you"


def assessment_message(level: ExternalTriageLevel, context: TriageContext) -> str:
    try:
        body = _ASSESSMENTS[level]
    except KeyError:
        raise UnhandledTriageLevel(f"No assessment text for triage level: {level!r}") from None
    if context.for_whom == ForWhom.FAMILY_MEMBER:
        body = body.replace("this can", f"this for {_subject_phrase(context)} can")
    return f"{body}\n\n{DISCLAIMER}"


def follow_up_message(questions: list[str], context: TriageContext, *, first_turn: bool) -> str:
    if first_turn:
        opener = (
            "Thanks for telling me. A couple of quick questions so I can help"
            if len(questions) > 1
            else "Thanks for telling me. One quick question so I can help"
        )
        opener += " with " + ("this for them." if context.for_whom == ForWhom.FAMILY_MEMBER else "this.")
    else:
        opener = "Thanks, that helps."
    return opener + "\n\n" + "\n".join(questions)


def escalation_message(verdict: EmergencyVerdict) -> str:
    lines = [
        "I'm concerned about what you've described, and I want to make sure you get help right away.",
    ]
    if verdict.descriptions:
        lines.append("What stood out: " + "; ".join(verdict.descriptions[:3]).lower() + ".")
    lines.append(verdict.immediate_action or CALL_EMERGENCY)
    lines.append("If you are with someone, let them know what is happening. Please don't wait to see if it passes.")
    return "\n\n".join(lines)


def reinforcement_message(verdict: EmergencyVerdict | None = None) -> str:
    action = verdict.immediate_action if verdict and verdict.immediate_action else CALL_EMERGENCY
    return (
        "What you described earlier still needs emergency attention. "
        f"{action}\n\nI can't continue the assessment here; please reach out for help now."
    )
