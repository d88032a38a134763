from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from memory.models import ExternalTriageLevel

from .levels import map_to_external
from .models import InternalTriageLevel, TriageContext

logger = logging.getLogger(__name__)

# Rules at or above this weight escalate on their own; lighter matches are
# reported as warnings and left to the classifier.
EMERGENCY_THRESHOLD = 40

CALL_EMERGENCY = "Call emergency services (911) now or go to the nearest emergency room."
CRISIS_LINE = (
    "Please call or text 988 (Suicide & Crisis Lifeline) now, or go to your nearest emergency room. "
    "You are not alone, and help is available 24/7."
)
POISON_CONTROL = (
    "Call 911 or Poison Control (1-800-222-1222) immediately. "
    "If this was intentional, also call or text 988 (Suicide & Crisis Lifeline)."
)


@dataclass(frozen=True)
class RedFlagRule:
    id: str
    pattern: re.Pattern[str]
    category: str
    weight: int
    description: str
    immediate_action: str = CALL_EMERGENCY
    requires: frozenset[str] = frozenset()
    max_age: float | None = None

    def applies_to(self, context: TriageContext) -> bool:
        if self.max_age is not None and (context.age is None or context.age > self.max_age):
            return False
        if not self.requires:
            return True
        checks = {
            "pregnancy": context.pregnant,
            "infant": context.is_infant,
            "child": context.is_child,
            "senior": context.is_senior,
        }
        return any(checks[requirement] for requirement in self.requires)


def _rule(
    rule_id: str,
    pattern: str,
    category: str,
    weight: int,
    description: str,
    *,
    action: str = CALL_EMERGENCY,
    requires: tuple[str, ...] = (),
    max_age: float | None = None,
) -> RedFlagRule:
    return RedFlagRule(
        id=rule_id,
        pattern=re.compile(pattern, re.IGNORECASE),
        category=category,
        weight=weight,
        description=description,
        immediate_action=action,
        requires=frozenset(requires),
        max_age=max_age,
    )


RED_FLAG_RULES: tuple[RedFlagRule, ...] = (
    # cardiac
    _rule("cardiac_chest_pain", r"chest\s*(pain|tightness|pressure|discomfort)", "cardiac", 50, "Chest pain or tightness"),
    _rule("cardiac_heart_attack", r"heart\s*attack", "cardiac", 50, "Heart attack symptoms"),
    _rule(
        "cardiac_arm_pain",
        r"left\s*arm.*(pain|numb)|arm\s*(pain|numbness).*(left|chest)",
        "cardiac",
        45,
        "Left arm pain or numbness",
    ),
    # respiratory
    _rule("respiratory_cant_breathe", r"can('?t| ?not)\s*breathe", "respiratory", 50, "Unable to breathe"),
    _rule(
        "respiratory_severe_sob",
        r"(severe|sudden|extreme)\s*shortness\s*of\s*breath",
        "respiratory",
        45,
        "Severe shortness of breath",
    ),
    _rule(
        "respiratory_sob_with_chest",
        r"shortness\s*of\s*breath.*chest|chest.*(short(ness)?\s*of\s*breath|breathless)",
        "respiratory",
        50,
        "Shortness of breath with chest symptoms",
    ),
    _rule(
        "respiratory_difficulty",
        r"difficulty\s*breathing|breathing\s*(is\s*)?(very\s*)?(hard|difficult)|struggling\s*to\s*breathe",
        "respiratory",
        40,
        "Difficulty breathing",
    ),
    _rule("respiratory_blue_lips", r"(blue|purple|gr[ae]y)\s*(lips|fingernails|skin)|cyanosis", "respiratory", 50, "Blue lips or skin"),
    # neurological
    _rule(
        "neuro_thunderclap_headache",
        r"worst\s*headache|thunderclap\s*headache|sudden\s*severe\s*headache",
        "neurological",
        50,
        "Worst headache of their life",
    ),
    _rule("neuro_stroke_signs", r"face\s*(droop|drooping|numb)|slurred?\s*speech|\bstroke\b", "neurological", 50, "Stroke warning signs"),
    _rule("neuro_sudden_weakness", r"sudden\s*(confusion|weakness|numbness|paralysis)", "neurological", 50, "Sudden neurological change"),
    _rule(
        "neuro_loss_consciousness",
        r"loss\s*of\s*(vision|consciousness)|passed\s*out|fainted|unconscious",
        "neurological",
        45,
        "Loss of consciousness or vision",
    ),
    _rule("neuro_seizure", r"\bseizures?\b|\bconvuls(ion|ions|ing)\b", "neurological", 45, "Seizure"),
    _rule(
        "neuro_neck_stiffness_fever",
        r"(stiff\s*neck|neck\s*(is\s*)?stiff).*(fever|headache)|(fever|headache).*(stiff\s*neck|neck\s*(is\s*)?stiff)",
        "neurological",
        50,
        "Stiff neck with fever",
    ),
    # bleeding
    _rule("bleeding_severe", r"(severe|heavy|uncontrolled|profuse)\s*bleeding|won'?t\s*stop\s*bleeding", "bleeding", 50, "Severe bleeding"),
    _rule("bleeding_blood_vomit", r"vomit(ing|ed)?\s*blood|blood\s*in\s*(my\s*)?vomit", "bleeding", 45, "Vomiting blood"),
    _rule("bleeding_blood_stool", r"blood\s*in\s*(my\s*)?(stool|poop)|bloody\s*(stool|diarrh?ea)|black\s*tarry", "bleeding", 40, "Blood in stool"),
    _rule("bleeding_coughing_blood", r"coughing\s*(up\s*)?blood", "bleeding", 45, "Coughing up blood"),
    # mental health
    _rule(
        "mental_suicidal",
        r"(want|going|plan(ning)?)\s*to\s*(kill|end)\s*(myself|my\s*life)|suicid(e|al)",
        "mental_health",
        50,
        "Thoughts of suicide",
        action=CRISIS_LINE,
    ),
    _rule("mental_self_harm", r"self[- ]?harm|cutting\s*myself", "mental_health", 45, "Self-harm", action=CRISIS_LINE),
    _rule(
        "mental_overdose",
        r"overdos(e|ed|ing)|took\s*too\s*many\s*(pills|tablets|medications?)",
        "overdose",
        50,
        "Possible overdose",
        action=POISON_CONTROL,
    ),
    # allergic
    _rule("allergic_throat", r"throat\s*(is\s*)?(closing|swelling|swollen)|swollen\s*throat", "allergic", 50, "Throat swelling"),
    _rule("allergic_cant_swallow", r"can('?t| ?not)\s*swallow", "allergic", 50, "Unable to swallow"),
    _rule("allergic_anaphylaxis", r"anaphyla(xis|ctic)|severe\s*allergic\s*reaction", "allergic", 50, "Anaphylaxis"),
    # trauma
    _rule("trauma_head_injury", r"head\s*(injury|trauma)", "trauma", 45, "Head injury"),
    _rule("trauma_major", r"major\s*(accident|injury|trauma)|serious\s*accident|car\s*(crash|accident)", "trauma", 45, "Major accident"),
    _rule("trauma_hit_head", r"hit\s*(my|his|her|their)?\s*head", "trauma", 35, "Hit their head"),
    # infection
    _rule("infection_sepsis", r"sepsis|septic|blood\s*poisoning", "infection", 50, "Possible sepsis"),
    _rule("infection_high_fever", r"fever\s*(of\s*)?(over|above)?\s*(103|104|105)|\b(103|104|105)\s*(degrees|f\b)", "infection", 35, "High fever"),
    # pediatric
    _rule(
        "peds_young_infant_fever",
        r"fever|temperature|\bhot\b",
        "pediatric",
        50,
        "Fever in a baby under 3 months",
        requires=("infant",),
        max_age=0.25,
    ),
    _rule("peds_lethargy", r"letharg(ic|y)|hard\s*to\s*wake|difficult\s*to\s*wake|\bfloppy\b|unresponsive", "pediatric", 50, "Very sleepy or hard to wake", requires=("child",)),
    _rule("peds_rash_fever", r"rash.*fever|fever.*rash|petechia", "pediatric", 50, "Rash with fever", requires=("child",)),
    _rule("peds_fontanelle", r"(bulging|sunken)\s*(soft\s*spot|fontanel)", "pediatric", 50, "Bulging or sunken soft spot", requires=("infant",)),
    _rule("peds_rib_retractions", r"rib\s*retraction|sucking\s*in\s*(chest|ribs)|chest\s*(retraction|caving)", "pediatric", 45, "Chest pulling in with breaths", requires=("child",)),
    _rule("peds_no_wet_diapers", r"(no|fewer|few)\s*wet\s*diapers?|dry\s*diapers?", "pediatric", 45, "Fewer wet diapers", requires=("child",)),
    _rule("peds_not_feeding", r"(not|won'?t|refus(es|ing))\s*(eat|eating|feed|feeding|drink|drinking|nurse|nursing)", "pediatric", 40, "Not eating or drinking", requires=("child",)),
    _rule("peds_inconsolable", r"inconsolable|won'?t\s*stop\s*crying|high[- ]pitched\s*cry", "pediatric", 40, "Inconsolable crying", requires=("child",)),
    # pregnancy
    _rule("preg_vaginal_bleeding", r"vaginal\s*bleed(ing)?|bleeding\s*from\s*(the\s*)?vagina", "pregnancy", 50, "Bleeding in pregnancy", requires=("pregnancy",)),
    _rule(
        "preg_preeclampsia",
        r"preeclampsia|headache.*(vision|blurr|swelling)|(vision|blurr).*headache",
        "pregnancy",
        50,
        "Preeclampsia warning signs",
        requires=("pregnancy",),
    ),
    _rule(
        "preg_decreased_movement",
        r"(decreased|less|no|reduced)\s*(fetal\s*)?movement|baby\s*(is\s*)?(not|stopped)\s*moving",
        "pregnancy",
        45,
        "Less movement from the baby",
        requires=("pregnancy",),
    ),
    _rule("preg_leaking_fluid", r"leaking\s*(amniotic\s*)?fluid|water\s*(broke|breaking)", "pregnancy", 40, "Leaking fluid", requires=("pregnancy",)),
    # senior
    _rule("senior_fall", r"\b(fall|fell|fallen)\b", "trauma", 35, "Fall in an older adult", requires=("senior",)),
    _rule(
        "senior_sudden_confusion",
        r"sudden(ly)?\s*confus|acute\s*confusion|delirium|not\s*making\s*sense",
        "neurological",
        45,
        "Sudden confusion in an older adult",
        requires=("senior",),
    ),
)


@dataclass
class EmergencyVerdict:
    is_emergency: bool
    rule_ids: list[str] = field(default_factory=list)
    descriptions: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    confidence: float = 0.0
    immediate_action: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "is_emergency": self.is_emergency,
            "rule_ids": list(self.rule_ids),
            "descriptions": list(self.descriptions),
            "categories": list(self.categories),
            "warnings": list(self.warnings),
            "confidence": self.confidence,
            "immediate_action": self.immediate_action,
        }


def _primary_action(matched: list[RedFlagRule]) -> str:
    for category in ("overdose", "mental_health"):
        for rule in matched:
            if rule.category == category:
                return rule.immediate_action
    return CALL_EMERGENCY


class EmergencyDetector:
    def __init__(self, rules: tuple[RedFlagRule, ...] = RED_FLAG_RULES) -> None:
        self.rules = rules

    def screen(
        self,
        text: str,
        context: TriageContext | None = None,
        internal_level: InternalTriageLevel | None = None,
    ) -> EmergencyVerdict:
        context = context or TriageContext()
        cleaned = (text or "").strip()
        matched: list[RedFlagRule] = []
        warnings: list[str] = []
        for rule in self.rules:
            if not rule.applies_to(context) or not rule.pattern.search(cleaned):
                continue
            if rule.weight >= EMERGENCY_THRESHOLD:
                matched.append(rule)
            else:
                warnings.append(rule.description)

        level_says_emergency = internal_level == InternalTriageLevel.EMERGENCY
        if not matched and not level_says_emergency:
            return EmergencyVerdict(is_emergency=False, warnings=warnings)

        if matched:
            top_weight = max(rule.weight for rule in matched)
            confidence = min(0.5 + len(matched) * 0.15 + (top_weight / 50) * 0.3, 1.0)
        else:
            confidence = 0.7
        verdict = EmergencyVerdict(
            is_emergency=True,
            rule_ids=[rule.id for rule in matched],
            descriptions=[rule.description for rule in matched],
            categories=sorted({rule.category for rule in matched}),
            warnings=warnings,
            confidence=round(confidence, 2),
            immediate_action=_primary_action(matched),
        )
        logger.warning(
            "emergency signal rules=%s level=%s confidence=%.2f",
            ",".join(verdict.rule_ids) or "-",
            internal_level.value if internal_level else "-",
            verdict.confidence,
        )
        return verdict


def reconcile(verdict: EmergencyVerdict, internal_level: InternalTriageLevel) -> ExternalTriageLevel:
    if verdict.is_emergency:
        return ExternalTriageLevel.EMERGENCY
    return map_to_external(internal_level)
