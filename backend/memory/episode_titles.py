from __future__ import annotations

from .models import AgeGroup, ForWhom

DEFAULT_TITLE = "Health concern"

# First match wins, so more specific phrases sit above generic ones.
_TITLE_PATTERNS: list[tuple[tuple[str, ...], str]] = [
    (("rash", "hives", "itchy skin", "skin rash"), "Rash / Skin concern"),
    (("acne", "pimple", "breakout"), "Skin breakout"),
    (("heartburn", "acid reflux", "indigestion"), "Heartburn / Reflux"),
    (("sunburn", "burn"), "Burn"),
    (("wound", "bleeding", "cut myself", "a cut"), "Wound / Cut"),
    (("bruise", "swelling"), "Bruise / Swelling"),
    (("cough", "coughing"), "Cough"),
    (("runny nose", "stuffy nose", "congestion", "a cold"), "Cold symptoms"),
    (("sore throat", "throat pain", "strep"), "Sore throat"),
    (("breathing", "breathless", "short of breath", "shortness of breath", "asthma"), "Breathing difficulty"),
    (("chest pain", "chest tight", "chest pressure"), "Chest discomfort"),
    (("fever", "temperature", "chills"), "Fever"),
    (("flu", "body ache", "fatigue", "tired", "weak"), "Flu-like symptoms"),
    (("stomach", "belly", "abdominal"), "Stomach pain"),
    (("nausea", "vomiting", "throwing up"), "Nausea / Vomiting"),
    (("diarrhea", "loose stool", "bowel"), "Digestive issue"),
    (("constipation", "bloating", "gas"), "Digestive discomfort"),
    (("headache", "head pain", "migraine"), "Headache"),
    (("dizzy", "dizziness", "vertigo", "lightheaded"), "Dizziness"),
    (("eye", "vision", "blurry"), "Eye concern"),
    (("earache", "ear pain", "hearing"), "Ear pain"),
    (("allergy", "allergic", "sneezing"), "Allergy symptoms"),
    (("back pain", "lower back", "spine"), "Back pain"),
    (("neck pain", "stiff neck"), "Neck pain"),
    (("knee", "joint", "arthritis"), "Joint pain"),
    (("muscle", "cramp", "sprain", "strain"), "Muscle pain"),
    (("ankle", "foot", "toe"), "Foot / Ankle issue"),
    (("shoulder", "elbow", "wrist", "hand", "arm"), "Arm / Hand pain"),
    (("anxiety", "anxious", "panic", "nervous"), "Anxiety"),
    (("stress", "stressed", "overwhelmed"), "Stress"),
    (("sleep", "insomnia"), "Sleep issues"),
    (("depress", "mood", "feeling down"), "Mood concern"),
    (("urin", "pee", "bladder", "uti"), "Urinary concern"),
    (("blood pressure", "hypertension"), "Blood pressure"),
    (("diabetes", "blood sugar", "glucose"), "Blood sugar"),
    (("tooth", "dental", "gum"), "Dental issue"),
    (("period", "menstrual"), "Menstrual concern"),
    (("pregnant", "pregnancy"), "Pregnancy question"),
    (("pain", "ache", "hurt", "sore"), "Pain"),
]

_RELATIONSHIP_PREFIXES = {
    "child": "Child",
    "son": "Child",
    "daughter": "Child",
    "father": "Parent",
    "mother": "Parent",
    "parent": "Parent",
    "spouse": "Spouse",
    "partner": "Spouse",
    "husband": "Spouse",
    "wife": "Spouse",
}


def _title_prefix(age_group: AgeGroup | None, relationship: str | None) -> str | None:
    if age_group in {AgeGroup.INFANT, AgeGroup.CHILD}:
        return "Child"
    if age_group == AgeGroup.SENIOR:
        return "Senior"
    if relationship:
        cleaned = relationship.strip()
        if not cleaned:
            return None
        return _RELATIONSHIP_PREFIXES.get(cleaned.lower(), cleaned[:1].upper() + cleaned[1:])
    return None


def generate_episode_title(
    symptom_text: str,
    for_whom: ForWhom,
    age_group: AgeGroup | None = None,
    relationship: str | None = None,
) -> str:
    lowered = symptom_text.lower()
    base_title = DEFAULT_TITLE
    for keywords, title in _TITLE_PATTERNS:
        if any(keyword in lowered for keyword in keywords):
            base_title = title
            break

    if for_whom == ForWhom.FAMILY_MEMBER:
        prefix = _title_prefix(age_group, relationship)
        if prefix:
            return f"{prefix}: {base_title}"
    return base_title
