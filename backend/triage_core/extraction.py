from __future__ import annotations

import re
import uuid
from typing import Sequence

from memory.models import Confidence, MemoryCandidate, MemoryType, Message

from .models import user_messages

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?;\n])\s+")
_SKIP_RE = re.compile(
    r"\b(maybe|might|perhaps|possibly|probably|could\s+it\s+be|could\s+be|i\s+think\s+i\s+(have|might)|"
    r"not\s+sure|wonder|what\s+if|used\s+to|if\s+i)\b",
    re.IGNORECASE,
)
_NEGATION_RE = re.compile(r"\b(not|no|never|none|don'?t|doesn'?t|didn'?t|isn'?t|aren'?t|stopped|quit)\b|n't\b", re.IGNORECASE)

_ALLERGY_TO_RE = re.compile(
    r"\b(?:i'?m|i\s+am|i'?ve\s+always\s+been)\s+allergic\s+to\s+"
    r"([a-z][a-z\- ]{1,40}?)\s*(?:[.,;!]|$|\band\b|\bbut\b|\bso\b)",
    re.IGNORECASE,
)
_ALLERGY_NOUN_RE = re.compile(r"\bi\s+have\s+(?:an?\s+)?([a-z][a-z\-]{2,30})\s+allergy\b", re.IGNORECASE)
_MEDICATION_RE = re.compile(
    r"\b(?:i\s+take|i'?m\s+taking|i\s+am\s+taking|i'?m\s+on|i\s+am\s+on|i\s+use)\s+"
    r"([a-z][a-z0-9\- ]{1,40}?)\s*(?:\bfor\b|\bevery\b|\bdaily\b|\btwice\b|\bonce\b|\beach\b|[.,;!]|$)",
    re.IGNORECASE,
)
_CONDITION_TRIGGER_RE = re.compile(
    r"\b(?:i\s+have|i'?ve\s+got|i\s+suffer\s+from|i'?ve\s+had|(?:i\s+was\s+|i'?m\s+|i\s+am\s+)?diagnosed\s+with)\s+",
    re.IGNORECASE,
)
_PREFERENCE_RE = re.compile(
    r"\bi\s+(?:prefer|'d\s+prefer|would\s+prefer|'d\s+rather\s+(?:use|try|have)|like\s+to\s+(?:use|try))\s+"
    r"([a-z][a-z\- ]{2,40}?)\s*(?:[.,;!]|$|\bover\b|\binstead\b|\bwhen\b|\bif\b)",
    re.IGNORECASE,
)
_TRIGGER_RE = re.compile(
    r"\b([a-z][a-z\- ]{1,30}?)\s+(?:always\s+)?(?:triggers|sets\s+off|brings\s+on)\s+my\s+([a-z][a-z ]{2,30}?)\s*(?:[.,;!]|$)",
    re.IGNORECASE,
)
_TRIGGER_WHEN_RE = re.compile(
    r"\b(?:whenever|every\s+time)\s+i\s+(?:eat|drink|have)\s+([a-z][a-z\- ]{1,30}?)(?=\s*(?:[.,;!]|$|\bmy\b|\bi\b|\bit\b))",
    re.IGNORECASE,
)

_CHRONIC_CONDITIONS = (
    "type 1 diabetes",
    "type 2 diabetes",
    "diabetes",
    "asthma",
    "high blood pressure",
    "hypertension",
    "high cholesterol",
    "migraines",
    "eczema",
    "psoriasis",
    "rheumatoid arthritis",
    "arthritis",
    "copd",
    "epilepsy",
    "hypothyroidism",
    "hyperthyroidism",
    "ibs",
    "irritable bowel syndrome",
    "gerd",
    "acid reflux",
    "celiac disease",
    "crohn's disease",
    "heart disease",
    "kidney disease",
    "sleep apnea",
)
_PREFERENCE_KEYWORDS = (
    "home remed",
    "natural",
    "herbal",
    "ayurved",
    "video",
    "telehealth",
    "in-person",
    "in person",
    "female doctor",
    "male doctor",
    "generic",
    "non-drowsy",
)
_KNOWN_MEDICATIONS = {
    "acetaminophen",
    "advil",
    "albuterol",
    "amlodipine",
    "amoxicillin",
    "antacids",
    "antibiotics",
    "antidepressants",
    "antihistamines",
    "aspirin",
    "atorvastatin",
    "claritin",
    "gabapentin",
    "ibuprofen",
    "insulin",
    "levothyroxine",
    "lisinopril",
    "losartan",
    "melatonin",
    "metformin",
    "metoprolol",
    "naproxen",
    "omeprazole",
    "paracetamol",
    "prednisolone",
    "prednisone",
    "sertraline",
    "tylenol",
    "vitamin",
    "vitamins",
    "warfarin",
    "zyrtec",
}
_DRUG_SUFFIX_RE = re.compile(
    r"(pril|olol|sartan|statin|prazole|dipine|formin|gliptin|cillin|mycin|cycline|floxacin|triptan|azepam|"
    r"oxetine|profen|tidine|thyroxine|parin|xaban|mab)$"
)
_MEDICATION_CONTEXT_RE = re.compile(
    r"\b(\d+\s*mg|mg|mcg|pills?|tablets?|capsules?|medications?|medicines?|meds|drops|inhalers?|patch|"
    r"prescription|prescribed|supplements?|blood\s+thinners?|birth\s+control)\b"
)
_GENERIC_ALLERGY_WORDS = {"an", "my", "food", "seasonal", "severe", "mild", "the", "skin", "bad", "slight", "weird"}


def _clean(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip(" -").lower()


def _looks_like_medication(value: str) -> bool:
    words = value.split()
    if any(word in _KNOWN_MEDICATIONS or _DRUG_SUFFIX_RE.search(word) for word in words):
        return True
    return _MEDICATION_CONTEXT_RE.search(value) is not None


def _candidate(memory_type: MemoryType, label: str, value: str, confidence: Confidence, sentence: str) -> MemoryCandidate:
    return MemoryCandidate(
        id=f"cand_{uuid.uuid4().hex}",
        type=memory_type,
        label=label,
        value=value,
        confidence=confidence,
        reason=f'You mentioned: "{sentence.strip()[:120]}"',
    )


class MemoryExtractor:
    """Proposes durable health facts from a transcript.

    Only plain first-person statements from the user are read. Questions,
    hedged statements and negations are skipped, so an empty result is the
    normal outcome for most conversations.
    """

    def _sentences(self, transcript: Sequence[Message]) -> list[str]:
        sentences: list[str] = []
        for text in user_messages(transcript):
            sentences.extend(part for part in _SENTENCE_SPLIT_RE.split(text) if part.strip())
        return sentences

    def _from_sentence(self, sentence: str) -> list[MemoryCandidate]:
        found: list[MemoryCandidate] = []
        lowered = sentence.lower()

        for match in _ALLERGY_TO_RE.finditer(sentence):
            value = _clean(match.group(1))
            if value and value not in _GENERIC_ALLERGY_WORDS and value != "anything":
                found.append(_candidate(MemoryType.ALLERGY, f"Allergic to {value}", value, Confidence.HIGH, sentence))
        for match in _ALLERGY_NOUN_RE.finditer(sentence):
            value = _clean(match.group(1))
            if value not in _GENERIC_ALLERGY_WORDS:
                found.append(_candidate(MemoryType.ALLERGY, f"Allergic to {value}", value, Confidence.MEDIUM, sentence))

        for match in _MEDICATION_RE.finditer(sentence):
            value = re.sub(r"^(?:a|an|the|my|some)\s+", "", _clean(match.group(1)))
            if value and _looks_like_medication(value):
                found.append(_candidate(MemoryType.MEDICATION, f"Takes {value}", value, Confidence.MEDIUM, sentence))

        for match in _CONDITION_TRIGGER_RE.finditer(sentence):
            remainder = re.sub(r"^(a|an|chronic)\s+", "", lowered[match.end() :].strip())
            for condition in _CHRONIC_CONDITIONS:
                if remainder.startswith(condition):
                    found.append(
                        _candidate(MemoryType.CONDITION, condition.capitalize(), condition, Confidence.HIGH, sentence)
                    )
                    break

        for match in _PREFERENCE_RE.finditer(sentence):
            value = _clean(match.group(1))
            if any(keyword in value for keyword in _PREFERENCE_KEYWORDS):
                found.append(_candidate(MemoryType.PREFERENCE, f"Prefers {value}", value, Confidence.MEDIUM, sentence))

        for match in _TRIGGER_RE.finditer(sentence):
            value = _clean(match.group(1))
            target = _clean(match.group(2))
            if value and value.split(" ", 1)[0] not in {"it", "this", "that", "something"}:
                found.append(
                    _candidate(MemoryType.TRIGGER, f"{value.capitalize()} triggers {target}", value, Confidence.MEDIUM, sentence)
                )
        for match in _TRIGGER_WHEN_RE.finditer(sentence):
            value = _clean(match.group(1))
            if value:
                found.append(_candidate(MemoryType.TRIGGER, f"Reacts to {value}", value, Confidence.LOW, sentence))
        return found

    def extract_candidates(self, transcript: Sequence[Message]) -> list[MemoryCandidate]:
        candidates: list[MemoryCandidate] = []
        seen: set[tuple[MemoryType, str]] = set()
        for sentence in self._sentences(transcript):
            stripped = sentence.strip()
            if stripped.endswith("?") or _SKIP_RE.search(stripped) or _NEGATION_RE.search(stripped):
                continue
            for candidate in self._from_sentence(stripped):
                key = (candidate.type, candidate.value)
                if key in seen:
                    continue
                seen.add(key)
                candidates.append(candidate)
        return candidates
