from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol, Sequence

import httpx

from memory.models import Message, Role

from .levels import parse_internal_level
from .models import InternalTriageLevel, TriageContext, user_text

logger = logging.getLogger(__name__)


class TriageClassifier(Protocol):
    def classify(self, transcript: Sequence[Message], context: TriageContext) -> InternalTriageLevel: ...


_FEVER_RE = re.compile(r"\b(fever|feverish|temperature|febrile)\b", re.IGNORECASE)
_SENIOR_RE = re.compile(r"\b(fall|fell|fallen|confus\w*|disoriented)\b", re.IGNORECASE)
_PEDIATRIC_WARNING_RE = re.compile(
    r"\b(not\s+(eating|drinking|feeding)|won'?t\s+(eat|drink|feed)|refus\w+\s+to\s+(eat|drink)|"
    r"(very|unusually|really)\s+(sleepy|drowsy)|fewer\s+wet\s+diapers|dehydrat\w*|keeps?\s+vomiting|"
    r"vomiting\s+(everything|all\s+day)|pulling\s+(at\s+)?(his|her|their)\s+ear|limping)\b",
    re.IGNORECASE,
)
_CONCERNING_RE = re.compile(
    r"\b(chest\s+(pain|tightness|pressure)|short(ness)?\s+of\s+breath|breathless|wheez\w*|"
    r"difficulty\s+breathing|high\s+fever|coughing\s+up\s+blood|blood\s+in\s+\w+|bloody|bleeding|"
    r"severe|excruciating|unbearable|fainted|"
    r"(103|104|105)\s*(degrees|f\b))",
    re.IGNORECASE,
)
_WORSENING_RE = re.compile(
    r"\b(getting\s+worse|worse|worsening|persistent|persists|not\s+(getting\s+)?better|won'?t\s+go\s+away|"
    r"spreading|keeps?\s+coming\s+back|for\s+(over\s+)?(a|two|three|several)\s+weeks?)\b",
    re.IGNORECASE,
)
_MODERATE_RE = re.compile(r"\b(moderate|moderately|uncomfortable)\b", re.IGNORECASE)
_MILD_RE = re.compile(
    r"\b(mild|mildly|slight|slightly|a\s+little|minor|not\s+(too|that)\s+bad|manageable|tolerable)\b",
    re.IGNORECASE,
)
_SCORE_RE = re.compile(r"\b(\d{1,2})\s*(?:/|out\s+of)\s*10\b", re.IGNORECASE)


def stated_severity(text: str) -> int | None:
    """Last 0-10 score the user gave, if any."""
    scores = [int(match.group(1)) for match in _SCORE_RE.finditer(text or "")]
    scores = [score for score in scores if 0 <= score <= 10]
    return scores[-1] if scores else None


class RuleBasedClassifier:
    """Deterministic keyword and severity rules, adjusted for age.

    Chest pain and similar red flags only reach ``urgent`` here; escalating
    to an emergency is the detector's call.
    """

    def classify(self, transcript: Sequence[Message], context: TriageContext) -> InternalTriageLevel:
        text = user_text(transcript)
        score = stated_severity(text)

        if _FEVER_RE.search(text):
            if context.is_infant:
                return InternalTriageLevel.EMERGENCY
            if context.is_child:
                return InternalTriageLevel.URGENT
        if context.is_senior and _SENIOR_RE.search(text):
            return InternalTriageLevel.URGENT
        if context.is_child and _PEDIATRIC_WARNING_RE.search(text):
            return InternalTriageLevel.URGENT
        if _CONCERNING_RE.search(text) or (score is not None and score >= 7):
            return InternalTriageLevel.URGENT
        if _WORSENING_RE.search(text):
            return InternalTriageLevel.SOON
        if (score is not None and 4 <= score <= 6) or _MODERATE_RE.search(text):
            return InternalTriageLevel.NON_URGENT
        if (score is not None and score <= 3) or _MILD_RE.search(text):
            return InternalTriageLevel.SELF_CARE
        return InternalTriageLevel.MONITOR


_SYSTEM_PROMPT = (
    "You are a cautious triage assistant. Read the conversation and decide how soon the person should get care. "
    "Answer with a single JSON object and nothing else: "
    '{"level": "<one of emergency, urgent, soon, non_urgent, monitor, self_care>"}. '
    "Do not diagnose. When unsure between two levels, choose the more urgent one."
)


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [str(item.get("text") or "") for item in content if isinstance(item, dict)]
        return "\n".join(part.strip() for part in parts if part.strip())
    return ""


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                try:
                    payload = json.loads(text[start_idx : end_idx + 1])
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
    return None


class ModelTriageClassifier:
    """Asks an OpenAI-compatible chat endpoint for an internal level.

    Any failure (transport, status, unparseable reply, unknown level) falls
    back to the rule-based classifier, so ``classify`` always returns.
    """

    def __init__(
        self,
        *,
        api_base: str,
        api_key: str,
        model: str,
        timeout_seconds: float = 20.0,
        fallback: TriageClassifier | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.fallback = fallback or RuleBasedClassifier()
        self._transport = transport

    def _messages(self, transcript: Sequence[Message], context: TriageContext) -> list[dict[str, str]]:
        subject = {
            "for_whom": context.for_whom.value,
            "age": context.age,
            "age_group": context.age_group.value if context.age_group else None,
            "pregnant": context.pregnant,
        }
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "system", "content": "Subject context JSON:\n" + json.dumps(subject, ensure_ascii=True)},
        ]
        for message in transcript[-12:]:
            role = "user" if message.role == Role.USER else "assistant"
            messages.append({"role": role, "content": message.text[:1200]})
        return messages

    def _request_level(self, transcript: Sequence[Message], context: TriageContext) -> InternalTriageLevel:
        payload = {"model": self.model, "temperature": 0, "messages": self._messages(transcript, context)}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        with httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds, connect=8.0),
            transport=self._transport,
        ) as client:
            response = client.post(f"{self.api_base}/chat/completions", headers=headers, json=payload)
        if response.status_code >= 400:
            raise RuntimeError(f"classifier endpoint returned HTTP {response.status_code}")
        parsed = extract_json_object(_coerce_completion_text(response.json()))
        if not parsed or "level" not in parsed:
            raise ValueError("classifier reply did not contain a level")
        return parse_internal_level(parsed["level"])

    def classify(self, transcript: Sequence[Message], context: TriageContext) -> InternalTriageLevel:
        if not self.api_key:
            logger.warning("model classifier has no API key; using rules")
            return self.fallback.classify(transcript, context)
        try:
            level = self._request_level(transcript, context)
        except Exception as exc:
            logger.warning("model classifier failed (%s); using rules", exc)
            return self.fallback.classify(transcript, context)
        logger.info("model classifier level=%s", level.value)
        return level
