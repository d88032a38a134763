from __future__ import annotations

import json

import httpx
import pytest

from memory.models import AgeGroup, ForWhom, Message, Role
from triage_core import InternalTriageLevel, ModelTriageClassifier, RuleBasedClassifier, TriageContext
from triage_core.classifier import extract_json_object, stated_severity


def _user(*texts: str) -> list[Message]:
    return [
        Message(id=f"m{index}", episode_id="ep", role=Role.USER, text=text, created_at="", seq=index)
        for index, text in enumerate(texts, start=1)
    ]


ADULT = TriageContext(age=35, age_group=AgeGroup.ADULT)
INFANT = TriageContext(for_whom=ForWhom.FAMILY_MEMBER, age=0.5, age_group=AgeGroup.INFANT, relationship="son")
CHILD = TriageContext(for_whom=ForWhom.FAMILY_MEMBER, age=5, age_group=AgeGroup.CHILD, relationship="daughter")
SENIOR = TriageContext(for_whom=ForWhom.FAMILY_MEMBER, age=81, age_group=AgeGroup.SENIOR, relationship="father")


@pytest.mark.parametrize(
    ("texts", "context", "expected"),
    [
        (("I have a mild headache since yesterday", "It's about a 3 out of 10"), TriageContext(), InternalTriageLevel.SELF_CARE),
        (("I have chest pain when I climb stairs",), ADULT, InternalTriageLevel.URGENT),
        (("My back hurts, 8/10",), ADULT, InternalTriageLevel.URGENT),
        (("My cough is getting worse",), ADULT, InternalTriageLevel.SOON),
        (("Sore knee, maybe 5 out of 10",), ADULT, InternalTriageLevel.NON_URGENT),
        (("I want to check my blood pressure",), ADULT, InternalTriageLevel.MONITOR),
        (("I have a fever",), ADULT, InternalTriageLevel.MONITOR),
        (("He has a fever",), INFANT, InternalTriageLevel.EMERGENCY),
        (("She has a fever",), CHILD, InternalTriageLevel.URGENT),
        (("She is not drinking anything",), CHILD, InternalTriageLevel.URGENT),
        (("He fell in the bathroom",), SENIOR, InternalTriageLevel.URGENT),
        (("He fell in the bathroom",), ADULT, InternalTriageLevel.MONITOR),
    ],
)
def test_rule_based_levels(texts, context, expected):
    assert RuleBasedClassifier().classify(_user(*texts), context) == expected


def test_assistant_text_is_ignored_by_rules():
    transcript = [
        *_user("Slight sore throat"),
        Message(id="a1", episode_id="ep", role=Role.ASSISTANT, text="Any chest pain or bleeding?", created_at="", seq=2),
    ]
    assert RuleBasedClassifier().classify(transcript, ADULT) == InternalTriageLevel.SELF_CARE


def test_stated_severity_uses_the_last_score():
    assert stated_severity("It was 8/10 last night, now 2 out of 10") == 2
    assert stated_severity("no numbers here") is None


def test_extract_json_object_from_chatty_reply():
    assert extract_json_object('Sure. {"level": "soon"} Hope that helps') == {"level": "soon"}
    assert extract_json_object("no json") is None
    assert extract_json_object("") is None


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _model(handler, **kwargs) -> ModelTriageClassifier:
    return ModelTriageClassifier(
        api_base="https://llm.example.test/v1/",
        api_key=kwargs.pop("api_key", "test-key"),
        model="triage-small",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_model_classifier_parses_level():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion('{"level": "soon"}'))

    level = _model(handler).classify(_user("Rash spreading on my arm"), ADULT)

    assert level == InternalTriageLevel.SOON
    assert len(seen) == 1
    request = seen[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer test-key"
    body = json.loads(request.content)
    assert body["model"] == "triage-small"
    assert body["messages"][-1] == {"role": "user", "content": "Rash spreading on my arm"}


def test_model_classifier_accepts_content_parts():
    def handler(request: httpx.Request) -> httpx.Response:
        reply = {"choices": [{"message": {"content": [{"type": "text", "text": '{"level": "Non-Urgent"}'}]}}]}
        return httpx.Response(200, json=reply)

    assert _model(handler).classify(_user("Itchy eyes"), ADULT) == InternalTriageLevel.NON_URGENT


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, json=_completion("I would rather not say.")),
        httpx.Response(200, json=_completion('{"level": "critical"}')),
        httpx.Response(200, json={"unexpected": True}),
    ],
)
def test_model_classifier_falls_back_to_rules(response, caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    transcript = _user("I have a mild headache since yesterday", "It's about a 3 out of 10")
    assert _model(handler).classify(transcript, ADULT) == InternalTriageLevel.SELF_CARE
    assert "using rules" in caplog.text


def test_model_classifier_falls_back_on_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    assert _model(handler).classify(_user("I have chest pain"), ADULT) == InternalTriageLevel.URGENT


def test_model_classifier_without_key_skips_the_request():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_completion('{"level": "emergency"}'))

    level = _model(handler, api_key="").classify(_user("Mild cough"), ADULT)
    assert level == InternalTriageLevel.SELF_CARE
    assert calls == []
