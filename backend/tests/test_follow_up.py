from __future__ import annotations

import pytest

from memory.models import AgeGroup, ForWhom, Message, Role
from triage_core import FollowUpEngine, FollowUpGap, TriageContext


def _transcript(*turns: tuple[str, str]) -> list[Message]:
    return [
        Message(id=f"m{index}", episode_id="ep", role=Role(role), text=text, created_at="", seq=index)
        for index, (role, text) in enumerate(turns, start=1)
    ]


def test_asks_for_the_two_highest_priority_gaps():
    decision = FollowUpEngine().next_questions(_transcript(("user", "I have a mild headache since yesterday")))
    assert decision.needed is True
    assert decision.gaps == [FollowUpGap.ASSOCIATED_SYMPTOMS, FollowUpGap.RISK_FACTORS]
    assert decision.questions == [
        "Have you noticed anything else along with it, like fever, nausea or dizziness?",
        "How old are you, and do you have any long-term health conditions or any chance of pregnancy?",
    ]


def test_priority_starts_with_onset():
    decision = FollowUpEngine().next_questions(_transcript(("user", "I feel unwell")))
    assert decision.gaps == [FollowUpGap.ONSET, FollowUpGap.SEVERITY]
    assert len(decision.questions) == 2


def test_location_only_applies_to_pain():
    engine = FollowUpEngine()
    rash = engine.open_gaps(_transcript(("user", "I have a rash")), TriageContext())
    assert FollowUpGap.LOCATION not in rash

    pain = engine.open_gaps(_transcript(("user", "It hurts a lot")), TriageContext())
    assert pain[:2] == [FollowUpGap.ONSET, FollowUpGap.LOCATION]

    stomach = engine.open_gaps(_transcript(("user", "My stomach hurts")), TriageContext())
    assert FollowUpGap.LOCATION not in stomach


@pytest.mark.parametrize(
    "text",
    [
        "It started earlier today and it hurts",
        "The door handle hurts to hold",
        "It hurts and I left work early",
    ],
)
def test_location_needs_a_whole_body_part_word(text):
    gaps = FollowUpEngine().open_gaps(_transcript(("user", text)), TriageContext())
    assert FollowUpGap.LOCATION in gaps


@pytest.mark.parametrize("text", ["My lower back hurts", "Pain in my left side", "Both ears hurt", "A bad toothache"])
def test_location_is_filled_by_body_parts(text):
    gaps = FollowUpEngine().open_gaps(_transcript(("user", text)), TriageContext())
    assert FollowUpGap.LOCATION not in gaps


def test_never_repeats_a_question_already_asked():
    engine = FollowUpEngine()
    first = engine.next_questions(_transcript(("user", "I have a mild headache since yesterday")))
    transcript = _transcript(
        ("user", "I have a mild headache since yesterday"),
        ("assistant", "Thanks for telling me.\n\n" + "\n".join(first.questions)),
        ("user", "It's about a 3 out of 10"),
    )
    decision = engine.next_questions(transcript)
    assert decision.needed is False
    assert decision.questions == []


def test_answers_in_the_transcript_fill_gaps():
    transcript = _transcript(
        ("user", "My knee hurts, about 6 out of 10, started two days ago"),
        ("user", "No other symptoms. I'm 34 and have no chronic conditions"),
    )
    assert FollowUpEngine().next_questions(transcript).needed is False


def test_family_member_questions_use_their_voice():
    context = TriageContext(
        for_whom=ForWhom.FAMILY_MEMBER,
        age=6,
        age_group=AgeGroup.CHILD,
        relationship="daughter",
    )
    decision = FollowUpEngine().next_questions(_transcript(("user", "She has a cough")), context)
    assert decision.questions[0] == "When did this start for them?"


def test_known_age_changes_the_risk_question():
    context = TriageContext(age=40, age_group=AgeGroup.ADULT)
    transcript = _transcript(("user", "Mild sore throat since this morning. No other symptoms"))
    decision = FollowUpEngine().next_questions(transcript, context)
    assert decision.questions == [
        "Do you have any long-term health conditions, or is there any chance you could be pregnant?"
    ]


def test_max_questions_can_be_lowered():
    decision = FollowUpEngine(max_questions=1).next_questions(_transcript(("user", "I feel unwell")))
    assert decision.gaps == [FollowUpGap.ONSET]


def test_completeness_reports_filled_share():
    engine = FollowUpEngine()
    assert engine.completeness(_transcript(("user", "I have a mild headache since yesterday"))) == 60
    assert engine.completeness(_transcript(("user", "I feel unwell"))) == 0
