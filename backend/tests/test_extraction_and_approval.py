from __future__ import annotations

import pytest

from memory import MemoryPolicyError
from memory.models import Confidence, MemoryCandidate, MemoryType, Message, NotFound, Role
from triage_core import MemoryExtractor


def _transcript(*turns: tuple[str, str]) -> list[Message]:
    return [
        Message(id=f"m{index}", episode_id="ep", role=Role(role), text=text, created_at="", seq=index)
        for index, (role, text) in enumerate(turns, start=1)
    ]


def _extract(*user_texts: str) -> list[MemoryCandidate]:
    return MemoryExtractor().extract_candidates(_transcript(*[("user", text) for text in user_texts]))


def test_ordinary_symptom_report_proposes_nothing():
    assert _extract("I have a headache today") == []
    assert _extract("I have a mild headache since yesterday", "It's about a 3 out of 10") == []


def test_allergy_statement():
    [candidate] = _extract("I'm allergic to penicillin.")
    assert candidate.type == MemoryType.ALLERGY
    assert candidate.value == "penicillin"
    assert candidate.label == "Allergic to penicillin"
    assert candidate.confidence == Confidence.HIGH
    assert candidate.id.startswith("cand_")
    assert candidate.reason == 'You mentioned: "I\'m allergic to penicillin."'


def test_medication_and_condition():
    candidates = _extract("I take metformin every morning. I was diagnosed with type 2 diabetes last year.")
    assert [(c.type, c.value) for c in candidates] == [
        (MemoryType.MEDICATION, "metformin"),
        (MemoryType.CONDITION, "type 2 diabetes"),
    ]
    assert candidates[1].label == "Type 2 diabetes"
    assert candidates[1].confidence == Confidence.HIGH


def test_trigger_and_preference():
    candidates = _extract(
        "Red wine triggers my migraines.",
        "Whenever I eat shellfish my lips swell.",
        "I prefer home remedies when possible.",
    )
    assert [(c.type, c.value, c.confidence) for c in candidates] == [
        (MemoryType.TRIGGER, "red wine", Confidence.MEDIUM),
        (MemoryType.TRIGGER, "shellfish", Confidence.LOW),
        (MemoryType.PREFERENCE, "home remedies", Confidence.MEDIUM),
    ]
    assert candidates[0].label == "Red wine triggers migraines"


@pytest.mark.parametrize(
    "text",
    [
        "Maybe I'm allergic to peanuts.",
        "I'm not allergic to anything.",
        "I don't take any medication.",
        "Am I allergic to penicillin?",
        "I used to take ibuprofen daily.",
    ],
)
def test_hedged_negated_and_questions_are_skipped(text):
    assert _extract(text) == []


@pytest.mark.parametrize(
    "text",
    [
        "I take care of my mother every weekend.",
        "I take showers daily.",
        "I use the stairs every day.",
        "I'm on a walk right now.",
    ],
)
def test_everyday_activities_are_not_medications(text):
    assert _extract(text) == []


@pytest.mark.parametrize(
    ("text", "value"),
    [
        ("I'm taking lisinopril for my blood pressure.", "lisinopril"),
        ("I use an albuterol inhaler.", "albuterol inhaler"),
        ("I take blood pressure pills every morning.", "blood pressure pills"),
    ],
)
def test_medications_by_name_suffix_or_context(text, value):
    [candidate] = _extract(text)
    assert candidate.type == MemoryType.MEDICATION
    assert candidate.value == value


def test_assistant_messages_are_never_mined():
    transcript = _transcript(
        ("assistant", "I'm allergic to shellfish."),
        ("user", "My throat is sore"),
    )
    assert MemoryExtractor().extract_candidates(transcript) == []


def test_duplicates_are_collapsed():
    candidates = _extract("I'm allergic to penicillin.", "Like I said, I'm allergic to penicillin.")
    assert len(candidates) == 1


def _stage(memory_service, session, *texts: str) -> list[dict]:
    episode = memory_service.episodes.start_episode(session, symptom_text=texts[0])
    for text in texts[1:]:
        memory_service.episodes.add_message(session, episode.id, Role.USER, text)
    transcript = memory_service.episodes.get_messages(session, episode.id)
    return memory_service.propose_candidates(
        user_id=session.user_id,
        episode_id=episode.id,
        candidates=MemoryExtractor().extract_candidates(transcript),
    )


def test_nothing_is_stored_until_approved(memory_service, session):
    [staged] = _stage(memory_service, session, "I'm allergic to penicillin.")
    assert staged["status"] == "pending"
    assert memory_service.list_memory_items(session.user_id) == []
    assert [c["id"] for c in memory_service.list_pending_candidates(session.user_id)] == [staged["id"]]

    item = memory_service.approve_candidate(
        user_id=session.user_id,
        candidate_id=staged["id"],
        session_key=session.session_key,
    )

    assert item.type == MemoryType.ALLERGY
    assert item.source == "conversation"
    assert item.source_episode_id == staged["episode_id"]
    assert memory_service.list_pending_candidates(session.user_id) == []
    assert memory_service.memory_snapshot(session.user_id)["allergy"] == ["penicillin"]

    events = memory_service.list_policy_events(user_id=session.user_id, episode_id=staged["episode_id"])
    assert [event["event_type"] for event in events] == ["memory_approved"]
    assert events[0]["details"]["memory_id"] == item.id


def test_candidates_are_scoped_to_their_user(memory_service, session, other_session):
    [staged] = _stage(memory_service, session, "I'm allergic to penicillin.")
    with pytest.raises(MemoryPolicyError):
        memory_service.approve_candidate(user_id=other_session.user_id, candidate_id=staged["id"])
    with pytest.raises(MemoryPolicyError):
        memory_service.dismiss_candidate(user_id=other_session.user_id, candidate_id=staged["id"])
    assert memory_service.list_pending_candidates(other_session.user_id) == []
    assert memory_service.list_memory_items(other_session.user_id) == []


def test_decided_candidates_cannot_be_approved_again(memory_service, session):
    approved, dismissed = _stage(memory_service, session, "I take metformin daily.", "I have asthma.")
    memory_service.approve_candidate(user_id=session.user_id, candidate_id=approved["id"])
    assert memory_service.dismiss_candidate(user_id=session.user_id, candidate_id=dismissed["id"]) is True

    for candidate in (approved, dismissed):
        with pytest.raises(MemoryPolicyError, match="already decided"):
            memory_service.approve_candidate(user_id=session.user_id, candidate_id=candidate["id"])
    assert memory_service.dismiss_candidate(user_id=session.user_id, candidate_id=dismissed["id"]) is False
    assert [item.value for item in memory_service.list_memory_items(session.user_id)] == ["metformin"]


def test_concurrent_approval_loses_cleanly(memory_service, session):
    [staged] = _stage(memory_service, session, "I'm allergic to penicillin.")
    stale = memory_service.health.get_candidate(staged["id"])
    memory_service.approve_candidate(user_id=session.user_id, candidate_id=staged["id"])

    with pytest.raises(MemoryPolicyError, match="already decided"):
        memory_service.health.approve_candidate(stale)
    assert len(memory_service.list_memory_items(session.user_id)) == 1


def test_tampered_candidate_is_refused(memory_service, session):
    [staged] = _stage(memory_service, session, "I'm allergic to penicillin.")
    with memory_service.db.connection() as conn:
        conn.execute("UPDATE memory_candidates SET value = 'nothing at all' WHERE id = ?", (staged["id"],))

    with pytest.raises(MemoryPolicyError, match="mismatch"):
        memory_service.approve_candidate(user_id=session.user_id, candidate_id=staged["id"])
    assert memory_service.list_memory_items(session.user_id) == []


def test_transient_candidates_are_not_staged(memory_service, session):
    transient = MemoryCandidate(
        id="cand_transient",
        type=MemoryType.CONDITION,
        label="Headache",
        value="headache today",
        confidence=Confidence.LOW,
    )
    assert memory_service.propose_candidates(user_id=session.user_id, episode_id=None, candidates=[transient]) == []


def test_restaging_the_same_fact_reuses_the_pending_candidate(memory_service, session):
    first = _stage(memory_service, session, "I'm allergic to penicillin.")
    second = _stage(memory_service, session, "Also, I'm allergic to penicillin.")
    assert [c["id"] for c in second] == [c["id"] for c in first]
    assert len(memory_service.list_pending_candidates(session.user_id)) == 1


def test_missing_candidates_and_items(memory_service, session):
    with pytest.raises(NotFound):
        memory_service.approve_candidate(user_id=session.user_id, candidate_id="cand_missing")
    with pytest.raises(NotFound):
        memory_service.delete_memory_item(user_id=session.user_id, item_id="mem_missing")


def test_delete_memory_item(memory_service, session, other_session):
    [staged] = _stage(memory_service, session, "I'm allergic to penicillin.")
    item = memory_service.approve_candidate(user_id=session.user_id, candidate_id=staged["id"])

    with pytest.raises(NotFound):
        memory_service.delete_memory_item(user_id=other_session.user_id, item_id=item.id)
    memory_service.delete_memory_item(user_id=session.user_id, item_id=item.id)
    assert memory_service.memory_snapshot(session.user_id)["allergy"] == []
