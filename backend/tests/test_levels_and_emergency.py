from __future__ import annotations

import pytest

from memory.models import AgeGroup, ExternalTriageLevel, ForWhom, InvalidInput, Role
from triage_core import (
    EmergencyDetector,
    InternalTriageLevel,
    TriageContext,
    UnhandledTriageLevel,
    map_to_external,
    parse_internal_level,
    reconcile,
)
from triage_core.emergency import RED_FLAG_RULES


@pytest.mark.parametrize(
    ("internal", "external"),
    [
        (InternalTriageLevel.EMERGENCY, ExternalTriageLevel.EMERGENCY),
        (InternalTriageLevel.URGENT, ExternalTriageLevel.URGENT),
        (InternalTriageLevel.SOON, ExternalTriageLevel.SOON),
        (InternalTriageLevel.NON_URGENT, ExternalTriageLevel.SELF_CARE),
        (InternalTriageLevel.MONITOR, ExternalTriageLevel.SELF_CARE),
        (InternalTriageLevel.SELF_CARE, ExternalTriageLevel.SELF_CARE),
    ],
)
def test_every_internal_level_has_an_external_level(internal, external):
    assert map_to_external(internal) == external


def test_mapping_is_idempotent_on_external_values():
    for level in InternalTriageLevel:
        external = map_to_external(level)
        assert map_to_external(parse_internal_level(external.value)) == external


@pytest.mark.parametrize("value", ["urgent", None, 3, ExternalTriageLevel.URGENT])
def test_unknown_values_fail_loudly(value):
    with pytest.raises(UnhandledTriageLevel):
        map_to_external(value)


def test_parse_internal_level():
    assert parse_internal_level("Non-Urgent") == InternalTriageLevel.NON_URGENT
    assert parse_internal_level(" monitor ") == InternalTriageLevel.MONITOR
    with pytest.raises(InvalidInput):
        parse_internal_level("critical")


def test_red_flag_rule_ids_are_unique():
    ids = [rule.id for rule in RED_FLAG_RULES]
    assert len(ids) == len(set(ids))


def test_chest_pain_with_breathlessness_is_an_emergency():
    verdict = EmergencyDetector().screen("I have crushing chest pain and shortness of breath")
    assert verdict.is_emergency is True
    assert "cardiac_chest_pain" in verdict.rule_ids
    assert 0.5 < verdict.confidence <= 1.0
    assert "emergency" in verdict.immediate_action.lower()
    assert reconcile(verdict, InternalTriageLevel.URGENT) == ExternalTriageLevel.EMERGENCY


def test_ordinary_symptoms_are_not_flagged():
    detector = EmergencyDetector()
    verdict = detector.screen("I have a mild headache since yesterday")
    assert verdict.is_emergency is False
    assert verdict.rule_ids == []
    assert reconcile(verdict, InternalTriageLevel.MONITOR) == ExternalTriageLevel.SELF_CARE


def test_suicidal_statement_routes_to_crisis_line():
    verdict = EmergencyDetector().screen("Honestly I want to kill myself")
    assert verdict.is_emergency is True
    assert "mental_health" in verdict.categories
    assert "988" in verdict.immediate_action


def test_overdose_routes_to_poison_control():
    verdict = EmergencyDetector().screen("I took too many pills an hour ago")
    assert verdict.is_emergency is True
    assert "mental_overdose" in verdict.rule_ids
    assert "Poison Control" in verdict.immediate_action


def test_internal_emergency_level_alone_is_positive():
    verdict = EmergencyDetector().screen("she is warm", internal_level=InternalTriageLevel.EMERGENCY)
    assert verdict.is_emergency is True
    assert verdict.rule_ids == []


def test_infant_fever_rule_needs_a_young_infant():
    detector = EmergencyDetector()
    newborn = TriageContext(for_whom=ForWhom.FAMILY_MEMBER, age=0.1, age_group=AgeGroup.INFANT)
    adult = TriageContext(age=35, age_group=AgeGroup.ADULT)

    assert detector.screen("She has a fever", newborn).is_emergency is True
    assert detector.screen("I have a fever", adult).is_emergency is False


def test_pregnancy_rules_need_pregnancy_context():
    detector = EmergencyDetector()
    assert detector.screen("I have vaginal bleeding", TriageContext(pregnant=True)).is_emergency is True
    assert detector.screen("I have vaginal bleeding", TriageContext()).is_emergency is False


def test_senior_fall_is_a_warning_not_an_emergency():
    senior = TriageContext(for_whom=ForWhom.FAMILY_MEMBER, age=82, age_group=AgeGroup.SENIOR)
    verdict = EmergencyDetector().screen("My dad fell in the kitchen", senior)
    assert verdict.is_emergency is False
    assert verdict.warnings == ["Fall in an older adult"]


def test_context_reads_pregnancy_from_user_messages(memory_service, session):
    store = memory_service.episodes
    episode = store.start_episode(session, symptom_text="I'm 20 weeks pregnant and have a bad headache")
    store.add_message(session, episode.id, Role.ASSISTANT, "Are you pregnant?")
    context = TriageContext.from_episode(episode, store.get_messages(session, episode.id))
    assert context.pregnant is True

    other = store.start_episode(session, symptom_text="I'm not pregnant, just a headache")
    assert TriageContext.from_episode(other, store.get_messages(session, other.id)).pregnant is False
