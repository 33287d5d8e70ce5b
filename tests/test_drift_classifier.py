"""Tests for DriftClassifier."""

import pytest

from roadmap_cascade.core.drift_classifier import DeviationTraits, DriftClassifier
from roadmap_cascade.core.models import DriftEvent, InterfaceDecl, ResolutionAction, Severity


def _event(category="api-inconsistency", subject="User", affected=("a", "b"), **kwargs):
    return DriftEvent(
        category=category,
        severity=kwargs.pop("severity", Severity.MEDIUM),
        description="differs",
        affected_items=list(affected),
        recommendation="align",
        subject=subject,
        **kwargs,
    )


class TestRuleTable:
    """Tests for the first-match rule order."""

    @pytest.mark.parametrize("traits,expected", [
        (DeviationTraits(security_relevant=True, cosmetic=True), (Severity.CRITICAL, ResolutionAction.HALT)),
        (DeviationTraits(touches_core=True, cosmetic=True), (Severity.HIGH, ResolutionAction.HALT)),
        (DeviationTraits(contradicts_decision=True, additive=True), (Severity.HIGH, ResolutionAction.HALT)),
        (DeviationTraits(cosmetic=True, items_affected=3), (Severity.LOW, ResolutionAction.AUTO_RESOLVE)),
        (DeviationTraits(additive=True, items_affected=2), (Severity.LOW, ResolutionAction.AUTO_RESOLVE)),
        (DeviationTraits(items_affected=2), (Severity.HIGH, ResolutionAction.HALT)),
        (DeviationTraits(items_affected=1), (Severity.MEDIUM, ResolutionAction.AUTO_RESOLVE_NOTIFY)),
        (DeviationTraits(items_affected=1, same_intent=False), (Severity.HIGH, ResolutionAction.HALT)),
    ])
    def test_classify(self, traits, expected):
        assert DriftClassifier().classify(traits) == expected

    def test_security_beats_every_other_trait(self):
        traits = DeviationTraits(
            cosmetic=True, additive=True, touches_core=True,
            contradicts_decision=True, security_relevant=True,
        )
        assert DriftClassifier().classify(traits)[0] == Severity.CRITICAL


class TestApply:
    """Tests for classifying events in place."""

    def test_apply_sets_severity_resolution_and_traits(self):
        event = _event()
        DriftClassifier().apply(event, DeviationTraits(cosmetic=True, items_affected=2))

        assert event.severity == Severity.LOW
        assert event.resolution == ResolutionAction.AUTO_RESOLVE
        assert event.traits["cosmetic"] is True
        assert event.traits["items_affected"] == 2

    def test_previously_rejected_change_is_a_contradiction(self):
        event = _event(category="naming-conflict")
        rejected = {("naming-conflict", "User")}

        DriftClassifier().apply(event, DeviationTraits(cosmetic=True), rejected)

        assert event.severity == Severity.HIGH
        assert event.traits["contradicts_decision"] is True


class TestReclassify:
    """Tests for session-reported events."""

    def test_naming_defaults_to_cosmetic(self):
        event = _event(category="naming-conflict", affected=["a"])
        DriftClassifier().reclassify(event)
        assert event.severity == Severity.LOW

    def test_unknown_category_spanning_items_is_high(self):
        event = _event(category="scope-creep", affected=["a", "b"])
        DriftClassifier().reclassify(event)
        assert event.severity == Severity.HIGH

    def test_single_item_same_intent_is_medium(self):
        event = _event(category="api-inconsistency", affected=["a"])
        DriftClassifier().reclassify(event)
        assert event.severity == Severity.MEDIUM
        assert event.resolution == ResolutionAction.AUTO_RESOLVE_NOTIFY

    def test_own_traits_override_defaults(self):
        event = _event(category="naming-conflict", affected=["a"], traits={"cosmetic": False, "same_intent": False})
        DriftClassifier().reclassify(event)
        assert event.severity == Severity.HIGH

    def test_core_subject(self):
        event = _event(category="naming-conflict", subject="user_account", affected=["a"])
        DriftClassifier(core_abstractions=["UserAccount"]).reclassify(event)
        assert event.severity == Severity.HIGH

    def test_security_subject(self):
        event = _event(category="api-inconsistency", subject="Auth", affected=["a"])
        DriftClassifier(security_tags=["auth"]).reclassify(event)
        assert event.severity == Severity.CRITICAL


class TestDeclarationChecks:
    """Tests for core and security detection on declarations."""

    def test_is_core(self):
        classifier = DriftClassifier(core_abstractions=["Session Token"])
        assert classifier.is_core(InterfaceDecl(name="session_token"))
        assert classifier.is_core(InterfaceDecl(name="Other", core=True))
        assert not classifier.is_core(InterfaceDecl(name="Other"))

    def test_is_security(self):
        classifier = DriftClassifier(security_tags=["Auth"])
        assert classifier.is_security(InterfaceDecl(name="Login", security=True))
        assert classifier.is_security(InterfaceDecl(name="Login", scope=["auth"]))
        assert classifier.is_security(InterfaceDecl(name="Login"), tags=["AUTH"])
        assert not classifier.is_security(InterfaceDecl(name="Login"), tags=["billing"])
