"""
Drift Classifier for Roadmap Cascade

Deterministic rule table from the characteristics of a deviation to a
severity and a resolution action. Rules are checked top to bottom and the
first match wins:

    security-relevant                         -> critical, halt
    touches a declared core abstraction       -> high, halt
    contradicts an earlier human decision     -> high, halt
    cosmetic / naming only                    -> low, auto-resolve
    additive only (new optional field)        -> low, auto-resolve
    spans multiple items                      -> high, halt
    confined to one item, same intent         -> medium, auto-resolve + notify
    anything else                             -> high, halt
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any

from .models import DriftEvent, InterfaceDecl, ResolutionAction, Severity, normalize_name

logger = logging.getLogger(__name__)


@dataclass
class DeviationTraits:
    """Observed characteristics of one deviation."""
    cosmetic: bool = False
    additive: bool = False
    items_affected: int = 1
    same_intent: bool = True
    touches_core: bool = False
    contradicts_decision: bool = False
    security_relevant: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviationTraits":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


# Traits assumed for session-reported events that carry none of their own
CATEGORY_DEFAULTS: dict[str, dict[str, Any]] = {
    "naming-conflict": {"cosmetic": True},
    "api-inconsistency": {},
    "duplicated-scope": {"items_affected": 1},
    "dependency-order": {"items_affected": 1},
    "shared-component-divergence": {},
}


class DriftClassifier:
    """Assigns severity and resolution to drift events."""

    def __init__(
        self,
        core_abstractions: Iterable[str] = (),
        security_tags: Iterable[str] = (),
    ):
        self.core_abstractions = {normalize_name(n) for n in core_abstractions}
        self.security_tags = {t.lower() for t in security_tags}

    def classify(self, traits: DeviationTraits) -> tuple[Severity, ResolutionAction]:
        if traits.security_relevant:
            return Severity.CRITICAL, ResolutionAction.HALT
        if traits.touches_core:
            return Severity.HIGH, ResolutionAction.HALT
        if traits.contradicts_decision:
            return Severity.HIGH, ResolutionAction.HALT
        if traits.cosmetic:
            return Severity.LOW, ResolutionAction.AUTO_RESOLVE
        if traits.additive:
            return Severity.LOW, ResolutionAction.AUTO_RESOLVE
        if traits.items_affected > 1:
            return Severity.HIGH, ResolutionAction.HALT
        if traits.same_intent:
            return Severity.MEDIUM, ResolutionAction.AUTO_RESOLVE_NOTIFY
        return Severity.HIGH, ResolutionAction.HALT

    def is_core(self, decl: InterfaceDecl) -> bool:
        return decl.core or decl.normalized_name in self.core_abstractions

    def is_security(self, decl: InterfaceDecl, tags: Iterable[str] = ()) -> bool:
        if decl.security:
            return True
        claimed = {t.lower() for t in list(decl.scope) + list(tags)}
        return bool(claimed & self.security_tags)

    def apply(
        self,
        event: DriftEvent,
        traits: DeviationTraits,
        rejected: set[tuple[str, str]] | None = None,
    ) -> DriftEvent:
        """
        Classify an event in place.

        Args:
            event: Event to classify
            traits: Observed deviation characteristics
            rejected: (category, subject) pairs a human has rejected before

        Returns:
            The same event with severity, resolution and traits set
        """
        if rejected and (event.category, event.subject) in rejected:
            traits.contradicts_decision = True
        severity, action = self.classify(traits)
        event.severity = severity
        event.resolution = action
        event.traits = traits.to_dict()
        logger.debug(
            "Classified %s on %s as %s (%s)",
            event.category, event.subject or ",".join(event.affected_items), severity.value, action.value,
        )
        return event

    def reclassify(
        self,
        event: DriftEvent,
        rejected: set[tuple[str, str]] | None = None,
    ) -> DriftEvent:
        """Classify a session-reported event from its own traits or category defaults."""
        data = dict(CATEGORY_DEFAULTS.get(event.category, {}))
        data.setdefault("items_affected", max(len(event.affected_items), 1))
        data.update(event.traits)
        traits = DeviationTraits.from_dict(data)
        if event.subject and normalize_name(event.subject) in self.core_abstractions:
            traits.touches_core = True
        if event.subject and event.subject.lower() in self.security_tags:
            traits.security_relevant = True
        return self.apply(event, traits, rejected)
