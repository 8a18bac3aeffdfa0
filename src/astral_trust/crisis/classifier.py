"""
Astral Core Trust Crisis - Keyword pattern classifier.
Three ordered tiers of keywords and behaviour tags mapped to a severity.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from astral_trust.crisis.entities import Classification
from astral_trust.enums import CrisisSeverity

logger = structlog.get_logger(__name__)

_APOSTROPHES = re.compile(r"['’‘`]")
_SEPARATORS = re.compile(r"[-_\s]+")


def normalize_text(text: str) -> str:
    """Lower-case, drop apostrophes, fold hyphens and runs of whitespace to one space."""
    return _SEPARATORS.sub(" ", _APOSTROPHES.sub("", text.lower())).strip()


@dataclass(frozen=True)
class PatternTier:
    """One severity tier: keywords, behaviour tags and indicator prefixes."""
    severity: CrisisSeverity
    keyword_prefix: str
    behavior_prefix: str
    keywords: tuple[str, ...] = ()
    behaviors: tuple[str, ...] = ()

    def keyword_matches(self, normalized: str) -> list[str]:
        return [f"{self.keyword_prefix}:{kw}" for kw in self.keywords
                if normalize_text(kw) in normalized]

    def behavior_matches(self, tags: set[str]) -> list[str]:
        return [f"{self.behavior_prefix}:{b}" for b in self.behaviors if b in tags]


def default_tiers() -> tuple[PatternTier, PatternTier, PatternTier]:
    immediate = PatternTier(
        severity=CrisisSeverity.CRITICAL,
        keyword_prefix="crisis_keyword",
        behavior_prefix="crisis_behavior",
        keywords=("kill myself", "end my life", "suicide", "want to die", "better off dead",
                  "no reason to live", "final goodbye", "last words", "end it all", "overdose"),
        behaviors=("repeated_crisis_messages", "isolation_pattern", "goodbye_messages",
                   "giving_away_possessions"),
    )
    high = PatternTier(
        severity=CrisisSeverity.HIGH,
        keyword_prefix="high_risk_keyword",
        behavior_prefix="high_risk_behavior",
        keywords=("self harm", "cutting", "hurt myself", "worthless", "hopeless",
                  "no one cares", "burden", "alone forever", "cant go on", "nothing matters"),
        behaviors=("withdrawal_from_support", "mood_decline_pattern", "substance_mentions",
                   "relationship_crisis"),
    )
    medium = PatternTier(
        severity=CrisisSeverity.MEDIUM,
        keyword_prefix="distress_keyword",
        behavior_prefix="distress_behavior",
        keywords=("depressed", "anxious", "panic", "scared", "overwhelmed", "cant cope",
                  "breaking down", "falling apart", "losing control"),
        behaviors=("seeking_support", "expressing_distress", "asking_for_help"),
    )
    return immediate, high, medium


@dataclass
class PatternClassifier:
    """
    Pure, deterministic keyword classifier.

    The immediate tier short-circuits on its first match. The high tier records
    every match. The medium tier is consulted only when nothing above matched.
    """
    tiers: tuple[PatternTier, PatternTier, PatternTier] = field(default_factory=default_tiers)

    def classify(self, text: Any, behaviors: Iterable[str] = ()) -> Classification:
        if not isinstance(text, str):
            return Classification()
        try:
            normalized = normalize_text(text)
            tags = {b for b in behaviors if isinstance(b, str)}
        except TypeError:
            return Classification()
        immediate, high, medium = self.tiers

        first = (immediate.keyword_matches(normalized) or immediate.behavior_matches(tags))[:1]
        if first:
            return Classification(severity=immediate.severity, indicators=first)

        for tier in (high, medium):
            matched = tier.keyword_matches(normalized) + tier.behavior_matches(tags)
            if matched:
                return Classification(severity=tier.severity,
                                      indicators=list(dict.fromkeys(matched)))
        return Classification()
