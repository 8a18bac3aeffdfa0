"""
Astral Core Trust Canonical Enums.

Shared enum definitions used across the crisis, session and consent services.
"""

from __future__ import annotations

from enum import Enum


class CrisisSeverity(str, Enum):
    """Crisis severity tiers.

    Values (ascending severity): LOW < MEDIUM < HIGH < CRITICAL.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def from_string(cls, value: str) -> CrisisSeverity:
        """Case-insensitive lookup with common alias mapping.

        Maps "none"/"minimal" -> LOW, "moderate"/"elevated" -> MEDIUM,
        "severe"/"imminent" -> CRITICAL.
        """
        _ALIASES: dict[str, CrisisSeverity] = {
            "none": cls.LOW,
            "minimal": cls.LOW,
            "low": cls.LOW,
            "moderate": cls.MEDIUM,
            "elevated": cls.MEDIUM,
            "medium": cls.MEDIUM,
            "high": cls.HIGH,
            "severe": cls.CRITICAL,
            "imminent": cls.CRITICAL,
            "critical": cls.CRITICAL,
        }
        normalized = value.strip().lower()
        if normalized in _ALIASES:
            return _ALIASES[normalized]
        raise ValueError(
            f"Unknown crisis severity: '{value}'. "
            f"Valid values: {', '.join(_ALIASES.keys())}"
        )

    @classmethod
    def highest(cls, *levels: CrisisSeverity) -> CrisisSeverity:
        return max(levels, key=lambda s: s.rank, default=cls.LOW)


_SEVERITY_RANK: dict[CrisisSeverity, int] = {
    CrisisSeverity.LOW: 0,
    CrisisSeverity.MEDIUM: 1,
    CrisisSeverity.HIGH: 2,
    CrisisSeverity.CRITICAL: 3,
}


class DataCategory(str, Enum):
    """Categories of personal data governed by consent and retention."""

    PROFILE = "profile"
    USAGE = "usage"
    MEDICAL = "medical"
    THERAPEUTIC = "therapeutic"
    BEHAVIORAL = "behavioral"
    COMMUNICATION = "communication"
    CRISIS = "crisis"
    SESSION = "session"
