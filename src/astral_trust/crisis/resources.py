"""
Astral Core Trust Crisis - Support resource directory.
Registry of crisis resources filtered by locale, country and severity.
"""
from __future__ import annotations

import structlog

from astral_trust.crisis.entities import ResourceRef, ResourceType
from astral_trust.enums import CrisisSeverity

logger = structlog.get_logger(__name__)

INTERNATIONAL = "INTL"
ANY_LANGUAGE = "multiple"

_TYPE_PRIORITY: dict[ResourceType, int] = {
    ResourceType.HOTLINE: 1,
    ResourceType.CHAT: 2,
    ResourceType.WEBSITE: 3,
    ResourceType.APP: 4,
    ResourceType.LOCAL_SERVICE: 5,
}

_TIMEZONE_COUNTRIES: dict[str, str] = {
    "America/New_York": "US",
    "America/Los_Angeles": "US",
    "America/Chicago": "US",
    "America/Denver": "US",
    "America/Toronto": "CA",
    "America/Vancouver": "CA",
    "Europe/London": "UK",
    "Europe/Dublin": "IE",
    "Europe/Paris": "FR",
    "Europe/Berlin": "DE",
    "Europe/Madrid": "ES",
    "Europe/Lisbon": "PT",
    "Australia/Sydney": "AU",
    "Australia/Melbourne": "AU",
}


INTERNATIONAL_FALLBACK = ResourceRef(
    resource_id="intl_befrienders", name="Befrienders Worldwide",
    resource_type=ResourceType.WEBSITE, contact="https://www.befrienders.org",
    description="International directory of emotional support centers",
    languages=(ANY_LANGUAGE,), countries=(INTERNATIONAL,),
)


def default_resources() -> list[ResourceRef]:
    return [
        ResourceRef(resource_id="us_988", name="988 Suicide & Crisis Lifeline",
                    resource_type=ResourceType.HOTLINE, contact="988",
                    description="24/7 crisis support in the United States",
                    languages=("en", "es"), countries=("US",)),
        ResourceRef(resource_id="us_crisis_text", name="Crisis Text Line",
                    resource_type=ResourceType.CHAT, contact="Text HOME to 741741",
                    description="Free, 24/7 text support",
                    languages=("en", "es"), countries=("US", "CA", "UK", "IE")),
        ResourceRef(resource_id="uk_samaritans", name="Samaritans",
                    resource_type=ResourceType.HOTLINE, contact="116 123",
                    description="24/7 emotional support in the UK and Ireland",
                    languages=("en",), countries=("UK", "IE")),
        ResourceRef(resource_id="ca_talk_suicide", name="Talk Suicide Canada",
                    resource_type=ResourceType.HOTLINE, contact="1-833-456-4566",
                    description="24/7 suicide prevention service",
                    languages=("en", "fr"), countries=("CA",)),
        ResourceRef(resource_id="au_lifeline", name="Lifeline Australia",
                    resource_type=ResourceType.HOTLINE, contact="13 11 14",
                    description="24/7 crisis support and suicide prevention",
                    languages=("en",), countries=("AU",)),
        INTERNATIONAL_FALLBACK,
    ]


def country_for_timezone(tz: str | None) -> str:
    """Best-effort country code for an IANA timezone; unknown zones map to INTL."""
    return _TIMEZONE_COUNTRIES.get(tz or "", INTERNATIONAL)


class ResourceDirectory:
    """Insertion-ordered resource registry."""

    def __init__(self, resources: list[ResourceRef] | None = None, max_results: int = 5) -> None:
        self._resources: list[ResourceRef] = list(
            default_resources() if resources is None else resources)
        self._max_results = max_results

    def register(self, resource: ResourceRef) -> None:
        if any(r.resource_id == resource.resource_id for r in self._resources):
            self._resources = [resource if r.resource_id == resource.resource_id else r
                               for r in self._resources]
        else:
            self._resources.append(resource)
        logger.info("crisis_resource_registered", resource_id=resource.resource_id)

    def resources_for(self, severity: CrisisSeverity, locale: str | None,
                      country_code: str | None) -> list[ResourceRef]:
        """Resources supporting the locale and country, urgent channels first for high severity."""
        language = (locale or "").split("-")[0].split("_")[0].lower()
        country = (country_code or "").upper()
        matched = [
            r for r in self._resources
            if (language in r.languages or ANY_LANGUAGE in r.languages)
            and (country in r.countries or INTERNATIONAL in r.countries)
        ]
        if severity in (CrisisSeverity.HIGH, CrisisSeverity.CRITICAL):
            matched = sorted(matched, key=lambda r: _TYPE_PRIORITY[r.resource_type])
        return matched[:self._max_results]

    def fallback_resources(self) -> list[ResourceRef]:
        """International generic resources for when nothing else matches."""
        generic = [r for r in self._resources if INTERNATIONAL in r.countries]
        return generic[:self._max_results] or [INTERNATIONAL_FALLBACK]
