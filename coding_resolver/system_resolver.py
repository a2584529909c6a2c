from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from rapidfuzz.distance import Levenshtein

from .schemas import FuzzyPolicy, ResolverPolicy
from .store import ConceptStore

logger = logging.getLogger(__name__)

LOINC = "http://loinc.org"
SNOMED_CT = "http://snomed.info/sct"
RXNORM = "http://www.nlm.nih.gov/research/umls/rxnorm"

THO_CODESYSTEM_BASE = "http://terminology.hl7.org/CodeSystem/"

DEFAULT_ALIASES: Dict[str, str] = {
    "loinc": LOINC,
    "snomed": SNOMED_CT,
    "rxnorm": RXNORM,
}

# Path segments that mark an HL7 URL as pointing at a terminology resource
_AUTHORITY_RESOURCE_SEGMENTS = {"fhir", "valueset", "codesystem"}


def code_segment(value: str) -> str:
    """Return the lower-cased token that identifies a system URI.

    For URLs this is the segment following ``CodeSystem`` when present, else
    the last path segment, else the host. Non-URLs use their last ``/`` part.
    """
    parsed = urlparse(value)
    if parsed.scheme and parsed.netloc:
        parts = [p for p in parsed.path.split("/") if p]
        if not parts:
            host = parsed.netloc.lower()
            return host[4:] if host.startswith("www.") else host
        for i, part in enumerate(parts):
            if part.lower() == "codesystem" and i + 1 < len(parts):
                return parts[i + 1].lower()
        return parts[-1].lower()
    parts = [p for p in value.split("/") if p]
    return (parts[-1] if parts else "").lower()


def fuzzy_bound(len_a: int, len_b: int, policy: FuzzyPolicy) -> int:
    return max(policy.floor, math.ceil(policy.ratio * min(len_a, len_b)))


class SystemResolver:
    """Maps aliases, URLs and canonical URIs to a system known to the store."""

    def __init__(self, store: ConceptStore, policy: Optional[ResolverPolicy] = None):
        self.store = store
        self.policy = policy or ResolverPolicy()
        self.aliases: Dict[str, str] = dict(DEFAULT_ALIASES)
        self.aliases.update({k.lower(): v for k, v in self.policy.aliases.items()})

    def _alias(self, value: str) -> Optional[str]:
        lowered = value.lower()
        if lowered in self.aliases:
            return self.aliases[lowered]
        if lowered.startswith("snomed"):
            return SNOMED_CT
        return None

    def _authority(self, value: str, supported: Iterable[str]) -> Optional[str]:
        parsed = urlparse(value)
        host = (parsed.hostname or "").lower()
        if not parsed.scheme or not host.endswith("hl7.org"):
            return None
        segments = {p.lower() for p in parsed.path.split("/") if p}
        if not segments & _AUTHORITY_RESOURCE_SEGMENTS:
            return None
        candidate = THO_CODESYSTEM_BASE + code_segment(value)
        return candidate if candidate in supported else None

    def _fuzzy(self, value: str, supported: List[str]) -> Optional[str]:
        target = code_segment(value)
        best: Optional[str] = None
        best_segment = ""
        best_dist = -1
        # Strict "<" keeps the first candidate among equidistant ones
        for system in supported:
            segment = code_segment(system)
            dist = Levenshtein.distance(target, segment)
            if best is None or dist < best_dist:
                best, best_segment, best_dist = system, segment, dist
        if best is None:
            return None
        if best_dist <= fuzzy_bound(len(target), len(best_segment), self.policy.fuzzy):
            logger.debug("Fuzzy system match %r -> %s (distance %d)", value, best, best_dist)
            return best
        return None

    def normalize(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None

        aliased = self._alias(value)
        if aliased is not None:
            return aliased

        supported = self.store.supported_systems()
        if value in supported:
            return value

        tho = self._authority(value, supported)
        if tho is not None:
            return tho

        return self._fuzzy(value, supported)

    def expand(self, values: Optional[Iterable[str]]) -> List[str]:
        """Resolve requested identifiers into a deduplicated list of known systems."""
        out: List[str] = []
        for value in values or []:
            resolved = self.normalize(value)
            if resolved is None:
                if value and value.strip():
                    logger.debug("Unresolvable system %r", value)
                continue
            if resolved not in out:
                out.append(resolved)
        return out
