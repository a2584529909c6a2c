from __future__ import annotations

from typing import List, Optional, Sequence

from .schemas import GuidanceConfig, Hit

NO_MATCHES = "No matches found. Try fewer or different terms, your search may contain incorrect terminology."
LIMITED_RESULTS = "Limited results found. Consider using fewer or more general terms."


class GuidanceAdvisor:
    """Produces a short hint for the decision oracle when a search came back empty or weak."""

    def __init__(self, config: Optional[GuidanceConfig] = None):
        self.config = config or GuidanceConfig()

    def advise(self, tokens: List[str], hits: Sequence[Hit]) -> Optional[str]:
        if not hits:
            return NO_MATCHES
        if len(hits) < self.config.weak_hit_count and len(tokens) > self.config.long_query_tokens:
            return LIMITED_RESULTS
        return None

    @staticmethod
    def full_system_note(query: str, system_size: int) -> str:
        return (
            f'No matches for "{query}" in a small code system ({system_size} concepts). '
            "Returning the complete list so you can choose a valid code from it."
        )
