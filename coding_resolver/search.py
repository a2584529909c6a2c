from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
from rapidfuzz.distance import Levenshtein

from .guidance import GuidanceAdvisor
from .schemas import Capabilities, CodeLookup, Hit, SearchConfig, SearchResult
from .store import ConceptStore, SearchBackendError
from .system_resolver import SystemResolver

logger = logging.getLogger(__name__)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")

BUILTIN_PREFIXES = (
    "http://terminology.hl7.org/CodeSystem/",
    "http://hl7.org/fhir/sid/",
)


def tokenize(text: Optional[str]) -> List[str]:
    return [t for t in _TOKEN_SPLIT.split(str(text or "").lower()) if len(t) >= 2]


def build_fts_expr(tokens: Sequence[str]) -> str:
    # Quoted OR of tokens; FTS operators in user text are never interpreted
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in tokens)


def display_similarity(query: str, display: str) -> float:
    q = query.lower()
    d = display.lower()
    longest = max(len(q), len(d), 1)
    return 1.0 - Levenshtein.distance(q, d) / longest


class ConceptSearch:
    """Scoped full-text search over a ConceptStore with guidance and small-system fallback."""

    def __init__(
        self,
        store: ConceptStore,
        resolver: Optional[SystemResolver] = None,
        advisor: Optional[GuidanceAdvisor] = None,
        config: Optional[SearchConfig] = None,
    ):
        self.store = store
        self.resolver = resolver or SystemResolver(store)
        self.advisor = advisor or GuidanceAdvisor()
        self.config = config or SearchConfig()
        # One search at a time against the store when run from worker threads
        self._lock = threading.Lock()

    # ------------------------ Plain search ------------------------
    def _scoped(self, tokens: List[str], scope: List[str], limit: int) -> List[Hit]:
        try:
            rows = self.store.match_designations(build_fts_expr(tokens), scope or None, limit)
        except SearchBackendError as e:
            logger.warning("Search backend error, returning no hits: %s", e)
            return []
        return [Hit(system=s, code=c, display=d, score=r) for s, c, d, r in rows]

    def search(self, query: str, systems: Optional[Iterable[str]] = None, limit: Optional[int] = None) -> List[Hit]:
        limit = self.config.default_limit if limit is None else limit
        tokens = tokenize(query)
        if not tokens:
            return []
        requested = [s for s in (systems or []) if s and str(s).strip()]
        scope = self.resolver.expand(requested)
        if requested and not scope:
            logger.debug("None of the requested systems %s could be resolved", requested)
            return []
        return self._scoped(tokens, scope, limit)

    # ------------------------ Guided search ------------------------
    def _full_system(self, system: str, query: str, limit: int) -> List[Hit]:
        concepts = self.store.concepts_for_system(system)
        if not concepts:
            return []
        scores = np.array([display_similarity(query, c.display) for c in concepts], dtype=np.float64)
        order = np.argsort(-scores, kind="stable")[:limit]
        return [
            Hit(system=concepts[i].system, code=concepts[i].code, display=concepts[i].display, score=float(scores[i]))
            for i in order.tolist()
        ]

    def search_with_guidance(
        self,
        query: str,
        systems: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> SearchResult:
        limit = self.config.default_limit if limit is None else limit
        query = str(query or "")
        tokens = tokenize(query)
        requested = [s for s in (systems or []) if s and str(s).strip()]
        scope = self.resolver.expand(requested)

        if not tokens or (requested and not scope):
            hits: List[Hit] = []
        else:
            hits = self._scoped(tokens, scope, limit)

        if len(scope) == 1 and not hits:
            try:
                size = self.store.system_size(scope[0])
                fallback = (
                    self._full_system(scope[0], query, limit)
                    if 0 < size <= self.config.small_system_threshold
                    else []
                )
            except SearchBackendError as e:
                logger.warning("Full-system fallback failed for %s: %s", scope[0], e)
                size, fallback = 0, []
            if fallback:
                return SearchResult(
                    query=query,
                    hits=fallback,
                    count=len(fallback),
                    guidance=self.advisor.full_system_note(query, size),
                    full_system=True,
                )

        return SearchResult(
            query=query,
            hits=hits,
            count=len(hits),
            guidance=self.advisor.advise(tokens, hits),
        )

    def _locked_search(self, query: str, systems: Optional[Iterable[str]], limit: Optional[int]) -> SearchResult:
        with self._lock:
            return self.search_with_guidance(query, systems, limit)

    async def asearch_with_guidance(
        self,
        query: str,
        systems: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> SearchResult:
        """search_with_guidance on a worker thread so the event loop keeps serving oracle calls."""
        return await asyncio.to_thread(self._locked_search, query, systems, limit)

    def search_many(
        self,
        queries: Iterable[str],
        systems: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        systems = list(systems or [])
        results: List[SearchResult] = []
        for q in queries:
            q = str(q or "").strip()
            if not q:
                continue
            try:
                results.append(self.search_with_guidance(q, systems, limit))
            except Exception as e:  # per-query isolation
                logger.warning("Search for %r failed: %s", q, e)
                results.append(SearchResult(query=q))
        return results

    # ------------------------ Capabilities / lookups ------------------------
    def capabilities(self) -> Capabilities:
        try:
            counts = self.store.system_counts()
        except SearchBackendError as e:
            logger.warning("Capabilities unavailable: %s", e)
            return Capabilities()
        supported = [s for s, _ in counts]
        return Capabilities(
            supported_systems=supported,
            big_systems=[s for s, n in counts if n > self.config.big_system_threshold],
            builtin_systems=[s for s in supported if s.startswith(BUILTIN_PREFIXES)],
        )

    def normalize_system(self, value: Optional[str]) -> Optional[str]:
        return self.resolver.normalize(value)

    def code_exists(self, system: Optional[str], code: Optional[str]) -> CodeLookup:
        normalized = self.resolver.normalize(system)
        if not normalized or not code:
            return CodeLookup(system=system, code=code, exists=False)
        try:
            concept = self.store.get_concept(normalized, str(code))
        except SearchBackendError as e:
            logger.warning("Code lookup failed for %s|%s: %s", normalized, code, e)
            concept = None
        if concept is None:
            return CodeLookup(system=system, code=code, exists=False, normalized_system=normalized)
        return CodeLookup(
            system=system,
            code=code,
            exists=True,
            display=concept.display,
            normalized_system=normalized,
        )

    def codes_exist(self, items: Iterable[Dict[str, Optional[str]]]) -> List[CodeLookup]:
        return [self.code_exists(it.get("system"), it.get("code")) for it in items]
