from __future__ import annotations

import logging
from typing import List, Optional

from .oracle import DecisionOracle
from .schemas import (
    Attempt,
    AttemptDecision,
    Capabilities,
    Decision,
    DecisionRequest,
    Hit,
    PickDecision,
    Placeholder,
    ResolutionOutcome,
    ResolvedCoding,
    ResolverConfig,
    SearchDecision,
    SearchResult,
    UnresolvedDecision,
)
from .search import ConceptSearch
from .step_cache import StepCache, step_key

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 3

REPEAT_QUERY = "repeat_query"
NO_VALID_PICK = "no_valid_pick"
EMPTY_QUERY = "empty_query"


def initial_query(placeholder: Placeholder, config: ResolverConfig) -> str:
    if placeholder.potential_displays:
        return placeholder.potential_displays[0]
    return placeholder.path if config.seed_from_path else ""


def _matching_hit(decision: PickDecision, hits: List[Hit]) -> Optional[Hit]:
    for h in hits:
        if h.system == decision.system and h.code == decision.code:
            return h
    return None


async def resolve_placeholder(
    placeholder: Placeholder,
    resource_type: str,
    resource_identity: str,
    search: ConceptSearch,
    oracle: DecisionOracle,
    capabilities: Capabilities,
    config: Optional[ResolverConfig] = None,
    cache: Optional[StepCache] = None,
) -> ResolutionOutcome:
    """
    Run the search / decide loop for one placeholder.

    Each iteration searches with the current query, asks the oracle once and
    either accepts a pick that names one of the current hits, moves on to a
    new query, or stops. The loop is bounded by ``config.max_iterations``.
    """
    config = config or ResolverConfig()
    max_iterations = config.max_iterations
    systems = placeholder.potential_systems
    outcome = ResolutionOutcome(pointer=placeholder.pointer, path=placeholder.path)

    current_query = initial_query(placeholder, config)
    attempted: List[str] = []

    for k in range(max_iterations):
        outcome.iterations = k + 1
        q = str(current_query or "").strip()
        if q:
            result = await search.asearch_with_guidance(q, systems, limit=config.search_limit)
        else:
            result = SearchResult(query="")
        attempted.append(current_query)

        request = DecisionRequest(
            resource_type=resource_type,
            path=placeholder.path,
            target_display=placeholder.target_display,
            preferred_systems=systems,
            capabilities=capabilities,
            previous_queries=list(attempted),
            remaining_turns=max_iterations - k,
            hits=result.hits[: config.prompt_hit_limit],
            hit_count=result.count,
            guidance=result.guidance,
            full_system=result.full_system,
        )

        async def ask() -> Optional[Decision]:
            outcome.oracle_calls += 1
            return await oracle.decide(request)

        if cache is not None:
            key = step_key(resource_identity, placeholder.pointer, k, request.fingerprint())
            decision = await cache.get_or_compute(key, ask)
        else:
            decision = await ask()

        outcome.attempts.append(
            Attempt(
                query=q,
                systems=systems,
                hit_count=len(result.hits),
                sample=list(result.hits[:SAMPLE_SIZE]),
                decision=AttemptDecision.from_decision(decision),
            )
        )

        if isinstance(decision, PickDecision):
            hit = _matching_hit(decision, result.hits)
            if hit is not None:
                outcome.coding = ResolvedCoding(
                    system=hit.system,
                    code=hit.code,
                    display=decision.display or hit.display,
                )
                logger.debug("Resolved %s to %s|%s after %d iteration(s)", placeholder.path, hit.system, hit.code, k + 1)
                return outcome
            logger.debug("Pick %s|%s is not among the current hits for %s", decision.system, decision.code, placeholder.path)
            continue

        if isinstance(decision, SearchDecision):
            if k >= max_iterations - 1:
                # No turn left to run the search
                break
            next_query = decision.query
            if next_query.lower() in {str(a).lower() for a in attempted}:
                outcome.failure_reason = REPEAT_QUERY
                logger.debug("Repeated query %r for %s", next_query, placeholder.path)
                return outcome
            current_query = next_query
            continue

        if isinstance(decision, UnresolvedDecision):
            outcome.failure_reason = decision.reason
            return outcome

        # No decision this turn; retry with the same query

    # Budget exhausted
    if str(current_query or "").strip():
        outcome.failure_reason = NO_VALID_PICK
    else:
        outcome.failure_reason = EMPTY_QUERY
    return outcome
