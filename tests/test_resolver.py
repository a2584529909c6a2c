"""
Tests for resolver.py - the per-placeholder search/decide loop.
"""

import pytest

from coding_resolver.resolver import EMPTY_QUERY, NO_VALID_PICK, REPEAT_QUERY, resolve_placeholder
from coding_resolver.schemas import (
    PickDecision,
    Placeholder,
    ResolverConfig,
    SearchDecision,
    UnresolvedDecision,
)
from coding_resolver.step_cache import StepCache
from conftest import LOINC, SNOMED, ScriptedOracle


def _diabetes():
    return Placeholder(
        path="code.coding[0]",
        pointer="/code/coding/0",
        potential_displays=["diabetes"],
        potential_systems=["snomed"],
    )


async def _run(placeholder, search, oracle, config=None, cache=None):
    return await resolve_placeholder(
        placeholder,
        "Condition",
        "Condition/c1#0",
        search,
        oracle,
        search.capabilities(),
        config=config,
        cache=cache,
    )


class TestResolvePlaceholder:
    @pytest.mark.asyncio
    async def test_first_hit_resolves_in_one_iteration(self, search, first_hit_oracle):
        outcome = await _run(_diabetes(), search, first_hit_oracle)
        assert outcome.resolved
        assert outcome.coding.system == SNOMED
        assert outcome.coding.code in {"73211009", "44054006"}
        assert outcome.iterations == 1
        assert outcome.oracle_calls == 1
        assert outcome.failure_reason is None

    @pytest.mark.asyncio
    async def test_request_contents(self, search, first_hit_oracle):
        await _run(_diabetes(), search, first_hit_oracle)
        request = first_hit_oracle.requests[0]
        assert request.resource_type == "Condition"
        assert request.target_display == "diabetes"
        assert request.preferred_systems == ["snomed"]
        assert request.previous_queries == ["diabetes"]
        assert request.remaining_turns == 5
        assert all(h.system == SNOMED for h in request.hits)

    @pytest.mark.asyncio
    async def test_repeat_of_first_query_stops_within_two_iterations(self, search):
        oracle = ScriptedOracle(
            [SearchDecision(terms=["diabetes", "mellitus"]), SearchDecision(terms=["Diabetes"])]
        )
        outcome = await _run(_diabetes(), search, oracle)
        assert outcome.failure_reason == REPEAT_QUERY
        assert outcome.iterations == 2
        assert not outcome.resolved

    @pytest.mark.asyncio
    async def test_refined_query_is_searched(self, search):
        oracle = ScriptedOracle([SearchDecision(terms=["hypertension"]), None])
        placeholder = Placeholder(path="code", pointer="/code", potential_displays=["raised bp"], potential_systems=[SNOMED])
        await _run(placeholder, search, oracle, config=ResolverConfig(max_iterations=2))
        second = oracle.requests[1]
        assert second.previous_queries == ["raised bp", "hypertension"]
        assert [h.code for h in second.hits] == ["38341003"]
        assert second.remaining_turns == 1

    @pytest.mark.asyncio
    async def test_oracle_calls_bounded_by_max_iterations(self, search):
        oracle = ScriptedOracle([SearchDecision(terms=[f"term{i}"]) for i in range(10)])
        outcome = await _run(_diabetes(), search, oracle, config=ResolverConfig(max_iterations=3))
        assert outcome.oracle_calls == len(oracle.requests) == 3
        assert outcome.iterations == 3
        # The search proposed on the final turn is never run
        assert [a.query for a in outcome.attempts] == ["diabetes", "term0", "term1"]
        assert outcome.failure_reason == NO_VALID_PICK

    @pytest.mark.asyncio
    async def test_no_decision_repeats_same_query(self, search):
        oracle = ScriptedOracle([None, None])
        outcome = await _run(_diabetes(), search, oracle, config=ResolverConfig(max_iterations=2))
        assert [a.query for a in outcome.attempts] == ["diabetes", "diabetes"]
        assert outcome.oracle_calls == 2
        assert outcome.failure_reason == NO_VALID_PICK

    @pytest.mark.asyncio
    async def test_no_decision_on_final_turn_reports_no_valid_pick(self, search):
        oracle = ScriptedOracle([SearchDecision(terms=["mellitus"]), None])
        outcome = await _run(_diabetes(), search, oracle, config=ResolverConfig(max_iterations=2))
        assert outcome.attempts[-1].decision.action is None
        assert outcome.failure_reason == NO_VALID_PICK

    @pytest.mark.asyncio
    async def test_pick_outside_hits_is_rejected(self, search):
        oracle = ScriptedOracle(
            [
                PickDecision(system=SNOMED, code="000000"),
                PickDecision(system=SNOMED, code="73211009"),
            ]
        )
        outcome = await _run(_diabetes(), search, oracle)
        assert outcome.resolved
        assert outcome.iterations == 2
        assert outcome.coding.code == "73211009"
        # Display filled from the hit when the pick omits it
        assert outcome.coding.display == "Diabetes mellitus"

    @pytest.mark.asyncio
    async def test_existing_code_outside_current_hits_is_rejected(self, search):
        oracle = ScriptedOracle([PickDecision(system=LOINC, code="2345-7")])
        outcome = await _run(_diabetes(), search, oracle, config=ResolverConfig(max_iterations=1))
        assert not outcome.resolved
        assert outcome.failure_reason == NO_VALID_PICK

    @pytest.mark.asyncio
    async def test_unresolved_reason_is_reported(self, search):
        oracle = ScriptedOracle([UnresolvedDecision(reason="ambiguous_concept")])
        outcome = await _run(_diabetes(), search, oracle)
        assert outcome.failure_reason == "ambiguous_concept"
        assert outcome.iterations == 1

    @pytest.mark.asyncio
    async def test_blank_seed_skips_search(self, search, monkeypatch):
        def no_search(*args, **kwargs):
            raise AssertionError("search must not run for a blank query")

        monkeypatch.setattr(search, "search_with_guidance", no_search)
        oracle = ScriptedOracle([PickDecision(system=SNOMED, code="73211009")])
        placeholder = Placeholder(path="code", pointer="/code", potential_codes=["73211009"])
        outcome = await _run(
            placeholder, search, oracle, config=ResolverConfig(max_iterations=1, seed_from_path=False)
        )
        assert oracle.requests[0].hits == []
        assert outcome.failure_reason == EMPTY_QUERY

    @pytest.mark.asyncio
    async def test_path_seeds_query_by_default(self, search, first_hit_oracle):
        placeholder = Placeholder(path="hypertension", pointer="/hypertension", potential_codes=["x"])
        outcome = await _run(placeholder, search, first_hit_oracle)
        assert outcome.attempts[0].query == "hypertension"
        assert outcome.coding.code == "38341003"

    @pytest.mark.asyncio
    async def test_attempt_log(self, search):
        oracle = ScriptedOracle([SearchDecision(terms=["blood"], justification="broaden"), None])
        placeholder = Placeholder(path="code", pointer="/code", potential_displays=["glucose"])
        outcome = await _run(placeholder, search, oracle, config=ResolverConfig(max_iterations=2))
        first = outcome.attempts[0]
        assert first.query == "glucose"
        assert first.hit_count == 3
        assert len(first.sample) == 3
        assert first.decision.action == "search"
        assert first.decision.terms == ["blood"]
        assert first.decision.justification == "broaden"
        assert outcome.attempts[1].decision.action is None

    @pytest.mark.asyncio
    async def test_cache_replays_without_oracle(self, search, first_hit_oracle):
        cache = StepCache()
        first = await _run(_diabetes(), search, first_hit_oracle, cache=cache)

        silent = ScriptedOracle([])
        second = await _run(_diabetes(), search, silent, cache=cache)
        assert silent.requests == []
        assert second.coding == first.coding
        assert second.oracle_calls == 0
