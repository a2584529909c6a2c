"""
Tests for search.py and guidance.py - scoped search, guidance, fallback and lookups.
"""

import asyncio
import time

import pytest

from coding_resolver.guidance import LIMITED_RESULTS, NO_MATCHES
from coding_resolver.schemas import SearchConfig
from coding_resolver.search import ConceptSearch, build_fts_expr, display_similarity, tokenize
from coding_resolver.store import SearchBackendError
from conftest import CONDITION_CLINICAL, LOINC, RXNORM, SNOMED


class TestTokenize:
    """Test query tokenization and FTS expression building."""

    def test_tokenize_lowercases_and_drops_short_tokens(self):
        assert tokenize("Glucose [Mass/volume] in a Blood") == ["glucose", "mass", "volume", "in", "blood"]

    def test_tokenize_blank(self):
        assert tokenize("") == []
        assert tokenize(None) == []
        assert tokenize("a - b") == []

    def test_fts_expr_quotes_every_token(self):
        assert build_fts_expr(["glucose", "near"]) == '"glucose" OR "near"'

    def test_display_similarity(self):
        assert display_similarity("Active", "active") == 1.0
        assert display_similarity("active", "inactive") > display_similarity("active", "resolved")


class TestSearch:
    """Test plain scoped search."""

    def test_glucose_in_loinc(self, search):
        hits = search.search("glucose", ["loinc"])
        assert len(hits) >= 1
        assert all(h.system == LOINC for h in hits)

    @pytest.mark.parametrize("system", [LOINC, SNOMED, RXNORM, CONDITION_CLINICAL])
    def test_every_hit_is_in_requested_system(self, search, system):
        for query in ("glucose", "blood", "metformin", "active", "diabetes"):
            assert all(h.system == system for h in search.search(query, [system]))

    def test_unscoped_search_spans_systems(self, search):
        systems = {h.system for h in search.search("glucose")}
        assert systems == {LOINC, SNOMED}

    def test_blank_query_returns_nothing(self, search):
        assert search.search("   ", [LOINC]) == []

    def test_unresolvable_scope_returns_nothing(self, search):
        assert search.search("glucose", ["http://example.org/fhir/CodeSystem/widgets"]) == []

    def test_limit(self, search):
        assert len(search.search("blood", limit=2)) == 2

    def test_fts_syntax_in_query_is_not_interpreted(self, search):
        hits = search.search('diabetes" OR NEAR(', ["snomed"])
        assert {h.code for h in hits} == {"73211009", "44054006"}

    def test_backend_error_yields_no_hits(self, search, monkeypatch):
        def boom(*args, **kwargs):
            raise SearchBackendError("index missing")

        monkeypatch.setattr(search.store, "match_designations", boom)
        assert search.search("glucose") == []


class TestSearchWithGuidance:
    """Test guidance and the small-system fallback."""

    def test_hits_without_guidance(self, search):
        result = search.search_with_guidance("diabetes", ["snomed"])
        assert result.count == len(result.hits) == 2
        assert result.guidance is None
        assert result.full_system is False

    def test_no_matches_guidance(self, search):
        result = search.search_with_guidance("xyzzy")
        assert result.hits == []
        assert result.guidance == NO_MATCHES
        assert "guidance" in result.to_dict()

    def test_limited_results_guidance(self, search):
        result = search.search_with_guidance("metformin extended release oral tablet", [RXNORM])
        assert 0 < len(result.hits) < 3
        assert result.guidance == LIMITED_RESULTS

    def test_guidance_omitted_from_dict_when_absent(self, search):
        assert "guidance" not in search.search_with_guidance("diabetes", ["snomed"]).to_dict()

    def test_small_system_full_listing(self, search, store):
        result = search.search_with_guidance("zzz qqq", [CONDITION_CLINICAL], limit=20)
        size = store.system_size(CONDITION_CLINICAL)
        assert result.full_system is True
        assert len(result.hits) == min(size, 20) == 6
        assert all(h.system == CONDITION_CLINICAL for h in result.hits)
        assert "6 concepts" in result.guidance

    def test_full_listing_capped_at_limit(self, search):
        result = search.search_with_guidance("zzz", [CONDITION_CLINICAL], limit=4)
        assert result.full_system is True
        assert len(result.hits) == 4

    def test_full_listing_ranks_by_similarity(self, search):
        result = search.search_with_guidance("resolve", [CONDITION_CLINICAL], limit=20)
        assert result.full_system is True
        assert result.hits[0].code == "resolved"

    def test_blank_query_in_small_system_lists_it(self, search):
        result = search.search_with_guidance("", [CONDITION_CLINICAL])
        assert result.full_system is True
        assert len(result.hits) == 6

    def test_no_fallback_above_threshold(self, store):
        search = ConceptSearch(store, config=SearchConfig(small_system_threshold=5))
        result = search.search_with_guidance("zzz", [CONDITION_CLINICAL])
        assert result.hits == []
        assert result.full_system is False
        assert result.guidance == NO_MATCHES

    def test_no_fallback_with_several_systems(self, search):
        result = search.search_with_guidance("zzz", [CONDITION_CLINICAL, LOINC])
        assert result.hits == []
        assert result.full_system is False

    def test_search_many_isolates_queries(self, search, monkeypatch):
        original = search.search_with_guidance

        def flaky(query, systems=None, limit=None):
            if query == "broken":
                raise RuntimeError("boom")
            return original(query, systems, limit)

        monkeypatch.setattr(search, "search_with_guidance", flaky)
        results = search.search_many(["diabetes", "broken", "  ", "hypertension"], ["snomed"])
        assert [r.query for r in results] == ["diabetes", "broken", "hypertension"]
        assert results[1].hits == []
        assert results[2].hits[0].code == "38341003"


class TestAsyncSearch:
    @pytest.mark.asyncio
    async def test_async_search_matches_sync(self, search):
        result = await search.asearch_with_guidance("diabetes", ["snomed"])
        assert result == search.search_with_guidance("diabetes", ["snomed"])

    @pytest.mark.asyncio
    async def test_async_search_leaves_event_loop_free(self, search, monkeypatch):
        original = search.search_with_guidance

        def slow(query, systems=None, limit=None):
            time.sleep(0.2)
            return original(query, systems, limit)

        monkeypatch.setattr(search, "search_with_guidance", slow)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        result = await search.asearch_with_guidance("diabetes", ["snomed"])
        task.cancel()
        assert result.count == 2
        assert ticks >= 5


class TestLookups:
    """Test capabilities and code existence checks."""

    def test_every_loaded_code_exists(self, search, store):
        for system in store.supported_systems():
            for concept in store.concepts_for_system(system):
                lookup = search.code_exists(system, concept.code)
                assert lookup.exists is True
                assert lookup.display == concept.display

    def test_nonexistent_code(self, search):
        lookup = search.code_exists(LOINC, "__nonexistent__")
        assert lookup.exists is False
        assert lookup.normalized_system == LOINC

    def test_code_exists_normalizes_system(self, search):
        lookup = search.code_exists("snomed", "73211009")
        assert lookup.exists is True
        assert lookup.system == "snomed"
        assert lookup.normalized_system == SNOMED

    def test_code_exists_missing_inputs(self, search):
        assert search.code_exists(None, "1").exists is False
        assert search.code_exists(LOINC, None).exists is False

    def test_codes_exist_preserves_order(self, search):
        results = search.codes_exist(
            [{"system": LOINC, "code": "2345-7"}, {"system": LOINC, "code": "nope"}, {"code": "6809"}]
        )
        assert [r.exists for r in results] == [True, False, False]

    def test_capabilities(self, search):
        caps = search.capabilities()
        assert caps.supported_systems == [LOINC, SNOMED, RXNORM, CONDITION_CLINICAL]
        assert caps.big_systems == []
        assert caps.builtin_systems == [CONDITION_CLINICAL]

    def test_big_systems_threshold(self, store):
        caps = ConceptSearch(store, config=SearchConfig(big_system_threshold=4)).capabilities()
        assert caps.big_systems == [CONDITION_CLINICAL]

    def test_normalize_system(self, search):
        assert search.normalize_system("LOINC") == LOINC
