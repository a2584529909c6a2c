"""Terminology coding resolver for FHIR-like resources.

Modules:
- schemas: dataclass models for concepts, hits, decisions, outcomes and configs
- store: SQLite concept store with an FTS5 designation index
- system_resolver: map loose system names/URIs onto loaded code systems
- search: scoped full-text search, guidance and small-system fallback
- guidance: hints for empty or weak search results
- placeholders: find placeholder nodes, apply codings, annotate leftovers
- prompt_builder: construct the decision prompt and JSON schema
- llm_client: async OpenAI client with retries
- oracle: decision parsing and the LLM-backed decision oracle
- step_cache: content-addressed replay cache for oracle decisions
- resolver: per-placeholder search/decide loop
- batch_runner: batched async runner over resource collections
- loader: build the terminology store from CodeSystem exports
"""

__all__ = [
    "schemas",
    "store",
    "system_resolver",
    "search",
    "guidance",
    "placeholders",
    "prompt_builder",
    "llm_client",
    "oracle",
    "step_cache",
    "resolver",
    "batch_runner",
    "loader",
]
