from __future__ import annotations

import argparse
import asyncio
import copy
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from .llm_client import LlmJSONClient
from .logging_config import setup_logging
from .oracle import DecisionOracle, LlmDecisionOracle
from .placeholders import (
    apply_coding,
    escape_pointer_token,
    failure_key,
    finalize_unresolved,
    find_placeholders,
    resource_ref,
    unescape_pointer_token,
)
from .resolver import resolve_placeholder
from .schemas import (
    BatchResult,
    Capabilities,
    CodingReportItem,
    FailureRecord,
    OracleConfig,
    Placeholder,
    ResolutionOutcome,
    ResolverConfig,
)
from .search import ConceptSearch
from .step_cache import JsonlStepCache, StepCache
from .store import ConceptStore

logger = logging.getLogger(__name__)

_QUANTITY_KEY = re.compile(r"Quantity$", re.IGNORECASE)


def _chunks(items: List[Any], size: int) -> List[List[Any]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


async def _guarded(
    placeholder: Placeholder,
    resource_type: str,
    resource_identity: str,
    search: ConceptSearch,
    oracle: DecisionOracle,
    capabilities: Capabilities,
    config: ResolverConfig,
    cache: Optional[StepCache],
) -> ResolutionOutcome:
    try:
        return await resolve_placeholder(
            placeholder,
            resource_type,
            resource_identity,
            search,
            oracle,
            capabilities,
            config=config,
            cache=cache,
        )
    except Exception as e:  # failures stay local to the placeholder
        logger.exception("Resolution of %s %s failed", resource_identity, placeholder.pointer)
        return ResolutionOutcome(
            pointer=placeholder.pointer,
            path=placeholder.path,
            failure_reason=f"internal_error:{type(e).__name__}",
        )


async def _resolve_resource(
    resource: Any,
    index: int,
    search: ConceptSearch,
    oracle: DecisionOracle,
    capabilities: Capabilities,
    config: ResolverConfig,
    cache: Optional[StepCache],
    result: BatchResult,
) -> None:
    placeholders = find_placeholders(resource)
    if not placeholders:
        return
    resource_type = (resource.get("resourceType") if isinstance(resource, dict) else None) or "Unknown"
    identity = f"{resource_ref(resource)}#{index}"

    for group in _chunks(placeholders, config.placeholder_batch_size):
        outcomes = await asyncio.gather(
            *(_guarded(p, resource_type, identity, search, oracle, capabilities, config, cache) for p in group)
        )
        for placeholder, outcome in zip(group, outcomes):
            key = failure_key(resource, placeholder.pointer, index)
            result.outcomes[key] = outcome
            if outcome.coding is not None and apply_coding(resource, placeholder.pointer, outcome.coding):
                continue
            if outcome.coding is not None:
                logger.warning("Pointer %s no longer resolves in %s; coding dropped", placeholder.pointer, identity)
                outcome.coding = None
                outcome.failure_reason = outcome.failure_reason or "pointer_not_found"
            result.failures[key] = FailureRecord(attempts=outcome.attempts, failure_reason=outcome.failure_reason)


async def resolve_resources(
    resources: List[Any],
    search: ConceptSearch,
    oracle: DecisionOracle,
    config: Optional[ResolverConfig] = None,
    cache: Optional[StepCache] = None,
) -> BatchResult:
    """
    Resolve every placeholder in ``resources`` and stitch the codings in.

    Resources run in groups of ``resource_batch_size`` and, inside each
    resource, placeholders in groups of ``placeholder_batch_size``; a group
    starts only after the previous one finished. The input list is not
    modified.
    """
    config = config or ResolverConfig()
    resolved = copy.deepcopy(resources)
    result = BatchResult(resources=resolved)
    capabilities = search.capabilities()

    indexed = list(enumerate(resolved))
    for group in _chunks(indexed, config.resource_batch_size):
        await asyncio.gather(
            *(_resolve_resource(r, i, search, oracle, capabilities, config, cache, result) for i, r in group)
        )

    logger.info(
        "Resolved %d of %d placeholder(s) across %d resource(s)",
        result.resolved_count,
        len(result.outcomes),
        len(resolved),
    )
    return result


# -------------------- Existing coding analysis --------------------
def _looks_like_quantity(node: Dict[str, Any], pointer: str) -> bool:
    last = unescape_pointer_token(pointer.rsplit("/", 1)[-1]) if pointer else ""
    return bool(_QUANTITY_KEY.search(last) or last in ("low", "high")) and "value" in node


def collect_codings(resource: Any) -> List[Tuple[str, Dict[str, Any]]]:
    """Return (pointer, {system, code, display}) for every coding already present in ``resource``."""
    out: List[Tuple[str, Dict[str, Any]]] = []
    stack: List[Tuple[Any, str]] = [(resource, "")]
    while stack:
        node, pointer = stack.pop()
        if isinstance(node, list):
            stack.extend(reversed([(item, f"{pointer}/{i}") for i, item in enumerate(node)]))
            continue
        if not isinstance(node, dict):
            continue
        if isinstance(node.get("coding"), list):
            for i, c in enumerate(node["coding"]):
                if isinstance(c, dict):
                    out.append((f"{pointer}/coding/{i}", {k: c.get(k) for k in ("system", "code", "display")}))
        if (
            pointer
            and isinstance(node.get("system"), str)
            and isinstance(node.get("code"), str)
            and not _looks_like_quantity(node, pointer)
        ):
            out.append((pointer, {k: node.get(k) for k in ("system", "code", "display")}))
        children = [
            (value, f"{pointer}/{escape_pointer_token(str(key))}")
            for key, value in node.items()
            if key != "coding" and not str(key).startswith("_")
        ]
        stack.extend(reversed(children))
    return out


def _norm_display(value: Optional[str]) -> str:
    return " ".join(str(value or "").split()).lower()


def analyze_codings(resources: List[Any], search: ConceptSearch) -> Tuple[List[CodingReportItem], List[str]]:
    """Check existing codings against the store; returns the report and the pointers that need recoding."""
    entries: List[Tuple[Any, str, Dict[str, Any]]] = []
    for resource in resources:
        for pointer, coding in collect_codings(resource):
            entries.append((resource, pointer, coding))

    lookups = search.codes_exist([coding for _, _, coding in entries])
    report: List[CodingReportItem] = []
    recode: List[str] = []
    for (resource, pointer, coding), lookup in zip(entries, lookups):
        rt = resource.get("resourceType") if isinstance(resource, dict) else None
        rid = resource.get("id") if isinstance(resource, dict) else None
        ref = resource_ref(resource) if rt else None
        found = bool(coding.get("system") and coding.get("code") and lookup.exists)
        if found and _norm_display(lookup.display) == _norm_display(coding.get("display")):
            report.append(CodingReportItem(pointer, coding, "ok", resource_type=rt, id=rid, resource_ref=ref))
            continue
        recode.append(pointer)
        report.append(
            CodingReportItem(
                pointer,
                coding,
                "recoding",
                reason="display_mismatch" if found else "not_found",
                resource_type=rt,
                id=rid,
                resource_ref=ref,
            )
        )
    return report, recode


# -------------------- I/O --------------------
def _load_resources(path: str) -> List[Any]:
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    stripped = text.lstrip()
    if stripped.startswith("["):
        return json.loads(text)
    if stripped.startswith("{"):
        try:
            obj = json.loads(text)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            if obj.get("resourceType") == "Bundle":
                return [e["resource"] for e in obj.get("entry") or [] if isinstance(e, dict) and e.get("resource")]
            return [obj]
    # NDJSON
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _write_json(path: str, resources: List[Any]):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(resources, f, indent=2, ensure_ascii=False)


def _write_failures_jsonl(path: str, failures: Dict[str, FailureRecord]):
    with open(path, "w", encoding="utf-8") as f:
        for key, record in failures.items():
            f.write(json.dumps({"key": key, **record.to_dict()}, ensure_ascii=False) + "\n")


def _write_failures_csv(path: str, result: BatchResult):
    rows = []
    for key, outcome in result.outcomes.items():
        rows.append(
            {
                "key": key,
                "path": outcome.path,
                "resolved": outcome.resolved,
                "system": outcome.coding.system if outcome.coding else None,
                "code": outcome.coding.code if outcome.coding else None,
                "display": outcome.coding.display if outcome.coding else None,
                "failure_reason": outcome.failure_reason,
                "iterations": outcome.iterations,
                "oracle_calls": outcome.oracle_calls,
                "queries": " | ".join(a.query for a in outcome.attempts),
            }
        )
    pd.DataFrame(rows).to_csv(path, index=False)


def _write_report_csv(path: str, report: List[CodingReportItem]):
    rows = [
        {
            "resource_ref": item.resource_ref,
            "pointer": item.pointer,
            "system": item.original.get("system"),
            "code": item.original.get("code"),
            "display": item.original.get("display"),
            "status": item.status,
            "reason": item.reason,
        }
        for item in report
    ]
    pd.DataFrame(rows).to_csv(path, index=False)


def main():
    parser = argparse.ArgumentParser(description="Resolve terminology placeholders in FHIR-like resources")
    parser.add_argument("--input", required=True, help="JSON array, Bundle, or NDJSON of resources")
    parser.add_argument("--store", required=True, help="SQLite terminology store built by coding_resolver.loader")
    parser.add_argument("--out-json", default="resolved.json")
    parser.add_argument("--failures-jsonl", default=None)
    parser.add_argument("--failures-csv", default=None, help="Per-placeholder outcome summary")
    parser.add_argument("--report-csv", default=None, help="Existence/display check of codings already present")
    parser.add_argument("--cache-jsonl", default=None, help="Decision replay cache; reused across runs")
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--resource-concurrency", type=int, default=3)
    parser.add_argument("--placeholder-concurrency", type=int, default=5)
    parser.add_argument("--max-iterations", type=int, default=5)
    parser.add_argument("--no-path-seed", action="store_true", help="Leave the first query blank when no display is known")
    parser.add_argument("--finalize", action="store_true", help="Replace leftover placeholders with coding-issue extensions")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-json", action="store_true")
    args = parser.parse_args()

    setup_logging(args.log_level, json_output=args.log_json)

    config = ResolverConfig(
        max_iterations=args.max_iterations,
        resource_batch_size=args.resource_concurrency,
        placeholder_batch_size=args.placeholder_concurrency,
        seed_from_path=not args.no_path_seed,
    )
    store = ConceptStore.open(args.store)
    search = ConceptSearch(store)
    oracle = LlmDecisionOracle(LlmJSONClient(OracleConfig(model=args.model)), hit_limit=config.prompt_hit_limit)
    cache: Optional[StepCache] = JsonlStepCache(args.cache_jsonl) if args.cache_jsonl else None

    resources = _load_resources(args.input)
    try:
        if args.report_csv:
            report, recode = analyze_codings(resources, search)
            _write_report_csv(args.report_csv, report)
            logger.info("Wrote coding report to %s (%d need recoding)", args.report_csv, len(recode))

        result = asyncio.run(resolve_resources(resources, search, oracle, config=config, cache=cache))
    finally:
        store.close()

    output = finalize_unresolved(result.resources, result.failures) if args.finalize else result.resources
    _write_json(args.out_json, output)
    logger.info("Wrote %d resources to %s", len(output), args.out_json)
    if args.failures_jsonl:
        _write_failures_jsonl(args.failures_jsonl, result.failures)
        logger.info("Wrote %d failures to %s", len(result.failures), args.failures_jsonl)
    if args.failures_csv:
        _write_failures_csv(args.failures_csv, result)
        logger.info("Wrote outcome summary to %s", args.failures_csv)
    if cache is not None:
        logger.info("Decision cache: %d hit(s), %d miss(es)", cache.hits, cache.misses)


if __name__ == "__main__":
    main()
