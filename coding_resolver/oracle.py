"""Decision oracle contract and its LLM-backed implementation."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from .llm_client import LlmError, LlmJSONClient
from .prompt_builder import PROMPT_HIT_LIMIT, build_messages
from .schemas import Decision, DecisionRequest, PickDecision, SearchDecision, UnresolvedDecision

logger = logging.getLogger(__name__)


class OracleError(LlmError):
    """The oracle answered, but not with one of the three decision shapes."""


class DecisionOracle(Protocol):
    async def decide(self, request: DecisionRequest) -> Optional[Decision]:
        """Return a decision, or None when no decision could be obtained this turn."""
        ...


def _terms(value: Any) -> List[str]:
    if isinstance(value, str):
        items = [value]
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value if v is not None]
    else:
        return []
    return [t.strip() for t in items if t and t.strip()]


def parse_decision(obj: Dict[str, Any]) -> Decision:
    if not isinstance(obj, dict):
        raise OracleError(f"Decision must be an object, got {type(obj).__name__}")
    action = obj.get("action")
    if action == "pick":
        selection = obj.get("selection")
        if not isinstance(selection, dict) or not selection.get("system") or not selection.get("code"):
            raise OracleError("pick decision without system/code selection")
        confidence = obj.get("confidence")
        return PickDecision(
            system=str(selection["system"]),
            code=str(selection["code"]),
            display=(str(selection["display"]) if selection.get("display") else None),
            confidence=(float(confidence) if isinstance(confidence, (int, float)) else None),
        )
    if action == "search":
        terms = _terms(obj.get("terms"))
        if not terms:
            raise OracleError("search decision without terms")
        justification = obj.get("justification")
        return SearchDecision(terms=terms, justification=str(justification) if justification else None)
    if action == "unresolved":
        reason = obj.get("reason")
        return UnresolvedDecision(reason=str(reason) if reason else "unresolved")
    raise OracleError(f"Unknown decision action: {action!r}")


class LlmDecisionOracle:
    """Asks a chat model to pick a hit, refine the query, or give up."""

    def __init__(self, client: LlmJSONClient, hit_limit: int = PROMPT_HIT_LIMIT):
        self.client = client
        self.hit_limit = hit_limit

    async def decide(self, request: DecisionRequest) -> Optional[Decision]:
        messages, schema = build_messages(request, self.hit_limit)
        try:
            decision, _raw = await self.client.create_and_validate(messages, schema, parse_decision)
        except LlmError as e:
            logger.warning("No decision for %s (%s): %s", request.path, request.resource_type, e)
            return None
        return decision
