"""Content-addressed replay cache for oracle decisions.

A step is identified by the resource, the placeholder pointer, the iteration
index and the fingerprint of the decision request. Replaying a run with the
same inputs hits the cache instead of calling the oracle again.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

from .schemas import Decision, PickDecision, SearchDecision, UnresolvedDecision

logger = logging.getLogger(__name__)


def step_key(resource_identity: str, pointer: str, iteration: int, fingerprint: str) -> str:
    payload = json.dumps([resource_identity, pointer, iteration, fingerprint], separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def decision_to_dict(decision: Decision) -> Dict[str, Any]:
    return decision.to_dict()


def decision_from_dict(obj: Dict[str, Any]) -> Decision:
    action = obj.get("action")
    if action == "pick":
        return PickDecision(
            system=obj["system"],
            code=obj["code"],
            display=obj.get("display"),
            confidence=obj.get("confidence"),
        )
    if action == "search":
        return SearchDecision(terms=list(obj["terms"]), justification=obj.get("justification"))
    if action == "unresolved":
        return UnresolvedDecision(reason=obj["reason"])
    raise ValueError(f"Unknown cached decision action: {action!r}")


class StepCache:
    """In-memory decision cache."""

    def __init__(self):
        self._entries: Dict[str, Decision] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[Decision]:
        return self._entries.get(key)

    def put(self, key: str, decision: Decision) -> None:
        self._entries[key] = decision

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Awaitable[Optional[Decision]]],
    ) -> Optional[Decision]:
        cached = self.get(key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        decision = await factory()
        # Oracle failures are retried on replay, never cached
        if decision is None:
            return None
        async with self._lock:
            if key not in self._entries:
                self.put(key, decision)
        return decision


class JsonlStepCache(StepCache):
    """StepCache persisted as one JSON line per decision: {"key": ..., "decision": {...}}."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        loaded = 0
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    self._entries[entry["key"]] = decision_from_dict(entry["decision"])
                    loaded += 1
                except (ValueError, KeyError, TypeError) as e:
                    # A torn final line from a crashed run is expected
                    logger.warning("Skipping unreadable cache line %d in %s: %s", line_no, self.path, e)
        logger.info("Loaded %d cached decisions from %s", loaded, self.path)

    def put(self, key: str, decision: Decision) -> None:
        super().put(key, decision)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps({"key": key, "decision": decision_to_dict(decision)}, ensure_ascii=False) + "\n")
