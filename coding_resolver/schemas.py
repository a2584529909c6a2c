from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from typing import List, Literal, Optional, Dict, Any, Union


# -------------------- Corpus --------------------
@dataclass
class Concept:
    system: str
    code: str
    display: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Designation:
    concept_id: int
    label: str
    use_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CodeSystemMeta:
    system: str
    version: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    concept_count: int = 0
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------- Search --------------------
@dataclass
class Hit:
    system: str
    code: str
    display: str
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResult:
    query: str
    hits: List[Hit] = field(default_factory=list)
    count: int = 0
    guidance: Optional[str] = None
    full_system: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if result["guidance"] is None:
            result.pop("guidance")
        return result


@dataclass
class Capabilities:
    supported_systems: List[str] = field(default_factory=list)
    big_systems: List[str] = field(default_factory=list)
    builtin_systems: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CodeLookup:
    system: Optional[str]
    code: Optional[str]
    exists: bool
    display: Optional[str] = None
    normalized_system: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------- Documents --------------------
@dataclass
class Placeholder:
    path: str
    pointer: str
    potential_displays: Optional[List[str]] = None
    potential_systems: Optional[List[str]] = None
    potential_codes: Optional[List[str]] = None

    @property
    def target_display(self) -> str:
        if self.potential_displays:
            return self.potential_displays[0]
        return self.path

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResolvedCoding:
    system: str
    code: str
    display: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------- Oracle decisions --------------------
DecisionAction = Literal["pick", "search", "unresolved"]


@dataclass
class PickDecision:
    system: str
    code: str
    display: Optional[str] = None
    confidence: Optional[float] = None
    action: DecisionAction = "pick"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchDecision:
    terms: List[str]
    justification: Optional[str] = None
    action: DecisionAction = "search"

    @property
    def query(self) -> str:
        return " ".join(self.terms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UnresolvedDecision:
    reason: str
    action: DecisionAction = "unresolved"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Decision = Union[PickDecision, SearchDecision, UnresolvedDecision]


# -------------------- Decision requests --------------------
@dataclass
class DecisionRequest:
    resource_type: str
    path: str
    target_display: str
    preferred_systems: Optional[List[str]]
    capabilities: Capabilities
    previous_queries: List[str]
    remaining_turns: int
    hits: List[Hit] = field(default_factory=list)
    hit_count: Optional[int] = None
    guidance: Optional[str] = None
    full_system: bool = False

    def fingerprint(self) -> str:
        """Canonical JSON of every input the decision depends on."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------- Attempt auditing --------------------
@dataclass
class AttemptDecision:
    action: Optional[str] = None
    terms: Optional[List[str]] = None
    reason: Optional[str] = None
    selection: Optional[Dict[str, Any]] = None
    justification: Optional[str] = None

    @classmethod
    def from_decision(cls, decision: Optional[Decision]) -> "AttemptDecision":
        if decision is None:
            return cls(action=None, reason="no_decision")
        if isinstance(decision, PickDecision):
            return cls(
                action="pick",
                selection={"system": decision.system, "code": decision.code, "display": decision.display},
            )
        if isinstance(decision, SearchDecision):
            return cls(action="search", terms=list(decision.terms), justification=decision.justification)
        return cls(action="unresolved", reason=decision.reason)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Attempt:
    query: str
    systems: Optional[List[str]]
    hit_count: int
    sample: List[Hit] = field(default_factory=list)
    decision: AttemptDecision = field(default_factory=AttemptDecision)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResolutionOutcome:
    pointer: str
    path: str
    coding: Optional[ResolvedCoding] = None
    attempts: List[Attempt] = field(default_factory=list)
    failure_reason: Optional[str] = None
    iterations: int = 0
    oracle_calls: int = 0

    @property
    def resolved(self) -> bool:
        return self.coding is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FailureRecord:
    attempts: List[Attempt] = field(default_factory=list)
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    resources: List[Dict[str, Any]]
    failures: Dict[str, FailureRecord] = field(default_factory=dict)
    outcomes: Dict[str, ResolutionOutcome] = field(default_factory=dict)

    @property
    def resolved_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.resolved)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CodingReportItem:
    pointer: str
    original: Dict[str, Optional[str]]
    status: Literal["ok", "recoding"]
    reason: Optional[str] = None
    resource_type: Optional[str] = None
    id: Optional[str] = None
    resource_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------- Configuration --------------------
@dataclass
class SearchConfig:
    """Limits and thresholds for concept search."""
    default_limit: int = 20
    small_system_threshold: int = 200  # full-system fallback applies at or below this size
    big_system_threshold: int = 500

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GuidanceConfig:
    weak_hit_count: int = 3
    long_query_tokens: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FuzzyPolicy:
    """Acceptance bound for fuzzy system matching: max(floor, ceil(ratio * shorter segment))."""
    floor: int = 2
    ratio: float = 0.34

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResolverPolicy:
    aliases: Dict[str, str] = field(default_factory=dict)
    fuzzy: FuzzyPolicy = field(default_factory=FuzzyPolicy)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResolverConfig:
    """Configuration for the placeholder resolution loop and its batching."""
    max_iterations: int = 5
    search_limit: int = 200
    prompt_hit_limit: int = 50
    resource_batch_size: int = 3
    placeholder_batch_size: int = 5
    seed_from_path: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OracleConfig:
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    timeout: int = 60
    max_attempts: int = 3  # per request, covering transport errors and unparseable replies
    retry_backoff: float = 1.0  # exponential backoff base in seconds, capped at 10x

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
