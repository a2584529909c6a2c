"""
Pytest configuration and shared fixtures.
"""

import json
from typing import Any, Dict, List, Optional

import pytest

from coding_resolver.schemas import (
    Decision,
    DecisionRequest,
    PickDecision,
    UnresolvedDecision,
)
from coding_resolver.search import ConceptSearch
from coding_resolver.store import ConceptStore

LOINC = "http://loinc.org"
SNOMED = "http://snomed.info/sct"
RXNORM = "http://www.nlm.nih.gov/research/umls/rxnorm"
CONDITION_CLINICAL = "http://terminology.hl7.org/CodeSystem/condition-clinical"


def _lines(header: Dict[str, Any], concepts: List[Dict[str, Any]]) -> List[str]:
    return [json.dumps(header)] + [json.dumps(c) for c in concepts]


LOINC_LINES = _lines(
    {"resourceType": "CodeSystem", "url": LOINC, "version": "2.77", "name": "LOINC"},
    [
        {"code": "2345-7", "display": "Glucose [Mass/volume] in Serum or Plasma"},
        {"code": "2339-0", "display": "Glucose [Mass/volume] in Blood"},
        {
            "code": "4548-4",
            "display": "Hemoglobin A1c/Hemoglobin.total in Blood",
            "designation": [{"use": {"code": "short"}, "value": "HbA1c"}],
        },
        {"code": "718-7", "display": "Hemoglobin [Mass/volume] in Blood"},
    ],
)

SNOMED_LINES = _lines(
    {"resourceType": "CodeSystem", "url": SNOMED, "version": "20240301", "name": "SNOMED_CT"},
    [
        {"code": "73211009", "display": "Diabetes mellitus"},
        {"code": "44054006", "display": "Diabetes mellitus type 2"},
        {
            "code": "38341003",
            "display": "Hypertensive disorder, systemic arterial",
            "designation": [{"value": "Hypertension"}, {"value": "High blood pressure"}],
        },
        {"code": "33747003", "display": "Glucose measurement, blood"},
    ],
)

RXNORM_LINES = _lines(
    {"resourceType": "CodeSystem", "url": RXNORM, "name": "RxNorm"},
    [
        {"code": "6809", "display": "metformin"},
        {"code": "860975", "display": "metformin hydrochloride 500 MG Extended Release Oral Tablet"},
    ],
)

CONDITION_CLINICAL_RESOURCE = {
    "resourceType": "CodeSystem",
    "url": CONDITION_CLINICAL,
    "name": "ConditionClinicalStatusCodes",
    "concept": [
        {
            "code": "active",
            "display": "Active",
            "concept": [
                {"code": "recurrence", "display": "Recurrence"},
                {"code": "relapse", "display": "Relapse"},
            ],
        },
        {
            "code": "inactive",
            "display": "Inactive",
            "concept": [
                {"code": "remission", "display": "Remission"},
                {"code": "resolved", "display": "Resolved"},
            ],
        },
    ],
}


@pytest.fixture
def store():
    """In-memory store loaded with small LOINC, SNOMED, RxNorm and HL7 samples."""
    s = ConceptStore.create(":memory:")
    s.ingest_lines(LOINC_LINES, source="loinc.ndjson")
    s.ingest_lines(SNOMED_LINES, source="snomed.ndjson")
    s.ingest_lines(RXNORM_LINES, source="rxnorm.ndjson")
    s.ingest_code_system(CONDITION_CLINICAL_RESOURCE, source="condition-clinical.json")
    s.finalize()
    yield s
    s.close()


@pytest.fixture
def search(store) -> ConceptSearch:
    return ConceptSearch(store)


# -------------------- Fake oracles --------------------
class FirstHitOracle:
    """Picks the first current hit, gives up when there is none."""

    def __init__(self):
        self.requests: List[DecisionRequest] = []

    async def decide(self, request: DecisionRequest) -> Optional[Decision]:
        self.requests.append(request)
        if not request.hits:
            return UnresolvedDecision(reason="no_hits")
        h = request.hits[0]
        return PickDecision(system=h.system, code=h.code, display=h.display, confidence=0.9)


class ScriptedOracle:
    """Returns the scripted decisions in order, then None."""

    def __init__(self, decisions: List[Optional[Decision]]):
        self.decisions = list(decisions)
        self.requests: List[DecisionRequest] = []

    async def decide(self, request: DecisionRequest) -> Optional[Decision]:
        self.requests.append(request)
        if len(self.requests) <= len(self.decisions):
            return self.decisions[len(self.requests) - 1]
        return None


@pytest.fixture
def first_hit_oracle() -> FirstHitOracle:
    return FirstHitOracle()
