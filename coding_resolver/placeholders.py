"""Placeholder discovery and in-place coding application for target documents.

A placeholder is any object node carrying one of the sentinel fields
``_potential_displays``, ``_potential_systems`` or ``_potential_codes``
(comma-joined strings or string lists).
"""
from __future__ import annotations

import copy
import json
from typing import Any, Dict, List, Optional, Tuple

from .schemas import Attempt, FailureRecord, Placeholder, ResolvedCoding

POTENTIAL_DISPLAYS = "_potential_displays"
POTENTIAL_SYSTEMS = "_potential_systems"
POTENTIAL_CODES = "_potential_codes"
PROPOSED_CODING = "_proposed_coding"

SENTINEL_FIELDS = (POTENTIAL_DISPLAYS, POTENTIAL_SYSTEMS, POTENTIAL_CODES)
MARKER_FIELDS = SENTINEL_FIELDS + (PROPOSED_CODING,)

CODING_ISSUE_URL = "http://example.org/fhir/StructureDefinition/coding-issue"


def parse_list(value: Any) -> Optional[List[str]]:
    if not value:
        return None
    if isinstance(value, str):
        items = [s.strip() for s in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    else:
        return None
    items = [s for s in items if s]
    return items or None


def escape_pointer_token(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def unescape_pointer_token(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def is_placeholder(node: Any) -> bool:
    return isinstance(node, dict) and any(node.get(f) for f in SENTINEL_FIELDS)


def find_placeholders(document: Any) -> List[Placeholder]:
    """Pre-order, depth-first walk with an explicit stack.

    List items are visited in index order and object keys in insertion
    order; keys starting with ``_`` are not descended into, and nothing below
    a placeholder node is visited.
    """
    found: List[Placeholder] = []
    stack: List[Tuple[Any, str, str]] = [(document, "", "")]
    while stack:
        node, path, pointer = stack.pop()
        if not isinstance(node, (dict, list)):
            continue
        if is_placeholder(node):
            found.append(
                Placeholder(
                    path=path or "root",
                    pointer=pointer or "/",
                    potential_displays=parse_list(node.get(POTENTIAL_DISPLAYS)),
                    potential_systems=parse_list(node.get(POTENTIAL_SYSTEMS)),
                    potential_codes=parse_list(node.get(POTENTIAL_CODES)),
                )
            )
            continue
        children: List[Tuple[Any, str, str]] = []
        if isinstance(node, list):
            for index, item in enumerate(node):
                children.append((item, f"{path}[{index}]", f"{pointer}/{index}"))
        else:
            for key, value in node.items():
                if str(key).startswith("_"):
                    continue
                child_path = f"{path}.{key}" if path else str(key)
                children.append((value, child_path, f"{pointer}/{escape_pointer_token(str(key))}"))
        # Reversed so the first child is popped first
        stack.extend(reversed(children))
    return found


def resolve_pointer(document: Any, pointer: str) -> Any:
    if pointer in ("", "/"):
        return document
    current = document
    for raw in pointer.lstrip("/").split("/"):
        token = unescape_pointer_token(raw)
        if isinstance(current, list):
            try:
                current = current[int(token)]
            except (ValueError, IndexError):
                return None
        elif isinstance(current, dict):
            if token not in current:
                return None
            current = current[token]
        else:
            return None
    return current


def strip_markers(node: Dict[str, Any]) -> None:
    for f in MARKER_FIELDS:
        node.pop(f, None)


def apply_coding(document: Any, pointer: str, coding: ResolvedCoding) -> bool:
    """Write the accepted coding into the node at ``pointer`` and drop its markers."""
    target = resolve_pointer(document, pointer)
    if not isinstance(target, dict):
        return False
    target["system"] = coding.system
    target["code"] = coding.code
    target["display"] = coding.display
    strip_markers(target)
    return True


def resource_ref(resource: Any) -> str:
    if not isinstance(resource, dict):
        return "Unknown/"
    return f"{resource.get('resourceType') or 'Unknown'}/{resource.get('id') or ''}"


def failure_key(resource: Any, pointer: str, index: Optional[int] = None) -> str:
    """`<type>/<id>:<pointer>`; an id-less resource is told apart by its batch position as `<type>/#<index>`."""
    if index is not None and not (isinstance(resource, dict) and resource.get("id")):
        rtype = (resource.get("resourceType") if isinstance(resource, dict) else None) or "Unknown"
        return f"{rtype}/#{index}:{pointer}"
    return f"{resource_ref(resource)}:{pointer}"


# -------------------- Unresolved annotation --------------------
def _compact_attempts(attempts: List[Attempt]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for a in attempts[-3:]:
        decision = a.decision
        justification = decision.justification[:240] if decision.justification else None
        out.append(
            {
                "query": a.query,
                "systems": a.systems,
                "hitCount": a.hit_count,
                "sample": [{"system": h.system, "code": h.code, "display": h.display} for h in a.sample[:3]],
                "decision": {
                    "action": decision.action,
                    "terms": decision.terms,
                    "reason": decision.reason,
                    "selection": decision.selection,
                    "justification": justification,
                },
            }
        )
    return out


def _attach_issue(node: Dict[str, Any], payload: Dict[str, Any]) -> None:
    extensions = node.get("extension") if isinstance(node.get("extension"), list) else []
    extensions = [e for e in extensions if not (isinstance(e, dict) and e.get("url") == CODING_ISSUE_URL)]
    extensions.append({"url": CODING_ISSUE_URL, "valueString": json.dumps(payload)})
    node["extension"] = extensions


def _issue_payload(node: Dict[str, Any], pointer: Optional[str], record: Optional[FailureRecord]) -> Dict[str, Any]:
    proposed = node.get(PROPOSED_CODING) if isinstance(node.get(PROPOSED_CODING), dict) else {}
    payload: Dict[str, Any] = {}
    if pointer is not None:
        payload["pointer"] = pointer
    payload["proposed"] = {"system": proposed.get("system"), "display": proposed.get("display")}
    payload["potentials"] = parse_list(node.get(POTENTIAL_DISPLAYS)) or []
    if record is not None:
        payload["queries"] = [{"query": a.query, "hits": a.hit_count} for a in record.attempts]
        payload["attempts"] = _compact_attempts(record.attempts)
        payload["failure"] = record.failure_reason
    payload["note"] = "unresolved_after_recoding"
    return payload


def finalize_unresolved(resources: List[Any], failures: Dict[str, FailureRecord]) -> List[Any]:
    """Return a copy where every leftover placeholder is replaced by a coding-issue extension."""
    cloned = copy.deepcopy(resources)
    for index, resource in enumerate(cloned):
        for placeholder in find_placeholders(resource):
            node = resolve_pointer(resource, placeholder.pointer)
            if not isinstance(node, dict):
                continue
            record = failures.get(failure_key(resource, placeholder.pointer, index))
            payload = _issue_payload(node, placeholder.pointer if record else None, record)
            strip_markers(node)
            _attach_issue(node, payload)
    return cloned
