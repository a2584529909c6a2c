from __future__ import annotations

import json
from typing import Dict, List, Tuple

from .schemas import DecisionRequest

PROMPT_HIT_LIMIT = 50


def build_json_schema() -> Dict:
    # One flat object; which fields matter depends on "action" and is checked by parse_decision
    return {
        "name": "terminology_decision",
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "action": {"type": "string", "enum": ["pick", "search", "unresolved"]},
                "selection": {
                    "anyOf": [
                        {
                            "type": "object",
                            "additionalProperties": False,
                            "properties": {
                                "system": {"type": "string"},
                                "code": {"type": "string"},
                                "display": {"type": ["string", "null"]},
                            },
                            "required": ["system", "code", "display"],
                        },
                        {"type": "null"},
                    ]
                },
                "confidence": {"type": ["number", "null"]},
                "terms": {"anyOf": [{"type": "array", "items": {"type": "string"}}, {"type": "null"}]},
                "justification": {"type": ["string", "null"]},
                "reason": {"type": ["string", "null"]},
            },
            "required": ["action", "selection", "confidence", "terms", "justification", "reason"],
        },
        "strict": True,
    }


SYSTEM_PROMPT = (
    "You help pick the best terminology code strictly from the provided hits."
    "\n\nRules (query strategy):"
    "\n- Keep each search query concise (2-4 tokens). Avoid long concatenations."
    "\n- Start with the head concept. If hits are only very specific subtypes, broaden with synonyms or"
    " hypernyms rather than adding more words."
    "\n- Use 2-3 targeted queries. When a query yields viable hits, prefer selecting from them over"
    " continuing to search."
    "\n- If an expansion yields zero hits after a query that had hits, back off and choose the best"
    " general-fit candidate from the earlier list."
    "\n- Search only within the allowed systems passed in (do not cross into other systems)."
    '\n- Examples of broadening: "neurodegenerative disorder" -> "degenerative disease of the central nervous'
    ' system", "degenerative brain disorder", "nervous system degeneration".'
    "\n\nSelection constraints:"
    "\n- Only pick from the current hits; NEVER invent codes."
    '\n- When action is "pick", copy the exact display from the chosen hit.'
    '\n- If Remaining Turns = 1, do NOT return action "search"; choose "pick" or "unresolved".'
    "\n- Never repeat a previous search; repeated queries end the resolution."
    "\n\nReturn JSON, one of:"
    '\n{"action":"pick","selection":{"system":"...","code":"...","display":"..."},"confidence":0.0-1.0}'
    '\n{"action":"search","terms":["term1","term2"],"justification":"..."}'
    '\n{"action":"unresolved","reason":"..."}'
    "\nUnused fields must be null."
)


def _format_previous(queries: List[str]) -> str:
    return ", ".join(f'{i}. "{q}"' for i, q in enumerate(queries, start=1)) or "(none)"


def build_user_prompt(request: DecisionRequest, hit_limit: int = PROMPT_HIT_LIMIT) -> str:
    caps = request.capabilities
    big = ", ".join(caps.big_systems[:10]) or "(none detected)"
    builtin = ", ".join(caps.builtin_systems[:10]) or "(none detected)"
    systems = ", ".join(request.preferred_systems or []) or "any"

    meta: List[str] = []
    if request.hit_count is not None:
        meta.append(f"Total hits (server): {request.hit_count}")
    if request.full_system:
        meta.append("Note: full system listing returned")

    shown = [
        {"system": h.system, "code": h.code, "display": h.display, "score": h.score}
        for h in request.hits[:hit_limit]
    ]

    lines = [
        "Context:",
        f"- Resource Type: {request.resource_type}",
        f"- Attribute Path: {request.path}",
        f"- Target Display: {request.target_display}",
        f"- Preferred Systems: {systems}",
        f"- Large code systems: {big}",
        f"- Built-in FHIR code systems: {builtin}",
        "",
        f"Previous Searches: {_format_previous(request.previous_queries)}",
        f"Remaining Turns: {request.remaining_turns}",
    ]
    if meta:
        lines.append(f"Result Meta: {' | '.join(meta)}")
    if request.guidance:
        lines.append(f"Guidance: {request.guidance}")
    lines.append("")
    lines.append(f"Current Results ({len(shown)} hits shown):")
    lines.append(json.dumps(shown, indent=2, ensure_ascii=False))
    return "\n".join(lines)


def build_messages(request: DecisionRequest, hit_limit: int = PROMPT_HIT_LIMIT) -> Tuple[List[Dict], Dict]:
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_user_prompt(request, hit_limit)},
    ]
    return messages, build_json_schema()
