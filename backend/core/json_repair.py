import ast
import json
import re
from typing import Any, Dict, Optional, Tuple

from core.errors import GenerationError

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def strip_json_fence(text: str) -> str:
    payload = (text or "").strip()
    match = _FENCE_RE.search(payload)
    if match:
        return match.group(1).strip()
    payload = re.sub(r"^```(?:json)?", "", payload).strip()
    payload = re.sub(r"```$", "", payload).strip()
    return payload


def close_truncated_json(payload: str) -> str:
    """Append the closers a truncated JSON document is missing."""
    stack = []
    in_string = False
    escaped = False
    for ch in payload:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    repaired = payload
    if in_string:
        repaired += '"'
    repaired = re.sub(r",\s*$", "", repaired)
    return repaired + "".join(reversed(stack))


def _candidates(payload: str) -> list[str]:
    candidates = [payload]
    for opener, closer in (("{", "}"), ("[", "]")):
        start = payload.find(opener)
        end = payload.rfind(closer)
        if start >= 0 and end > start:
            candidates.append(payload[start : end + 1])
        elif start >= 0:
            candidates.append(close_truncated_json(payload[start:]))
    return candidates


def parse_json_payload_with_diag(text: str) -> Tuple[Optional[Any], Dict[str, Any]]:
    payload = strip_json_fence(text)
    diagnostics: Dict[str, Any] = {"raw_length": len(payload), "attempts": [], "parsed": False}
    if not payload:
        return None, diagnostics

    for index, candidate in enumerate(_candidates(payload)):
        attempt: Dict[str, Any] = {"index": index, "length": len(candidate)}
        try:
            parsed = json.loads(candidate)
            attempt["parser"] = "json"
        except ValueError as exc:
            attempt["json_error"] = str(exc)[:240]
            try:
                # Some models emit Python-style dicts or single quotes.
                parsed = ast.literal_eval(candidate)
                attempt["parser"] = "ast"
            except (ValueError, SyntaxError, TypeError) as ast_exc:
                attempt["ast_error"] = str(ast_exc)[:240]
                diagnostics["attempts"].append(attempt)
                continue
        diagnostics["attempts"].append(attempt)
        if isinstance(parsed, list) and len(parsed) == 1:
            parsed = parsed[0]
        diagnostics["parsed"] = True
        return parsed, diagnostics
    return None, diagnostics


def parse_json_payload(text: str) -> Optional[Any]:
    payload, _ = parse_json_payload_with_diag(text)
    return payload


def parse_json_object(text: str, what: str = "payload") -> Dict[str, Any]:
    payload, diagnostics = parse_json_payload_with_diag(text)
    if not isinstance(payload, dict):
        raise GenerationError(
            f"Could not parse {what} as a JSON object",
            detail=json.dumps(diagnostics, ensure_ascii=False)[:1000],
        )
    return payload
