"""Response parsing, shape validation, and safe truncation."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class ResponseFormatError(ValueError):
    """Provider output did not match the expected structure."""


class MalformedResponse(ResponseFormatError):
    pass


def truncate_to_limit(content: str, limit: int) -> str:
    if len(content) <= limit:
        return content
    if limit <= 3:
        return content[:limit]
    return f"{content[: limit - 3].rstrip()}..."


def extract_json(text: str) -> Any:
    """Parses the first JSON value in ``text``, tolerating code fences and chatter."""
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    candidates.append(text)
    decoder = json.JSONDecoder()
    for candidate in candidates:
        stripped = candidate.strip()
        for idx, char in enumerate(stripped):
            if char not in "[{":
                continue
            try:
                value, _ = decoder.raw_decode(stripped[idx:])
            except json.JSONDecodeError:
                continue
            return value
    raise MalformedResponse("No JSON value found in response")


def _string_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedResponse(f"'{field}' must be a list")
    items = []
    for item in value:
        if not isinstance(item, str):
            raise MalformedResponse(f"'{field}' must contain only strings")
        if item.strip():
            items.append(item.strip())
    return items


def parse_questions(text: str, limit: int) -> List[str]:
    payload = extract_json(text)
    if isinstance(payload, dict):
        payload = payload.get("questions")
    questions = _string_list(payload, "questions")
    if not questions:
        raise MalformedResponse("No questions in response")
    return questions[:limit]


def parse_metadata(text: str) -> Dict[str, Any]:
    payload = extract_json(text)
    if not isinstance(payload, dict):
        raise MalformedResponse("Metadata must be a JSON object")
    mood = payload.get("mood")
    if mood is not None and not isinstance(mood, str):
        raise MalformedResponse("'mood' must be a string or null")
    return {
        "locations": _string_list(payload.get("locations"), "locations"),
        "people": _string_list(payload.get("people"), "people"),
        "themes": _string_list(payload.get("themes"), "themes"),
        "mood": (mood or "").strip() or None,
    }


def parse_places(text: str, limit: int) -> List[Dict[str, str]]:
    payload = extract_json(text)
    if isinstance(payload, dict):
        payload = payload.get("places")
    if not isinstance(payload, list):
        raise MalformedResponse("'places' must be a list")
    places: List[Dict[str, str]] = []
    for item in payload:
        if isinstance(item, str) and item.strip():
            places.append({"name": item.strip(), "reason": ""})
            continue
        if not isinstance(item, dict) or not isinstance(item.get("name"), str) or not item["name"].strip():
            raise MalformedResponse("Each place needs a 'name'")
        places.append({"name": item["name"].strip(), "reason": str(item.get("reason") or "").strip()})
    if not places:
        raise MalformedResponse("No places in response")
    return places[:limit]


def parse_expense_analysis(text: str) -> Dict[str, Any]:
    payload = extract_json(text)
    if not isinstance(payload, dict):
        raise MalformedResponse("Expense analysis must be a JSON object")
    summary = payload.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise MalformedResponse("'summary' must be a non-empty string")
    return {
        "summary": summary.strip(),
        "insights": _string_list(payload.get("insights"), "insights"),
        "top_categories": _string_list(payload.get("top_categories"), "top_categories"),
    }
