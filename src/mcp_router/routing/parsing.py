"""Helpers for reading JSON-shaped reasoning-engine output."""

from __future__ import annotations

import json
from typing import Any


def message_text(response: Any) -> str:
    """Extract plain text from a chat model response."""

    if isinstance(response, str):
        return response
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content)


def extract_json_object(raw: str) -> dict[str, Any]:
    """Parse the first JSON object in ``raw``, tolerating markdown fences.

    Raises:
        ValueError: when no JSON object can be decoded.
    """

    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
    if text.endswith("```"):
        text = text.rsplit("```", 1)[0]
    text = text.strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("response does not contain a JSON object")

    data = json.loads(text[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data
