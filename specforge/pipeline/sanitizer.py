from __future__ import annotations

import re
from typing import Optional

_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"
_JSON_FENCE_RE = re.compile(r"```json[ \t]*", flags=re.IGNORECASE)


def strip_reasoning(text: str) -> str:
    result = text
    while True:
        start = result.find(_THINK_OPEN)
        if start < 0:
            return result
        end = result.find(_THINK_CLOSE, start)
        if end < 0:
            # unclosed block: the model was cut off mid-thought
            return result[:start].strip()
        result = result[:start] + result[end + len(_THINK_CLOSE) :]


def _fenced_body(text: str, body_start: int) -> Optional[str]:
    end = text.find("```", body_start)
    if end < 0:
        return None
    return text[body_start:end].strip()


def extract(text: str) -> str:
    cleaned = strip_reasoning(text or "")

    match = _JSON_FENCE_RE.search(cleaned)
    if match:
        body = _fenced_body(cleaned, match.end())
        if body is not None:
            return body

    fence = cleaned.find("```")
    if fence >= 0:
        body_start = fence + 3
        newline = cleaned.find("\n", body_start)
        closing = cleaned.find("```", body_start)
        # skip a language tag on the opening fence line
        if newline >= 0 and (closing < 0 or newline < closing):
            body_start = newline + 1
        body = _fenced_body(cleaned, body_start)
        if body is not None:
            return body

    # an unclosed fence is not a block; fall back to the brace span
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if 0 <= start <= end:
        return cleaned[start : end + 1]

    return cleaned.strip()


__all__ = ["extract", "strip_reasoning"]
