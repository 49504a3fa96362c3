"""
Best-effort JSON extraction from free-text LLM output.

Providers are told to answer with a single JSON object but routinely wrap it
in Markdown fences, prepend reasoning, or append commentary. Everything here
is pure so it can be exercised against captured replies.
"""
import json
import re
from typing import Any, Dict, Iterator, Optional

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def _strip_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # Unterminated fence (reply cut off by max_tokens)
    if text.startswith("```json"):
        return text[7:].strip()
    if text.startswith("```"):
        return text[3:].strip()
    return text


def _balanced_objects(text: str) -> Iterator[str]:
    """Yield each balanced {...} span, scanning left to right from every "{".

    Braces inside JSON string literals do not count towards depth.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end: Optional[int] = None
        for i in range(start, len(text)):
            ch = text[i]
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
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end is not None:
            yield text[start:end + 1]
        # An unmatched "{" in prose must not hide objects that follow it
        start = text.find("{", start + 1)


def extract_json_object(content: Any) -> Dict[str, Any]:
    """Extract and parse the first JSON object found in `content`.

    Accepts an already-decoded dict, a bare JSON object, a fenced block, or an
    object embedded anywhere in surrounding prose. Raises ValueError when no
    JSON object can be recovered.
    """
    if isinstance(content, dict):
        return content
    if content is None:
        raise ValueError("Empty response content")

    text = str(content).strip()
    if not text:
        raise ValueError("Empty response content")

    for candidate in (_strip_fences(text), text):
        # Fast path: the whole candidate is the object
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data

        for blob in _balanced_objects(candidate):
            try:
                data = json.loads(blob)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data

    raise ValueError("No JSON object found in response")


def looks_like_safety_verdict(content: Any) -> bool:
    """True when a reply is a moderation verdict ("safe", "unsafe\\nS1") rather than an analysis."""
    if not isinstance(content, str):
        return False
    first = content.strip().splitlines()[0].strip().lower() if content.strip() else ""
    return first in ("safe", "unsafe")
