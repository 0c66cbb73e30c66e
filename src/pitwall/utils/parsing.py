"""
Robust JSON decoding for model replies.

Model replies that are supposed to be JSON arrive wrapped in markdown fences,
embedded in prose, truncated, or not as JSON at all. ``decode_json_reply`` runs
a fixed fallback chain and never raises:

1. strict ``json.loads`` of the whole reply
2. the body of a fenced code block
3. the first balanced ``{...}`` object embedded in the text
4. the same with missing closing braces repaired (truncated replies)
5. heuristic ``"key": value`` pair extraction
6. the caller's default
"""

import json
import logging
import re
from typing import Any, Dict, NamedTuple, Optional

import jsonschema

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
_FENCED_ANY = re.compile(r"```\s*\n?(.*?)\n?```", re.DOTALL)
_KEY_VALUE = re.compile(
    r'"(?P<key>[A-Za-z_][\w]*)"\s*:\s*'
    r'(?P<value>"(?:[^"\\]|\\.)*"|-?\d+(?:\.\d+)?|true|false|null)'
)


class DecodedReply(NamedTuple):
    """Decoded object plus the fallback stage that produced it."""

    data: Dict[str, Any]
    stage: str  # strict | fenced | embedded | repaired | heuristic | default


def close_json_braces(src: str) -> str:
    """
    Append missing closing braces/brackets so that a truncation at the end of
    a model response does not break json.loads.

    Args:
        src: JSON string that may have missing closing braces

    Returns:
        JSON string with properly closed braces/brackets
    """
    stack: list[str] = []
    pairs = {"{": "}", "[": "]"}
    in_string = False
    escaped = False
    for ch in src:
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
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in pairs.values() and stack and stack[-1] == ch:
            stack.pop()
    closing = '"' if in_string else ""
    return src + closing + "".join(reversed(stack))


def extract_json_from_markdown(content: str) -> Optional[str]:
    """Extract JSON content from markdown code blocks, or None without one."""
    match = _FENCED_JSON.search(content)
    if match:
        return match.group(1).strip()

    # ``` ... ``` without a json specifier only counts if it looks like JSON
    match = _FENCED_ANY.search(content)
    if match:
        extracted = match.group(1).strip()
        if extracted.startswith(("{", "[")):
            return extracted
    return None


def extract_first_json_object(text: str) -> Optional[str]:
    """
    Find the first balanced ``{...}`` span that parses as JSON.

    Braces inside string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
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
                    candidate = text[start : i + 1]
                    try:
                        json.loads(candidate)
                        return candidate
                    except json.JSONDecodeError:
                        break
        start = text.find("{", start + 1)
    return None


def _loads_object(content: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _heuristic_pairs(text: str) -> Optional[Dict[str, Any]]:
    pairs: Dict[str, Any] = {}
    for match in _KEY_VALUE.finditer(text):
        try:
            pairs.setdefault(match.group("key"), json.loads(match.group("value")))
        except json.JSONDecodeError:
            continue
    return pairs or None


def _decode_stages(text: str):
    yield "strict", lambda: _loads_object(text.strip())

    def fenced():
        block = extract_json_from_markdown(text)
        return _loads_object(block) if block else None

    yield "fenced", fenced

    def embedded():
        candidate = extract_first_json_object(text)
        return _loads_object(candidate) if candidate else None

    yield "embedded", embedded

    def repaired():
        block = extract_json_from_markdown(text) or text
        start = block.find("{")
        return _loads_object(close_json_braces(block[start:])) if start != -1 else None

    yield "repaired", repaired
    yield "heuristic", lambda: _heuristic_pairs(text)


def decode_json_reply(
    text: Any,
    default: Optional[Dict[str, Any]] = None,
    schema: Optional[Dict[str, Any]] = None,
) -> DecodedReply:
    """
    Decode a JSON object from a model reply without ever raising.

    Args:
        text: Raw model reply
        default: Returned (copied) when every stage fails
        schema: Optional JSON schema the decoded object must satisfy; a
            decoded object that fails validation falls through to the next stage

    Returns:
        DecodedReply with the object and the stage that produced it
    """
    if isinstance(text, str) and text.strip():
        for stage, attempt in _decode_stages(text):
            data = attempt()
            if data is None:
                continue
            if schema is not None and not is_valid(data, schema):
                logger.debug(f"Decoded reply at stage '{stage}' failed schema validation")
                continue
            return DecodedReply(data, stage)

    logger.debug("Model reply could not be decoded; using default")
    return DecodedReply(dict(default or {}), "default")


def is_valid(data: Dict[str, Any], schema: Dict[str, Any]) -> bool:
    """Validate ``data`` against a JSON schema, logging the first error."""
    try:
        jsonschema.validate(instance=data, schema=schema)
        return True
    except jsonschema.exceptions.ValidationError as e:
        error_path = " -> ".join(map(str, e.path))
        if error_path:
            logger.debug(f"Validation Error at '{error_path}': {e.message}")
        else:
            logger.debug(f"Validation Error: {e.message}")
        return False
