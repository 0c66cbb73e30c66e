"""
Query preparation helpers: input sanitizing, thread ids and entity extraction.
"""

import random
import re
import string
import time
from typing import Any, Dict, List, Mapping

MAX_QUERY_LENGTH = 2000

ALLOWED_CONTEXT_KEYS = (
    "previous_queries",
    "favorite_drivers",
    "favorite_teams",
    "preferred_season",
    "analysis_preferences",
    "session_id",
)

KNOWN_DRIVERS = (
    "Hamilton", "Verstappen", "Leclerc", "Russell", "Sainz", "Norris", "Piastri",
    "Alonso", "Schumacher", "Senna", "Prost", "Vettel", "Ricciardo", "Gasly", "Ocon",
)
KNOWN_TEAMS = (
    "Mercedes", "Red Bull", "Ferrari", "McLaren", "Alpine", "Aston Martin",
    "Williams", "AlphaTauri", "Alfa Romeo", "Haas",
)
KNOWN_RACES = (
    "Monaco", "Silverstone", "Monza", "Spa", "Suzuka", "Interlagos",
    "Abu Dhabi", "Bahrain", "Australia", "Imola",
)

_YEAR = re.compile(r"\b(?:19|20)\d{2}\b")
_BASE36 = string.digits + string.ascii_lowercase

# Checked in order; the first matching family names the query type.
_QUERY_TYPES = (
    ("season_analysis", ("season", "championship")),
    ("driver_performance", ("driver",)),
    ("race_strategy", ("race", "circuit", "strategy")),
    ("championship_prediction", ("predict", "forecast", "winner")),
    ("historical_comparison", ("compare", "historical", "era")),
)


def sanitize_query(query: Any) -> str:
    """
    Validate and clean a raw query.

    Raises:
        ValueError: If the query is not a string, is blank, or exceeds
            ``MAX_QUERY_LENGTH`` characters after trimming.
    """
    if not isinstance(query, str) or not query:
        raise ValueError("Query must be a non-empty string")
    sanitized = query.strip()
    if not sanitized:
        raise ValueError("Query cannot be empty")
    if len(sanitized) > MAX_QUERY_LENGTH:
        raise ValueError(f"Query too long (max {MAX_QUERY_LENGTH} characters)")
    return sanitized.replace("<", "").replace(">", "")


def generate_thread_id() -> str:
    """Return ``f1_<epoch ms>_<9 random base36 chars>``."""
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"f1_{int(time.time() * 1000)}_{suffix}"


def _sanitize_value(value: Any, depth: int, max_str: int, max_list: int) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value[:max_str]
    if isinstance(value, (int, float)):
        return value if value == value and value not in (float("inf"), float("-inf")) else None
    if isinstance(value, (list, tuple)):
        return list(value[:max_list])
    if isinstance(value, Mapping):
        if depth > 3:
            return {}
        cleaned = {}
        for key, item in value.items():
            item = _sanitize_value(item, depth + 1, 200, 5)
            if item is not None:
                cleaned[str(key)] = item
        return cleaned
    return None


def sanitize_user_context(user_context: Any) -> Dict[str, Any]:
    """Keep only the known user-context keys, bounding string and list sizes."""
    if not isinstance(user_context, Mapping):
        return {}
    sanitized = {}
    for key in ALLOWED_CONTEXT_KEYS:
        if key in user_context and user_context[key] is not None:
            value = _sanitize_value(user_context[key], 0, 500, 10)
            if value is not None:
                sanitized[key] = value
    return sanitized


def detect_query_type(query: str) -> str:
    lower = query.lower()
    for query_type, words in _QUERY_TYPES:
        if any(word in lower for word in words):
            return query_type
        if query_type == "driver_performance" and any(d.lower() in lower for d in KNOWN_DRIVERS):
            return query_type
    return "general_f1"


def extract_entities(query: str) -> Dict[str, List[str]]:
    """Pull seasons, known drivers, teams and circuits out of the query text."""
    lower = query.lower()
    seasons = list(dict.fromkeys(_YEAR.findall(query)))
    return {
        "drivers": [d for d in KNOWN_DRIVERS if d.lower() in lower],
        "teams": [t for t in KNOWN_TEAMS if t.lower() in lower],
        "seasons": seasons,
        "races": [r for r in KNOWN_RACES if r.lower() in lower],
    }


def normalize_entities(entities: Any, query: str) -> Dict[str, List[str]]:
    """
    Coerce model-supplied entities to ``{kind: [str, ...]}``.

    A bare string or number becomes a one-item list. Any kind whose value is
    not usable is taken from ``extract_entities(query)`` instead, as is the
    whole mapping when ``entities`` is not a mapping.
    """
    extracted = extract_entities(query)
    if not isinstance(entities, Mapping):
        return extracted
    normalized = {}
    for kind, fallback in extracted.items():
        value = entities.get(kind)
        if isinstance(value, bool) or value is None:
            normalized[kind] = fallback
        elif isinstance(value, (str, int)):
            normalized[kind] = [str(value)]
        elif isinstance(value, (list, tuple)) and all(
            isinstance(v, (str, int)) and not isinstance(v, bool) for v in value
        ):
            normalized[kind] = [str(v) for v in value]
        else:
            normalized[kind] = fallback
    return normalized
