from .parsing import DecodedReply, decode_json_reply
from .query import (
    detect_query_type,
    extract_entities,
    generate_thread_id,
    sanitize_query,
    sanitize_user_context,
)
from .resilience import CircuitBreaker, CircuitState, retry_with_backoff

__all__ = [
    "DecodedReply",
    "decode_json_reply",
    "detect_query_type",
    "extract_entities",
    "generate_thread_id",
    "sanitize_query",
    "sanitize_user_context",
    "CircuitBreaker",
    "CircuitState",
    "retry_with_backoff",
]
