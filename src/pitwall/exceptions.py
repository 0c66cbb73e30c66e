"""
Pitwall Exception Hierarchy

This module defines the exception hierarchy for the orchestration engine,
providing specific error types for each failure category with rich context
and standardized error handling.

The hierarchy is designed to:
1. Separate recoverable failures (tier, handler, synthesis, store) from fatal ones
2. Include rich context information (thread IDs, handler names, timestamps)
3. Keep user-facing messages free of internal details
4. Maintain consistent error message formats
"""

import time
from typing import Any, Dict, List, Optional


class PitwallError(Exception):
    """
    Base exception class for all Pitwall errors.

    Attributes:
        error_code: Unique error code for programmatic handling
        handler_name: Name of the handler where error occurred (if applicable)
        thread_id: Conversation thread where error occurred (if applicable)
        timestamp: When the error occurred
        context: Additional context information
        user_message: User-friendly error message
        developer_message: Detailed technical error message
        suggestion: Suggested fix or next steps (if applicable)
    """

    def __init__(
        self,
        message: str,
        error_code: str = "PITWALL_ERROR",
        handler_name: Optional[str] = None,
        thread_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        """
        Initialize error with rich context.

        Args:
            message: Technical error message for developers
            error_code: Unique error code for programmatic handling
            handler_name: Name of handler where error occurred
            thread_id: Thread where error occurred
            context: Additional context information
            user_message: User-friendly error message
            suggestion: Suggested fix or next steps
        """
        super().__init__(message)
        self.error_code = error_code
        self.handler_name = handler_name
        self.thread_id = thread_id
        self.timestamp = time.time()
        self.context = context or {}
        self.user_message = user_message or message
        self.developer_message = message
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.developer_message,
            "user_message": self.user_message,
            "handler_name": self.handler_name,
            "thread_id": self.thread_id,
            "timestamp": self.timestamp,
            "context": self.context,
            "suggestion": self.suggestion,
        }

    def __str__(self) -> str:
        """String representation with context."""
        parts = [f"[{self.error_code}]"]
        if self.handler_name:
            parts.append(f"Handler:{self.handler_name}")
        if self.thread_id:
            parts.append(f"Thread:{self.thread_id}")
        parts.append(self.developer_message)
        return " ".join(parts)


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(PitwallError):
    """Raised when a configuration value is missing or out of range."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        self.config_key = config_key
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        error_code = kwargs.pop("error_code", "CONFIGURATION_ERROR")
        super().__init__(
            message,
            error_code=error_code,
            context=context,
            suggestion=kwargs.pop("suggestion", "Check the configuration values and environment variables."),
            **kwargs
        )


# =============================================================================
# ROUTING ERRORS
# =============================================================================

class RoutingTierFailure(PitwallError):
    """
    Raised inside the router when a single tier cannot produce a decision.

    Always recoverable: the router logs it and moves on to the next tier.
    """

    def __init__(self, message: str, tier: Optional[str] = None, **kwargs):
        self.tier = tier
        context = kwargs.pop("context", {})
        if tier:
            context["tier"] = tier
        error_code = kwargs.pop("error_code", "ROUTING_TIER_FAILURE")
        super().__init__(message, error_code=error_code, context=context, **kwargs)


# =============================================================================
# HANDLER ERRORS
# =============================================================================

class HandlerFailure(PitwallError):
    """
    Raised when one handler fails during execution.

    Isolated to one fan-out branch; siblings keep running.
    """

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "HANDLER_FAILURE")
        super().__init__(message, error_code=error_code, **kwargs)


class UnknownHandlerError(PitwallError):
    """
    Raised when a handler name is not present in the registry.

    Fatal for the workflow: the engine moves to the error node.
    """

    def __init__(
        self,
        handler_name: str,
        available_handlers: Optional[List[str]] = None,
        **kwargs
    ):
        self.available_handlers = available_handlers or []
        context = kwargs.pop("context", {})
        context["available_handlers"] = self.available_handlers
        super().__init__(
            f"Unknown handler '{handler_name}'",
            error_code="UNKNOWN_HANDLER",
            handler_name=handler_name,
            context=context,
            user_message="The request could not be matched to an analysis.",
            suggestion=f"Register the handler or use one of: {', '.join(self.available_handlers)}",
            **kwargs
        )


class SynthesisFailure(PitwallError):
    """Raised when merging handler outputs fails; the engine falls back to one output."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "SYNTHESIS_FAILURE")
        super().__init__(message, error_code=error_code, **kwargs)


# =============================================================================
# MODEL ERRORS
# =============================================================================

class ModelError(PitwallError):
    """
    Raised when the language model call fails on transport, timeout or status.

    Attributes:
        status_code: HTTP status returned by the model endpoint, if any
        is_retryable: Whether the retry policy should try again
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        is_retryable: bool = True,
        **kwargs
    ):
        self.status_code = status_code
        self.is_retryable = is_retryable
        context = kwargs.pop("context", {})
        if status_code is not None:
            context["status_code"] = status_code
        context["is_retryable"] = is_retryable
        error_code = kwargs.pop("error_code", "MODEL_ERROR")
        super().__init__(message, error_code=error_code, context=context, **kwargs)


class CircuitOpenError(ModelError):
    """Raised without calling the model while the circuit breaker is open."""

    def __init__(self, name: str, retry_in: float, **kwargs):
        self.retry_in = retry_in
        super().__init__(
            f"Circuit '{name}' is open; retry in {retry_in:.1f}s",
            error_code="CIRCUIT_OPEN",
            is_retryable=False,
            suggestion="Wait for the recovery timeout before calling again.",
            **kwargs
        )


# =============================================================================
# STATE & STORAGE ERRORS
# =============================================================================

class StateError(PitwallError):
    """Raised when a workflow state is updated after it was finalized."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "STATE_ERROR")
        super().__init__(message, error_code=error_code, **kwargs)


class StoreError(PitwallError):
    """
    Raised when a checkpoint or memory read/write fails.

    Logged by the caller; never aborts the user-facing response.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,  # "put", "get", "list", "delete", "cleanup"
        backend: Optional[str] = None,
        **kwargs
    ):
        self.operation = operation
        self.backend = backend
        context = kwargs.pop("context", {})
        if operation:
            context["operation"] = operation
        if backend:
            context["backend"] = backend
        super().__init__(
            message,
            error_code="STORE_ERROR",
            context=context,
            user_message=f"Store {operation} operation failed." if operation else "Store operation failed.",
            suggestion="Check the database path and available disk space.",
            **kwargs
        )


# =============================================================================
# STREAMING ERRORS
# =============================================================================

class CapacityError(PitwallError):
    """Raised when a subscription would exceed the connection limit."""

    def __init__(self, max_connections: int, **kwargs):
        self.max_connections = max_connections
        super().__init__(
            f"Maximum connections reached ({max_connections})",
            error_code="CAPACITY_ERROR",
            context={"max_connections": max_connections},
            user_message="The server is at capacity. Please try again later.",
            **kwargs
        )
