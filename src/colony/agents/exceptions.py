"""
Colony Exception Hierarchy

This module defines the exception hierarchy used across the colony runtime.
Every error carries structured context (entity name, error code, timestamp)
so it can be logged, published to observers, or shown inline.

The hierarchy separates:
1. Configuration errors, raised before any network activity
2. Transport errors from the model backend (connection, timeout, non-2xx)
3. Malformed payload errors (a response body that is not valid JSON)
4. Tool execution errors, which the agent loop converts into tool results
5. Scheduling errors (an entity asked to run two loops at once)
"""

import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ColonyError(Exception):
    """
    Base exception class for all colony errors.

    Attributes:
        error_code: Unique error code for programmatic handling
        entity_name: Name of the entity where the error occurred (if applicable)
        timestamp: When the error occurred
        context: Additional context information
        user_message: User-friendly error message
        developer_message: Detailed technical error message
        suggestion: Suggested fix or next steps (if applicable)
    """

    def __init__(
        self,
        message: str,
        error_code: str = "COLONY_ERROR",
        entity_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.entity_name = entity_name
        self.timestamp = time.time()
        self.context = context or {}
        self.user_message = user_message or message
        self.developer_message = message
        self.suggestion = suggestion

    @property
    def message(self) -> str:
        return self.developer_message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.developer_message,
            "user_message": self.user_message,
            "entity_name": self.entity_name,
            "timestamp": self.timestamp,
            "context": self.context,
            "suggestion": self.suggestion,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}]"]
        if self.entity_name:
            parts.append(f"Entity:{self.entity_name}")
        parts.append(self.developer_message)
        return " ".join(parts)


# =============================================================================
# CONFIGURATION & SCHEDULING ERRORS
# =============================================================================

class ConfigurationError(ColonyError):
    """
    Raised when a call cannot be attempted because configuration is incomplete.

    Examples:
    - No endpoint configured for the entity
    - No model selected
    - Empty conversation
    """

    def __init__(
        self,
        message: str,
        config_field: Optional[str] = None,
        config_value: Optional[Any] = None,
        **kwargs
    ):
        self.config_field = config_field
        self.config_value = config_value

        context = kwargs.pop("context", None) or {}
        if config_field:
            context["config_field"] = config_field
        if config_value is not None:
            context["config_value"] = str(config_value)

        super().__init__(
            message,
            error_code="CONFIGURATION_ERROR",
            context=context,
            user_message=message,
            suggestion="Check the entity's endpoint, model and conversation.",
            **kwargs
        )


class EntityBusyError(ColonyError):
    """Raised when an entity is asked to start a loop while one is running."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code="ENTITY_BUSY",
            suggestion="Queue the message until the running loop completes.",
            **kwargs
        )


# =============================================================================
# MODEL ERRORS
# =============================================================================

class ModelError(ColonyError):
    """Base class for errors coming back from a model backend."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "MODEL_ERROR")
        super().__init__(message, error_code=error_code, **kwargs)


class ModelResponseError(ModelError):
    """
    Raised when a model response body cannot be decoded.

    Examples:
    - Non-JSON body on a 2xx response
    - Truncated body
    """

    def __init__(
        self,
        message: str,
        response_content: Optional[Any] = None,
        **kwargs
    ):
        self.response_content = response_content

        context = kwargs.pop("context", None) or {}
        if response_content is not None:
            context["response_content"] = str(response_content)[:500]  # Limit size for logging

        super().__init__(
            message,
            error_code="MODEL_RESPONSE_ERROR",
            context=context,
            user_message="The model response could not be decoded.",
            suggestion="Check that the endpoint speaks the expected wire format.",
            **kwargs
        )


class APIErrorClassification(Enum):
    """Classification of transport errors."""

    AUTHENTICATION_FAILED = "authentication_failed"
    INVALID_MODEL = "invalid_model"
    RATE_LIMIT = "rate_limit"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    INVALID_REQUEST = "invalid_request"
    STREAM_ERROR = "stream_error"
    UNKNOWN = "unknown"


class ModelAPIError(ModelError):
    """
    Transport-level failure talking to a model backend.

    Covers connection failures, timeouts, non-2xx responses and error events
    delivered inside a stream. No automatic retry is attempted for these.
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        classification: Optional[str] = None,
        raw_response: Optional[Any] = None,
        **kwargs
    ):
        self.provider = provider
        self.api_endpoint = api_endpoint
        self.status_code = status_code
        self.classification = classification or APIErrorClassification.UNKNOWN.value
        self.raw_response = raw_response

        context = kwargs.pop("context", None) or {}
        context.update({
            "provider": provider,
            "api_endpoint": api_endpoint,
            "status_code": status_code,
            "classification": self.classification,
        })

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            if self.classification == APIErrorClassification.AUTHENTICATION_FAILED.value:
                suggestion = "Check the API key configured for this endpoint"
            elif self.classification == APIErrorClassification.SERVICE_UNAVAILABLE.value:
                suggestion = "Service temporarily unavailable. Please try again later."
            elif self.classification in (
                APIErrorClassification.NETWORK_ERROR.value,
                APIErrorClassification.TIMEOUT.value,
            ):
                suggestion = "Check that the model server is running and reachable"

        super().__init__(
            message,
            error_code=f"MODEL_API_{self.classification.upper()}_ERROR",
            context=context,
            user_message=message,
            suggestion=suggestion,
            **kwargs
        )

    @staticmethod
    def classify_status(status_code: Optional[int]) -> str:
        """Map an HTTP status code to an APIErrorClassification value."""
        if status_code is None:
            return APIErrorClassification.UNKNOWN.value
        if status_code in (401, 403):
            return APIErrorClassification.AUTHENTICATION_FAILED.value
        if status_code == 404:
            return APIErrorClassification.INVALID_MODEL.value
        if status_code == 408:
            return APIErrorClassification.TIMEOUT.value
        if status_code == 429:
            return APIErrorClassification.RATE_LIMIT.value
        if status_code >= 500:
            return APIErrorClassification.SERVICE_UNAVAILABLE.value
        if status_code >= 400:
            return APIErrorClassification.INVALID_REQUEST.value
        return APIErrorClassification.UNKNOWN.value

    @classmethod
    def from_response(
        cls,
        provider: str,
        status_code: int,
        body: Any = None,
        api_endpoint: Optional[str] = None,
    ) -> "ModelAPIError":
        """
        Build an error from a non-2xx HTTP response.

        The message is taken from ``error.message``, then ``message``, and
        falls back to ``HTTP <status>``.
        """
        message = None
        if isinstance(body, dict):
            error_data = body.get("error")
            if isinstance(error_data, dict):
                message = error_data.get("message")
            elif isinstance(error_data, str) and error_data:
                message = error_data
            if not message:
                message = body.get("message")
        if not message:
            message = f"HTTP {status_code}"

        return cls(
            message=message,
            provider=provider,
            api_endpoint=api_endpoint,
            status_code=status_code,
            classification=cls.classify_status(status_code),
            raw_response=body,
        )

    @classmethod
    def from_exception(
        cls,
        provider: str,
        exception: Exception,
        api_endpoint: Optional[str] = None,
    ) -> "ModelAPIError":
        """Build an error from a transport exception (connection, timeout...)."""
        if isinstance(exception, httpx.TimeoutException):
            classification = APIErrorClassification.TIMEOUT.value
        elif isinstance(exception, httpx.TransportError):
            classification = APIErrorClassification.NETWORK_ERROR.value
        else:
            classification = APIErrorClassification.UNKNOWN.value

        message = str(exception) or exception.__class__.__name__
        return cls(
            message=message,
            provider=provider,
            api_endpoint=api_endpoint,
            classification=classification,
        )


# =============================================================================
# TOOL ERRORS
# =============================================================================

class ToolExecutionError(ColonyError):
    """
    Raised when tool execution fails.

    Examples:
    - Unknown tool name
    - Arguments that do not match the tool's schema
    - The tool function itself raising
    """

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        tool_args: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        self.tool_name = tool_name
        self.tool_args = tool_args

        context = kwargs.pop("context", None) or {}
        if tool_name:
            context["tool_name"] = tool_name
        if tool_args:
            context["tool_args"] = str(tool_args)

        super().__init__(
            message,
            error_code="TOOL_EXECUTION_ERROR",
            context=context,
            user_message=message,
            suggestion="Check tool arguments and ensure the tool is available.",
            **kwargs
        )
