"""Wire dialect detection for model endpoints."""

from enum import Enum
from urllib.parse import urlsplit


class WireDialect(str, Enum):
    """The fixed set of wire protocols a backend may speak."""

    # Messages API with structured content blocks, thinking and tool_use blocks
    ANTHROPIC = "anthropic"
    # OpenAI-style chat completions with function-calling tools
    OPENAI = "openai"
    # Stateless local REST variant: single input, typed output array, no tools
    LOCAL_REST = "local_rest"
    # Stateful local variant: response-id chaining, server-side tool integrations
    LOCAL_STATEFUL = "local_stateful"

    @property
    def supports_client_tools(self) -> bool:
        """Whether the agent loop executes tools on the client for this dialect."""
        return self in (WireDialect.ANTHROPIC, WireDialect.OPENAI)


def detect_dialect(url: str) -> WireDialect:
    """
    Classify an endpoint URL into a wire dialect.

    Total over all strings: anything unrecognised is treated as an
    OpenAI-compatible chat completions endpoint.
    """
    url = url or ""
    if "/v1/messages" in url or "anthropic.com" in url:
        return WireDialect.ANTHROPIC
    if "/api/v1/chat" in url:
        return WireDialect.LOCAL_STATEFUL
    if "/api/v0/" in url:
        return WireDialect.LOCAL_REST
    return WireDialect.OPENAI


def get_models_url(url: str) -> str:
    """Return the models-list URL that belongs to a chat endpoint."""
    parts = urlsplit(url)
    origin = f"{parts.scheme}://{parts.netloc}"
    if "/api/v0/" in parts.path or "/api/v1/" in parts.path:
        return f"{origin}/api/v0/models"
    return f"{origin}/v1/models"
