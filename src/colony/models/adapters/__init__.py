"""Adapter classes for the supported wire dialects."""

from colony.models.adapters.base import (
    APIProviderAdapter,
    CompletionRequest,
    PreparedRequest,
    ServerSentEvent,
    StreamState,
    aiter_sse,
)
from colony.models.adapters.anthropic import AnthropicAdapter, AnthropicStreamState
from colony.models.adapters.openai import OpenAIAdapter, OpenAIStreamState
from colony.models.adapters.local import (
    LocalEventStreamState,
    LocalRestAdapter,
    StatefulLocalAdapter,
)
from colony.models.adapters.factory import ProviderAdapterFactory

__all__ = [
    # Base
    "APIProviderAdapter",
    "CompletionRequest",
    "PreparedRequest",
    "ServerSentEvent",
    "StreamState",
    "aiter_sse",
    # Anthropic
    "AnthropicAdapter",
    "AnthropicStreamState",
    # OpenAI
    "OpenAIAdapter",
    "OpenAIStreamState",
    # Local servers
    "LocalRestAdapter",
    "StatefulLocalAdapter",
    "LocalEventStreamState",
    # Factory
    "ProviderAdapterFactory",
]
