import logging
import os
import re
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from colony.agents.exceptions import (
    ConfigurationError,
    ModelAPIError,
    ModelResponseError,
)
from colony.models.adapters import (
    APIProviderAdapter,
    CompletionRequest,
    ProviderAdapterFactory,
)
from colony.models.adapters.base import ChunkCallback
from colony.models.dialects import WireDialect, detect_dialect, get_models_url
from colony.models.response_models import ModelInfo, UnifiedCompletionResult

logger = logging.getLogger(__name__)

# Loopback and private-network hosts never need an API key
LOCAL_HOST_PATTERN = re.compile(r"localhost|127\.0\.0\.1|0\.0\.0\.0|192\.168\.|10\.\d")

# Model list entries that can hold a conversation; embeddings are left out
CHAT_MODEL_TYPES = (None, "", "llm", "vlm", "model")


class ModelConfig(BaseModel):
    """
    Pydantic schema for one entity's model backend.

    The wire dialect is not configured: it is derived from ``endpoint`` on
    every call. Reads the API key from the environment when not provided
    and the endpoint belongs to a known vendor.
    """

    endpoint: Optional[str] = Field(
        None, description="Full chat endpoint URL (e.g. 'http://localhost:1234/api/v1/chat')"
    )
    model: Optional[str] = Field(
        None, description="Model identifier sent to the server"
    )
    api_key: Optional[str] = Field(
        None, description="API authentication key (reads from env if None)"
    )
    max_tokens: int = Field(2048, gt=0, description="Maximum tokens to generate per call")
    timeout: float = Field(180.0, gt=0, description="Per-request timeout in seconds")

    model_config = ConfigDict(extra="allow")

    @field_validator("endpoint", "model", "api_key")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def _read_api_key_from_env(self) -> "ModelConfig":
        """Reads the vendor API key from the environment if none was given."""
        if self.api_key is not None or not self.endpoint:
            return self

        env_var = None
        dialect = detect_dialect(self.endpoint)
        if dialect == WireDialect.ANTHROPIC:
            env_var = "ANTHROPIC_API_KEY"
        elif dialect == WireDialect.OPENAI and "openai.com" in self.endpoint:
            env_var = "OPENAI_API_KEY"

        if env_var and os.getenv(env_var):
            object.__setattr__(self, "api_key", os.getenv(env_var))
            logger.debug(f"Read API key for endpoint '{self.endpoint}' from env var '{env_var}'.")
        return self

    @property
    def dialect(self) -> Optional[WireDialect]:
        return detect_dialect(self.endpoint) if self.endpoint else None

    @property
    def is_local(self) -> bool:
        """Whether the endpoint is on the loopback interface or a private network."""
        return bool(self.endpoint and LOCAL_HOST_PATTERN.search(self.endpoint))


class BaseAPIModel:
    """
    Client for one model backend.

    The adapter is chosen per call from the configured endpoint, so changing
    ``config.endpoint`` takes effect on the next call.
    """

    def __init__(
        self,
        config: ModelConfig,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
    ) -> None:
        """
        Args:
            config: Model configuration
            client: Shared HTTP client. When omitted the model creates and
                owns its own, closed by ``cleanup()``.
            api_key: Fallback key used when the config carries none
        """
        self.config = config
        self.fallback_api_key = api_key
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    @property
    def api_key(self) -> Optional[str]:
        return self.config.api_key or self.fallback_api_key

    def build_adapter(self, require_model: bool = True) -> APIProviderAdapter:
        """
        Create the adapter for the current endpoint.

        Raises:
            ConfigurationError: No endpoint, or no model when one is required
        """
        if not self.config.endpoint:
            raise ConfigurationError(
                "No endpoint configured for this entity.",
                config_field="endpoint",
            )
        if require_model and not self.config.model:
            raise ConfigurationError(
                "No model selected for this entity.",
                config_field="model",
            )
        return ProviderAdapterFactory.create_adapter(
            model_name=self.config.model or "",
            api_key=self.api_key,
            base_url=self.config.endpoint,
            max_tokens=self.config.max_tokens,
            timeout=self.config.timeout,
        )

    def _validate_request(self, request: CompletionRequest) -> APIProviderAdapter:
        adapter = self.build_adapter()
        if not request.conversation:
            raise ConfigurationError("No messages to send.", config_field="conversation")
        return adapter

    async def arun(self, request: CompletionRequest) -> UnifiedCompletionResult:
        """
        Run one non-streaming completion.

        Raises:
            ConfigurationError: Before any network activity, for missing config
            ModelAPIError: Transport failure
            ModelResponseError: Undecodable response body
        """
        adapter = self._validate_request(request)
        return await adapter.arun(request, self.client)

    async def arun_streaming(
        self,
        request: CompletionRequest,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> UnifiedCompletionResult:
        """Run one streaming completion, passing every chunk to ``on_chunk``."""
        adapter = self._validate_request(request)
        return await adapter.arun_streaming(request, self.client, on_chunk)

    async def fetch_models(self) -> List[ModelInfo]:
        """
        List the chat-capable models the endpoint's server advertises.

        Accepts either a bare array or an object with a ``data`` array.
        """
        adapter = self.build_adapter(require_model=False)
        url = get_models_url(self.config.endpoint)

        try:
            response = await self.client.get(url, headers=adapter.get_headers(), timeout=self.config.timeout)
        except httpx.HTTPError as e:
            raise ModelAPIError.from_exception(adapter.provider, e, api_endpoint=url) from e

        if response.status_code >= 400:
            raise ModelAPIError.from_response(
                adapter.provider,
                response.status_code,
                body=adapter._safe_json(response),
                api_endpoint=url,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ModelResponseError(
                f"Invalid JSON model list from {url}: {e}",
                response_content=response.text,
            ) from e

        items = data if isinstance(data, list) else (data.get("data") or [])
        return [self._to_model_info(item) for item in items if self._is_chat_model(item)]

    @staticmethod
    def _is_chat_model(item: Any) -> bool:
        return isinstance(item, dict) and bool(item.get("id")) and item.get("type") in CHAT_MODEL_TYPES

    @staticmethod
    def _to_model_info(item: Dict[str, Any]) -> ModelInfo:
        model_type = item.get("type")
        quantization = item.get("quantization")
        return ModelInfo(
            id=item["id"],
            state=item.get("state") or "unknown",
            type=model_type if model_type in ("llm", "vlm") else "llm",
            quantization=str(quantization) if quantization is not None else None,
            max_context=item.get("max_context_length"),
            arch=item.get("arch"),
        )

    async def cleanup(self):
        """Close the HTTP client if this model created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
