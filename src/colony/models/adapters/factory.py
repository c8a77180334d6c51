"""Factory for creating dialect adapters."""

from typing import Optional

from colony.models.adapters.anthropic import AnthropicAdapter
from colony.models.adapters.base import APIProviderAdapter
from colony.models.adapters.local import LocalRestAdapter, StatefulLocalAdapter
from colony.models.adapters.openai import OpenAIAdapter
from colony.models.dialects import WireDialect, detect_dialect


class ProviderAdapterFactory:
    """Factory to create the right adapter for a wire dialect"""

    adapters = {
        WireDialect.ANTHROPIC: AnthropicAdapter,
        WireDialect.OPENAI: OpenAIAdapter,
        WireDialect.LOCAL_REST: LocalRestAdapter,
        WireDialect.LOCAL_STATEFUL: StatefulLocalAdapter,
    }

    @classmethod
    def create_adapter(
        cls,
        model_name: str,
        api_key: Optional[str],
        base_url: str,
        dialect: Optional[WireDialect] = None,
        **kwargs,
    ) -> APIProviderAdapter:
        """
        Create an adapter for an endpoint.

        Args:
            model_name: Model identifier sent to the server
            api_key: Key for the endpoint, if it needs one
            base_url: Full endpoint URL
            dialect: Skip detection and use this dialect
            **kwargs: max_tokens, timeout

        Returns:
            APIProviderAdapter instance
        """
        dialect = dialect or detect_dialect(base_url)
        return cls.adapters[dialect](model_name, api_key, base_url, **kwargs)
