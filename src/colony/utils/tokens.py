"""
Token estimation for context-window management.

Real token counts come back from the backend after each call. Before the
first call, or for display, the context size is estimated from characters.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class TokenCounter(Protocol):
    """Protocol for token counting strategies."""

    def count_context(self, system_prompt: Optional[str], messages: List[Dict[str, Any]]) -> int:
        """
        Estimate the tokens a call would send.

        Args:
            system_prompt: Full system prompt sent with the call
            messages: Conversation entries in wire format

        Returns:
            Estimated token count
        """
        ...


class DefaultTokenCounter:
    """
    Character-based token estimate.

    - String content: its length
    - Structured content (block lists): the length of its JSON encoding
    - System prompt: its length

    The character total is divided by ``chars_per_token`` (default 4.0) and
    rounded. This is a heuristic; it is never used where real counts exist.
    """

    def __init__(self, chars_per_token: float = 4.0):
        self.chars_per_token = chars_per_token

    def count_chars(self, system_prompt: Optional[str], messages: List[Dict[str, Any]]) -> int:
        chars = len(system_prompt or "")
        for message in messages:
            content = message.get("content")
            if isinstance(content, str):
                chars += len(content)
            elif content is not None:
                chars += len(json.dumps(content))
        return chars

    def count_context(self, system_prompt: Optional[str], messages: List[Dict[str, Any]]) -> int:
        return round(self.count_chars(system_prompt, messages) / self.chars_per_token)
