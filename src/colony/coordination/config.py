"""
Configuration for a colony runtime.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from colony.agents.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Absolute ceiling on tool steps per loop
HARD_TOOL_CAP = 20

# Lower bound for the heartbeat period, in minutes
MIN_HEARTBEAT_INTERVAL = 5


class ColonySettings(BaseModel):
    """
    Runtime-wide settings shared by every entity of a colony.

    Per-entity backend settings (endpoint, model, key) live on each
    entity's ModelConfig; ``api_key`` here is the fallback for remote
    endpoints whose entity carries none.
    """

    # Scheduling
    max_concurrent_calls: int = Field(1, ge=1, description="Model calls admitted at once across the colony")
    max_tool_steps: int = Field(5, description="Tool rounds per loop before the forced final call")
    max_thinking_time: float = Field(120.0, gt=0, description="Seconds before a thinking entity is asked to stop")
    stream: bool = Field(False, description="Use streaming calls and publish chunks")

    # Context management
    context_window: int = Field(4096, gt=0, description="Context window in tokens")
    compact_ratio: float = Field(0.85, gt=0, le=1, description="Fraction of the window that triggers compaction")
    compact_message_threshold: int = Field(
        30, ge=1, description="Message count that triggers compaction before real token counts exist"
    )

    # Heartbeats
    heartbeat_interval_minutes: float = Field(60, description="Minutes between heartbeat check-ins")
    heartbeat_cooldown: float = Field(600.0, ge=0, description="Seconds of recent activity that skip a heartbeat")
    publishing_tools: Set[str] = Field(
        default_factory=lambda: {"reef_post"},
        description="Tools withheld from isolated (heartbeat) calls",
    )

    # Prompts and identity
    base_system_prompt: str = Field("", description="Prompt shared by all entities, placed before each entity prompt")
    operator_name: Optional[str] = Field(None, description="Name of the human operator")
    operator_about: Optional[str] = Field(None, description="What the entities should know about the operator")
    api_key: Optional[str] = Field(None, description="Fallback API key for remote endpoints")

    # Server-side integrations (stateful local dialect)
    mcp_server_url: Optional[str] = Field(None, description="MCP server the model server may call")
    mcp_server_label: str = Field("reef", description="Label the model server shows for the MCP server")
    mcp_allowed_tools: List[str] = Field(default_factory=list, description="Tools exposed through the MCP server")

    model_config = ConfigDict(extra="allow")

    @field_validator("heartbeat_interval_minutes", mode="before")
    @classmethod
    def _clamp_heartbeat_interval(cls, v: Any) -> float:
        if v is None or v == 0:
            return 60
        return max(MIN_HEARTBEAT_INTERVAL, float(v))

    @field_validator("mcp_server_url", "operator_name", "operator_about", "api_key")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def tool_step_cap(self) -> int:
        """Configured tool steps clamped to [1, HARD_TOOL_CAP]."""
        return max(1, min(self.max_tool_steps, HARD_TOOL_CAP))

    @property
    def heartbeat_interval(self) -> float:
        """Heartbeat period in seconds."""
        return self.heartbeat_interval_minutes * 60

    def effective_context_window(self, max_context: Optional[int] = None) -> int:
        """The configured window, capped by what the loaded model supports."""
        if max_context:
            return min(self.context_window, max_context)
        return self.context_window

    def integrations(self, exclude: Optional[Set[str]] = None) -> Optional[List[Dict[str, Any]]]:
        """Server-side integration descriptors, or None when no MCP tool is available."""
        if not self.mcp_server_url:
            return None
        excluded = exclude or set()
        allowed = [t for t in self.mcp_allowed_tools if t not in excluded]
        if not allowed:
            return None
        return [
            {
                "type": "ephemeral_mcp",
                "server_label": self.mcp_server_label,
                "server_url": self.mcp_server_url,
                "allowed_tools": allowed,
            }
        ]

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ColonySettings":
        """
        Load settings from a YAML file.

        Raises:
            ConfigurationError: The file is missing or is not a YAML mapping
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"Settings file not found: {path}", config_field="path", config_value=str(path)) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}", config_field="path", config_value=str(path)) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Settings file {path} must contain a mapping, got {type(data).__name__}",
                config_field="path",
                config_value=str(path),
            )
        logger.debug(f"Loaded colony settings from {path}")
        return cls.model_validate(data)
