import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

from colony.models.response_models import NO_RESPONSE

logger = logging.getLogger(__name__)

# <|channel|>analysis<|message|>...  each segment runs until the next <|...|> sentinel
_CHANNEL_PATTERN = re.compile(
    r"<\|channel\|>\s*(analysis|final)\s*<\|message\|>(.*?)(?=<\|[a-z_]+\|>|$)",
    re.DOTALL | re.IGNORECASE,
)
_THINK_PATTERN = re.compile(r"^\s*<think>(.*?)</think>\s*", re.DOTALL | re.IGNORECASE)


def extract_reasoning(raw: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Recover reasoning from plain model text.

    Two conventions are recognised, in priority order:

    1. Multi-channel markers, where the ``analysis`` channel is reasoning and
       the ``final`` channel is the answer::

           <|channel|>analysis<|message|>X<|end|><|start|>assistant<|channel|>final<|message|>Y

    2. A single leading ``<think>X</think>`` block followed by the answer.

    Args:
        raw: Model output text

    Returns:
        Tuple of (text, reasoning). ``reasoning`` is None when neither
        convention matched, in which case ``text`` is returned untouched.
    """
    if not raw:
        return raw, None

    channels = _CHANNEL_PATTERN.findall(raw)
    if channels:
        analysis = [body.strip() for name, body in channels if name.lower() == "analysis"]
        final = [body.strip() for name, body in channels if name.lower() == "final"]
        reasoning = "\n".join(part for part in analysis if part) or None
        text = "\n".join(part for part in final if part) or NO_RESPONSE
        return text, reasoning

    match = _THINK_PATTERN.match(raw)
    if match:
        text = raw[match.end():].strip() or NO_RESPONSE
        reasoning = match.group(1).strip() or None
        return text, reasoning

    return raw, None


def parse_tool_arguments(arguments: Any) -> Dict[str, Any]:
    """
    Decode tool-call arguments into a dict.

    Arguments that are missing, malformed, or not a JSON object degrade to
    an empty dict rather than failing the turn.
    """
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except (TypeError, ValueError):
        logger.warning(f"Could not parse tool arguments, using empty input: {str(arguments)[:100]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}

