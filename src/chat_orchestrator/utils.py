# utils.py
import logging
from string import Template
from typing import Any, Callable, Dict, Iterable, Sequence

from chat_orchestrator.config import PROMPT_CAP, PROMPT_VALUE_CAP
from chat_orchestrator.models import ChatTurn, Message

logger = logging.getLogger(__name__)


class SafeTemplate(Template):
    """
    string.Template variant that uses {var} instead of $var
    and safely ignores missing keys.
    """
    delimiter = "{"
    pattern = r"""
    \{(?:
        (?P<escaped>\{) |        # {{ -> {
        (?P<named>[_a-z][_a-z0-9]*)\} |  # {var}
        (?P<braced>[_a-z][_a-z0-9]*)\} |
        (?P<invalid>)
    )
    """
    flags = 0


def safe_format(
    template: str,
    mapping: Dict[str, Any],
    *,
    max_value_len: int = PROMPT_VALUE_CAP,
    max_prompt_len: int = PROMPT_CAP,
) -> str:
    """
    Safely formats agent prompt templates:
    - No eval / attribute access
    - Unknown placeholders are left as-is
    - Values are truncated
    - Prompt length is capped
    """

    clean: Dict[str, str] = {}

    for k, v in mapping.items():
        s = "" if v is None else str(v)
        if len(s) > max_value_len:
            logger.warning(
                "safe_format: value for key '%s' truncated (%d → %d chars)",
                k,
                len(s),
                max_value_len,
            )
            s = s[:max_value_len]
        clean[k] = s

    rendered = SafeTemplate(template).safe_substitute(clean)

    if len(rendered) > max_prompt_len:
        logger.warning(
            "safe_format: prompt truncated (%d → %d chars)",
            len(rendered),
            max_prompt_len,
        )
        rendered = rendered[:max_prompt_len]

    return rendered


def render_transcript(
    messages: Iterable[Message],
    speaker: Callable[[Message], str],
    *,
    max_len: int = PROMPT_VALUE_CAP,
) -> str:
    """
    Render messages as "Speaker: text" lines, oldest first.
    When over ``max_len``, the oldest lines are dropped first.
    """
    lines = [f"{speaker(m)}: {m.content}" for m in messages]
    total = sum(len(line) + 1 for line in lines)
    while lines and total > max_len:
        total -= len(lines.pop(0)) + 1
    return "\n".join(lines)


def prompt_chars(turns: Sequence[ChatTurn]) -> int:
    """Character count of a prompt; an upper bound on its token count."""
    return sum(len(t.content) for t in turns)
