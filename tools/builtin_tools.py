"""Small general-purpose tools: dice rolls and the current time."""

import random
from datetime import datetime, timezone

from tools import LlmTool
from utils.logger import get_logger

logger = get_logger(__name__)


def _as_int(value, default: int, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warn(f"Invalid {label} {value!r}; using {default}")
        return default


def roll(number: int = 1, sides: int = 6) -> dict:
    """Roll ``number`` dice with ``sides`` sides each.

    Returns:
        Dict with the individual 'rolls' and their 'total'.
    """
    number = max(1, _as_int(number, 1, "number"))
    sides = max(1, _as_int(sides, 6, "sides"))

    rolls = [random.randint(1, sides) for _ in range(number)]
    return {"rolls": rolls, "total": sum(rolls)}


def current_time(date: str | None = None) -> str:
    """Return ``date`` (or now) as an ISO 8601 UTC timestamp."""
    if date:
        try:
            parsed = datetime.fromisoformat(date)
        except ValueError:
            logger.warn(f"Unparseable date {date!r}; using the current time")
        else:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc).isoformat()
    return datetime.now(timezone.utc).isoformat()


# ── Tool definitions ──────────────────────────────────────────────────────────

ROLL_TOOL = LlmTool(
    name="roll",
    description="Roll one or more dice with a specified number of sides",
    parameters={
        "type": "object",
        "properties": {
            "number": {"type": "number", "description": "Number of dice to roll. Default: 1"},
            "sides": {"type": "number", "description": "Number of sides on each die. Default: 6"},
        },
        "required": [],
    },
    call=roll,
)

TIME_TOOL = LlmTool(
    name="time",
    description="Returns the current date and time in ISO format, or a given date in ISO format",
    parameters={
        "type": "object",
        "properties": {
            "date": {
                "type": "string",
                "description": "Optional date to convert to ISO format. Omit for the current time",
            },
        },
        "required": [],
    },
    call=current_time,
)

BUILTIN_TOOLS = [ROLL_TOOL, TIME_TOOL]
