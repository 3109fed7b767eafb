"""Tool returning the current local time."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence

from ...chat.message_model import Message
from .base import ToolFunction, ToolImplementation

TIME_OF_DAY_NAME = "timeOfDay"
_PARAMETERS: Mapping[str, Any] = {
    "type": "object",
    "properties": {
        "location": {
            "type": "string",
            "description": "The city and state, e.g. San Francisco, CA",
        },
    },
    "required": ["location"],
}


def format_timestamp(moment: datetime) -> str:
    """Render *moment* the way a locale-aware clock would, e.g. ``3/7/2026, 4:05:09 PM``."""

    hour = moment.hour % 12 or 12
    meridiem = "AM" if moment.hour < 12 else "PM"
    return f"{moment.month}/{moment.day}/{moment.year}, {hour}:{moment:%M:%S} {meridiem}"


async def _invoke(_history: Sequence[Message], _assistant_id: str, _args: Mapping[str, Any]) -> str:
    return format_timestamp(datetime.now())


def build_time_of_day(params: Mapping[str, Any] | None = None) -> ToolImplementation:
    """Builder registered under the ``timeofday`` tool type."""

    require_confirm = bool((params or {}).get("requireConfirm", False))
    return ToolImplementation(
        functions=[
            ToolFunction(
                name=TIME_OF_DAY_NAME,
                description="Retrieve the current time",
                parameters=_PARAMETERS,
                invoke=_invoke,
                require_confirm=require_confirm,
            )
        ]
    )


__all__ = ["TIME_OF_DAY_NAME", "build_time_of_day", "format_timestamp"]
