"""Exception hierarchy for the chat exchange engine."""

from __future__ import annotations

from typing import Any


class ParleyError(Exception):
    """Base class for all errors raised by parley."""


# -----------------------------------------------------------------------------
# Input rejection (raised before any streaming begins)
# -----------------------------------------------------------------------------


class InputRejected(ParleyError):
    """The inbound request cannot start an exchange."""


class ConversationNotFound(InputRejected):
    """Raised when a message references an unknown conversation."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(
            f"Trying to add a message to a non existing conversation with id {conversation_id}"
        )


class ConversationForbidden(InputRejected):
    """Raised when the caller does not own the referenced conversation."""

    def __init__(self, conversation_id: str, user_id: str) -> None:
        self.conversation_id = conversation_id
        self.user_id = user_id
        super().__init__("Trying to add a message to a non owned conversation")


class InvalidConfirmResponse(InputRejected):
    """Raised when a confirmation answer does not reference a pending request."""


# -----------------------------------------------------------------------------
# History integrity
# -----------------------------------------------------------------------------


class HistoryCycleError(ParleyError):
    """Raised when parent links of a conversation form a cycle."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Parent chain revisits message {message_id}")


# -----------------------------------------------------------------------------
# Exchange failures (fatal to a single exchange)
# -----------------------------------------------------------------------------


class ExchangeError(ParleyError):
    """An error that prevents producing a correct assistant answer."""


class UnknownToolError(ExchangeError):
    """The model requested a tool that is not registered for the assistant."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"No such function: {name}")


class ToolArgumentsError(ExchangeError):
    """Streamed tool arguments could not be decoded as JSON."""

    def __init__(self, name: str, raw: str) -> None:
        self.name = name
        self.raw = raw
        super().__init__(f"Invalid JSON arguments for tool {name!r}")


class ToolExecutionError(ExchangeError):
    """A tool's ``invoke`` raised."""

    def __init__(self, name: str, cause: BaseException) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"Tool {name!r} failed: {cause}")


class ToolLoopLimitExceeded(ExchangeError):
    """The model kept requesting tools past the configured iteration cap."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Tool loop exceeded {limit} iteration(s)")


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------


class TransportClosed(ParleyError):
    """The consumer of an exchange stream went away."""


class ExchangeFailed(ParleyError):
    """Terminal error signal delivered to the transport after the last frame."""

    def __init__(self, cause: BaseException | Any) -> None:
        self.cause = cause
        super().__init__(f"Exchange failed: {cause}")


__all__ = [
    "ConversationForbidden",
    "ConversationNotFound",
    "ExchangeError",
    "ExchangeFailed",
    "HistoryCycleError",
    "InputRejected",
    "InvalidConfirmResponse",
    "ParleyError",
    "ToolArgumentsError",
    "ToolExecutionError",
    "ToolLoopLimitExceeded",
    "TransportClosed",
    "UnknownToolError",
]
