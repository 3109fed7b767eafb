"""Chat message models and conversation tree helpers."""

from .history import path_to_root, validate_history
from .message_model import Attachment, ConfirmRequest, ConfirmResponse, Message

__all__ = [
    "Attachment",
    "ConfirmRequest",
    "ConfirmResponse",
    "Message",
    "path_to_root",
    "validate_history",
]
