"""
Custom exception classes and user-facing error message helpers.
"""

import re
from typing import Any, Optional

MAX_ERROR_MESSAGE_LENGTH = 200

GENERIC_DATABASE_MESSAGE = "We had trouble connecting to the database. Please try again later."
GENERIC_TIMEOUT_MESSAGE = "The request took too long to respond. The website might be slow right now."
GENERIC_DNS_MESSAGE = "We couldn't resolve the website address. Please double-check the URL."
GENERIC_FAILURE_MESSAGE = "Something unexpected went wrong. Please try again."


class TagCounterError(Exception):
    """Base exception for all service errors."""

    def __init__(self, message: str, detail: Optional[Any] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class PersistenceError(TagCounterError):
    """Raised when a store transaction fails. The transaction has been rolled back."""
    pass


class ConfigurationError(TagCounterError):
    """Raised when the service is wired with unusable settings."""
    pass


_PATH_FRAGMENT = re.compile(r"in /[^\s]+")
_LINE_MARKER = re.compile(r"on line \d+")


def sanitize_error_message(message: str) -> str:
    """Strip file paths and line numbers, truncate to a displayable length."""
    message = _PATH_FRAGMENT.sub("", message)
    message = _LINE_MARKER.sub("", message)
    message = message.strip()
    if len(message) > MAX_ERROR_MESSAGE_LENGTH:
        message = message[:MAX_ERROR_MESSAGE_LENGTH] + "..."
    return message


def user_message_for(internal_message: str) -> str:
    """
    Translate an internal error message into one of a few generic
    user-facing messages. Never echoes the internal text.
    """
    lowered = internal_message.lower()
    if "database" in lowered or "connection" in lowered:
        return GENERIC_DATABASE_MESSAGE
    if "timeout" in lowered or "timed out" in lowered:
        return GENERIC_TIMEOUT_MESSAGE
    if "dns" in lowered or "resolve" in lowered:
        return GENERIC_DNS_MESSAGE
    return GENERIC_FAILURE_MESSAGE
