# socialbank/core/engine/errors.py
"""
Error taxonomy of the dialogue engine.

None of these reach the user as a raw exception: every path through
the dispatcher ends in a formatted response.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional


class DialogueError(Exception):
    """Base class for dialogue engine errors"""


class MalformedInput(DialogueError):
    """The adapter could not extract the required fields from a payload."""

    def __init__(self, message: str, *, missing: tuple[str, ...] = ()):
        self.missing = missing
        super().__init__(message)


class DuplicateMessage(DialogueError):
    """The message id was already admitted on this channel."""

    def __init__(self, channel: str, message_id: str, outcome: Optional[Mapping[str, Any]] = None):
        self.channel = channel
        self.message_id = message_id
        self.outcome = outcome
        super().__init__(f"Duplicate message: channel={channel}, message_id={message_id}")


class SessionExpired(DialogueError):
    """Session is absent, ended or stale; re-enter via WELCOME."""

    def __init__(self, session_id: str | None, reason: str = "expired"):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id} {reason}")


class AuthenticationRequired(DialogueError):
    """Control-flow redirect: the owner must log in before entering a state."""

    def __init__(self, owner: str, requested_state: str):
        self.owner = owner
        self.requested_state = requested_state
        super().__init__(f"Authentication required for state {requested_state}")


class HandlerFailure(DialogueError):
    """A state handler raised unexpectedly; state is left unchanged."""

    def __init__(self, state: str, cause: BaseException):
        self.state = state
        self.cause = cause
        super().__init__(f"Handler for {state} failed: {cause.__class__.__name__}")


class SessionConflict(DialogueError):
    """Optimistic-lock mismatch: the session changed since it was read."""

    def __init__(self, session_id: str, expected_version: int):
        self.session_id = session_id
        self.expected_version = expected_version
        super().__init__(
            f"Session {session_id} was modified concurrently (expected version {expected_version})"
        )


class DeliveryFailure(DialogueError):
    """Outbound delivery failed; the computed response is unaffected."""

    def __init__(self, channel: str, message: str, *, retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(f"Delivery failed on {channel}: {message}")


class MenuConfigurationError(DialogueError, ValueError):
    """The static menu table references an unknown state."""


class BankingError(DialogueError):
    """Core-banking call failed or returned an error envelope."""

    def __init__(self, message: str, *, status: int = 0):
        self.status = status
        super().__init__(message)
