"""Exception taxonomy for stream assembly."""

from __future__ import annotations


class AnswerStreamError(Exception):
    """Base class for errors raised by the assembly engine."""


class MalformedElement(AnswerStreamError, ValueError):
    """A received element failed variant validation."""

    def __init__(self, message: str, *, raw: object = None) -> None:
        super().__init__(message)
        self.raw = raw


class ProtocolViolation(AnswerStreamError, RuntimeError):
    """An element or terminal signal arrived after the answer was finalized."""


class SessionLimitExceeded(AnswerStreamError, RuntimeError):
    """Too many streams are open on one coordinator."""
