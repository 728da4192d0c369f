"""Exception hierarchy for the inbox trigger service."""

from __future__ import annotations


class InboxTriggerError(Exception):
    """Base class for all service errors."""


class ConfigurationError(InboxTriggerError):
    """Required configuration is missing or invalid.

    Raised at startup and when a check cycle finds an unusable target
    filter.  Requires an operator fix; never retried.
    """


class MailboxProtocolError(InboxTriggerError):
    """The server rejected a command (``NO`` / ``BAD``) on a live connection."""


class ConnectionLostError(InboxTriggerError):
    """The IMAP connection is gone: socket error, ``BYE``, or abort."""


class ReconnectExhaustedError(InboxTriggerError):
    """The reconnect ceiling was reached; the process must exit."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"gave up after {attempts} reconnect attempts")
        self.attempts = attempts


class AutomationError(InboxTriggerError):
    """The page-automation collaborator failed to complete the action."""

    def __init__(self, message: str, *, link: str | None = None) -> None:
        super().__init__(message)
        self.link = link
