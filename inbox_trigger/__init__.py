"""Inbox Trigger — watch a mailbox for notification emails and act on their links."""

from .config import (
    AutomationConfig,
    FilterConfig,
    ImapConfig,
    ReconnectConfig,
    ServiceConfig,
    WatcherConfig,
)
from .decoder import decode_body, decode_header_word, decode_message, extract_links, find_action_link
from .dispatcher import AutomationDispatcher, PageAutomation
from .errors import (
    AutomationError,
    ConfigurationError,
    ConnectionLostError,
    InboxTriggerError,
    MailboxProtocolError,
    ReconnectExhaustedError,
)
from .filters import TargetFilter, build_search_query, sender_matches, subject_matches
from .imap_client import AsyncImapClient
from .models import DecodedEmail, DispatchResult, MessagePart, RawMessage, SessionState
from .service import InboxTriggerService
from .supervisor import ConnectionSupervisor
from .watcher import MailboxWatcher

__all__ = [
    "AsyncImapClient",
    "AutomationConfig",
    "AutomationDispatcher",
    "AutomationError",
    "ConfigurationError",
    "ConnectionLostError",
    "ConnectionSupervisor",
    "DecodedEmail",
    "DispatchResult",
    "FilterConfig",
    "ImapConfig",
    "InboxTriggerError",
    "InboxTriggerService",
    "MailboxProtocolError",
    "MailboxWatcher",
    "MessagePart",
    "PageAutomation",
    "RawMessage",
    "ReconnectConfig",
    "ReconnectExhaustedError",
    "ServiceConfig",
    "SessionState",
    "TargetFilter",
    "WatcherConfig",
    "build_search_query",
    "decode_body",
    "decode_header_word",
    "decode_message",
    "extract_links",
    "find_action_link",
    "sender_matches",
    "subject_matches",
]
