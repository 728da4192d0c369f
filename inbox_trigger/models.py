"""Data models shared across the watcher, decoder and supervisor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

HEADER = "HEADER"
TEXT = "TEXT"


class SessionState(str, Enum):
    """Lifecycle state of the mailbox session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"
    ENDING = "ending"


@dataclass(frozen=True)
class MessagePart:
    """One fetched section (``HEADER`` or ``TEXT``) of a message."""

    uid: int
    section: str
    data: bytes


@dataclass
class RawMessage:
    """Accumulates the header and body streams of one message.

    Each section ends independently; the message is only handed to the
    decoder once both have ended.
    """

    uid: int
    header_bytes: bytearray = field(default_factory=bytearray)
    body_bytes: bytearray = field(default_factory=bytearray)
    header_done: bool = False
    body_done: bool = False

    def append(self, section: str, chunk: bytes) -> None:
        if section == HEADER:
            self.header_bytes += chunk
        elif section == TEXT:
            self.body_bytes += chunk
        else:
            raise ValueError(f"unknown section {section!r}")

    def end(self, section: str) -> None:
        if section == HEADER:
            self.header_done = True
        elif section == TEXT:
            self.body_done = True
        else:
            raise ValueError(f"unknown section {section!r}")

    @property
    def complete(self) -> bool:
        return self.header_done and self.body_done

    @property
    def headers(self) -> str:
        return bytes(self.header_bytes).decode("utf-8", errors="replace")

    @property
    def body(self) -> str:
        return bytes(self.body_bytes).decode("utf-8", errors="replace")


@dataclass(frozen=True)
class DecodedEmail:
    """Read-only decoded view of a complete message."""

    uid: int
    subject: str
    sender: str
    body: str
    links: tuple[str, ...] = ()


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of handing one action link to the page automation."""

    link: str
    ok: bool
    error: str | None = None


class HealthStatus(BaseModel):
    """Response model for the ``/health`` probe endpoint."""

    service_name: str = Field(description="Name of the service")
    state: SessionState = Field(description="Current mailbox session state")
    reconnect_attempts: int = Field(description="Reconnect attempts since the last ready session")
    uptime_seconds: float = Field(description="Seconds since the service started")
    last_check_at: datetime | None = Field(
        default=None,
        description="Completion time of the last successful search (UTC)",
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Watcher counters (checks, matches, dispatch failures)",
    )
