"""Shared test fixtures for the inbox trigger test suite."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from inbox_trigger.config import ImapConfig, ReconnectConfig, WatcherConfig
from inbox_trigger.dispatcher import AutomationDispatcher
from inbox_trigger.errors import AutomationError
from inbox_trigger.filters import TargetFilter
from inbox_trigger.models import HEADER, TEXT, MessagePart
from inbox_trigger.watcher import MailboxWatcher

ACTION_LINK = "https://www.netflix.com/account/update-primary-location?token=abc"


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
        keepalive_interval_seconds=0.01,
        idle_reissue_seconds=0.05,
    )


@pytest.fixture
def reconnect_config() -> ReconnectConfig:
    return ReconnectConfig(max_attempts=3, base_delay_seconds=5.0, max_delay_seconds=300.0)


@pytest.fixture
def watcher_config() -> WatcherConfig:
    return WatcherConfig(poll_interval_seconds=60.0)


@pytest.fixture
def target_filter() -> TargetFilter:
    return TargetFilter(subjects=("household",), addresses=("info@netflix.com",))


# ------------------------------------------------------------------
# Sample messages
# ------------------------------------------------------------------


def _build_email(
    *,
    subject: str = "Your Household Has Been Updated",
    from_addr: str = "Netflix <info@netflix.com>",
    body: str = f"Confirm the update here:\r\n{ACTION_LINK}\r\n",
    transfer_encoding: str = "7bit",
    content_type: str = 'text/plain; charset="utf-8"',
) -> bytes:
    """Build a raw RFC 822 message with CRLF line endings."""
    lines = [
        f"From: {from_addr}",
        "To: me@example.com",
        f"Subject: {subject}",
        "MIME-Version: 1.0",
        f"Content-Type: {content_type}",
        f"Content-Transfer-Encoding: {transfer_encoding}",
        "",
        body,
    ]
    return "\r\n".join(lines).encode("utf-8")


@pytest.fixture
def build_email():
    """Factory for raw messages with overrides."""
    return _build_email


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeMailbox:
    """In-memory stand-in for ``AsyncImapClient``.

    ``search`` returns every unseen UID (sender filtering is left to the
    watcher), ``fetch_parts`` yields header then body for each UID.
    """

    def __init__(self) -> None:
        self.mailbox = "INBOX"
        self.messages: dict[int, tuple[bytes, bytes]] = {}
        self.seen: set[int] = set()
        self.seen_calls: list[int] = []
        self.unseen_calls: list[int] = []
        self.search_calls: list[list] = []
        self.headers_only: set[int] = set()
        self.search_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.search_gate: asyncio.Event | None = None

    def add(self, uid: int, raw: bytes) -> None:
        split = raw.index(b"\r\n\r\n") + 4
        self.messages[uid] = (raw[:split], raw[split:])

    async def search(self, criteria: list) -> list[int]:
        self.search_calls.append(criteria)
        if self.search_gate is not None:
            await self.search_gate.wait()
        if self.search_error is not None:
            raise self.search_error
        return [uid for uid in sorted(self.messages) if uid not in self.seen]

    async def fetch_parts(self, uids: list[int]) -> AsyncIterator[MessagePart]:
        for uid in uids:
            if self.fetch_error is not None:
                raise self.fetch_error
            header, body = self.messages[uid]
            yield MessagePart(uid=uid, section=HEADER, data=header)
            if uid not in self.headers_only:
                yield MessagePart(uid=uid, section=TEXT, data=body)

    async def add_seen(self, uid: int) -> None:
        self.seen.add(uid)
        self.seen_calls.append(uid)

    async def remove_seen(self, uid: int) -> None:
        self.seen.discard(uid)
        self.unseen_calls.append(uid)


class FakeImapSession(FakeMailbox):
    """FakeMailbox plus the connection lifecycle the supervisor drives."""

    def __init__(self, connect_errors: list[Exception] | None = None) -> None:
        super().__init__()
        self.connect_errors = list(connect_errors or [])
        self.connects = 0
        self.disconnects = 0
        self.pushes: asyncio.Queue[bool] = asyncio.Queue()

    async def connect(self) -> None:
        self.connects += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    async def open_mailbox(self, name: str | None = None, *, readonly: bool = False) -> int:
        self.mailbox = name or "INBOX"
        return len(self.messages)

    async def disconnect(self) -> None:
        self.disconnects += 1

    async def wait_for_push(self, timeout: float) -> bool:
        try:
            return await asyncio.wait_for(self.pushes.get(), timeout)
        except TimeoutError:
            return False


class FakeAutomation:
    """Records every URL; optionally fails."""

    def __init__(self, error: Exception | None = None) -> None:
        self.urls: list[str] = []
        self.error = error

    async def automate(self, url: str) -> None:
        self.urls.append(url)
        if self.error is not None:
            raise self.error


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def imap_session() -> FakeImapSession:
    return FakeImapSession()


@pytest.fixture
def session_factory():
    """Factory for fake sessions whose ``connect`` fails with *connect_errors* first."""

    def _make(connect_errors: list[Exception] | None = None) -> FakeImapSession:
        return FakeImapSession(connect_errors)

    return _make


@pytest.fixture
def automation() -> FakeAutomation:
    return FakeAutomation()


@pytest.fixture
def failing_automation() -> FakeAutomation:
    return FakeAutomation(error=AutomationError("button not found"))


@pytest.fixture
def watcher_factory(target_filter: TargetFilter, watcher_config: WatcherConfig):
    """Factory building an attached watcher around a mailbox and automation."""

    def _make(mailbox, automation, *, config: WatcherConfig | None = None, filter_=None):
        watcher = MailboxWatcher(
            filter_ or target_filter,
            AutomationDispatcher(automation),
            config or watcher_config,
        )
        watcher.attach(mailbox)
        return watcher

    return _make


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds."""
    return _wait_until
