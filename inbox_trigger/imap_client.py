"""Async IMAP client wrapping IMAPClient with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import contextlib
import ssl
import threading
import time
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any, TypeVar

import structlog
from imapclient import SEEN, IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError

from .config import ImapConfig
from .errors import ConnectionLostError, MailboxProtocolError
from .models import HEADER, TEXT, MessagePart

logger = structlog.get_logger()

T = TypeVar("T")

# PEEK so that fetching never sets \Seen as a side effect.
_FETCH_ITEMS = ["BODY.PEEK[HEADER]", "BODY.PEEK[TEXT]"]
_RESPONSE_KEYS = {HEADER: b"BODY[HEADER]", TEXT: b"BODY[TEXT]"}
_NEW_MAIL_RESPONSES = frozenset({b"EXISTS", b"RECENT"})
# How often the IDLE worker thread checks for a pending command.
_IDLE_CHECK_SLICE = 0.5


def _has_new_mail(responses: Sequence[Any]) -> bool:
    return any(
        isinstance(response, tuple) and len(response) > 1 and response[1] in _NEW_MAIL_RESPONSES
        for response in responses
    )


class AsyncImapClient:
    """Async-friendly IMAP client with IDLE push support.

    All blocking ``IMAPClient`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  Only one
    operation touches the connection at a time; a command issued while
    the connection is idling interrupts the IDLE and runs as soon as the
    server has acknowledged ``DONE``.

    Errors are translated at this boundary: aborts and socket errors
    become :class:`ConnectionLostError`, command failures become
    :class:`MailboxProtocolError`.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: IMAPClient | None = None
        self._mailbox: str | None = None
        self._supports_idle = False

        self._lock = asyncio.Lock()
        self._pending_commands = 0
        self._quiet = asyncio.Event()
        self._quiet.set()
        self._interrupt_idle = threading.Event()

    @property
    def mailbox(self) -> str | None:
        """Name of the last successfully opened mailbox."""
        return self._mailbox

    @property
    def supports_idle(self) -> bool:
        return self._supports_idle

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect and login."""
        await self._run(self._connect_sync)
        logger.info(
            "imap_connected",
            host=self._config.host,
            port=self._config.port,
            idle=self._supports_idle,
        )

    def _connect_sync(self) -> None:
        ssl_context = self._ssl_context() if self._config.use_ssl else None
        conn = IMAPClient(
            self._config.host,
            port=self._config.port,
            ssl=self._config.use_ssl,
            ssl_context=ssl_context,
            timeout=self._config.connect_timeout_seconds,
        )
        try:
            conn.login(self._config.username, self._config.password.get_secret_value())
            self._supports_idle = conn.has_capability("IDLE")
        except (IMAPClientError, OSError):
            with contextlib.suppress(OSError):
                conn.shutdown()
            raise
        self._conn = conn

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self._config.tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def open_mailbox(self, name: str | None = None, *, readonly: bool = False) -> int:
        """Select *name* (default: the configured mailbox).  Returns EXISTS."""
        mailbox = name or self._config.mailbox
        async with self._command() as conn:
            info = await self._run(conn.select_folder, mailbox, readonly)
        self._mailbox = mailbox
        exists = int(info.get(b"EXISTS", 0))
        logger.info("imap_mailbox_opened", mailbox=mailbox, exists=exists, readonly=readonly)
        return exists

    async def disconnect(self) -> None:
        """Logout; falls back to closing the socket if the server is gone."""
        if self._conn is None:
            return
        self._interrupt_idle.set()
        async with self._lock:
            conn, self._conn = self._conn, None
            if conn is not None:
                await asyncio.to_thread(self._disconnect_sync, conn)
        logger.info("imap_disconnected")

    @staticmethod
    def _disconnect_sync(conn: IMAPClient) -> None:
        try:
            conn.logout()
        except (IMAPClientError, OSError):
            with contextlib.suppress(OSError):
                conn.shutdown()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def search(self, criteria: list) -> list[int]:
        """Run a UID SEARCH and return matching UIDs in server order."""
        async with self._command() as conn:
            uids = await self._run(conn.search, criteria)
        logger.debug("imap_search_complete", count=len(uids))
        return list(uids)

    async def fetch_parts(self, uids: Sequence[int]) -> AsyncIterator[MessagePart]:
        """Yield the header and body sections of each UID, in order.

        A section the server does not return is simply not yielded, so
        the caller never sees it as complete.
        """
        for uid in uids:
            async with self._command() as conn:
                response = await self._run(conn.fetch, [uid], _FETCH_ITEMS)
            data = response.get(uid, {})
            for section, key in _RESPONSE_KEYS.items():
                if key in data:
                    yield MessagePart(uid=uid, section=section, data=data[key] or b"")

    async def add_seen(self, uid: int) -> None:
        async with self._command() as conn:
            await self._run(conn.add_flags, [uid], [SEEN])

    async def remove_seen(self, uid: int) -> None:
        async with self._command() as conn:
            await self._run(conn.remove_flags, [uid], [SEEN])

    async def noop(self) -> bool:
        """Send NOOP; returns True if the server reported new mail."""
        async with self._command() as conn:
            _, responses = await self._run(conn.noop)
        return _has_new_mail(responses)

    # ------------------------------------------------------------------
    # Push notifications
    # ------------------------------------------------------------------

    async def wait_for_push(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for a new-mail notification.

        Uses IDLE when the server supports it; the IDLE is ended early
        when a command is waiting for the connection.  Without IDLE this
        sleeps one keepalive interval and sends NOOP.
        """
        if not self._supports_idle:
            await asyncio.sleep(min(timeout, self._config.keepalive_interval_seconds))
            return await self.noop()

        while True:
            await self._quiet.wait()
            async with self._lock:
                if self._pending_commands:
                    continue
                self._interrupt_idle.clear()
                return await self._run_idle(self._require_conn(), timeout)

    async def _run_idle(self, conn: IMAPClient, timeout: float) -> bool:
        worker = asyncio.ensure_future(self._run(self._idle_sync, conn, timeout))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            # The thread keeps running after cancellation; wait for it to
            # send DONE before anyone else uses the connection.
            self._interrupt_idle.set()
            await asyncio.wait([worker])
            if not worker.cancelled() and worker.exception() is not None:
                logger.debug("imap_idle_aborted", error=str(worker.exception()))
            raise

    def _idle_sync(self, conn: IMAPClient, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        conn.idle()
        pushed = False
        try:
            while not pushed and not self._interrupt_idle.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                pushed = _has_new_mail(conn.idle_check(timeout=min(_IDLE_CHECK_SLICE, remaining)))
        finally:
            _, trailing = conn.idle_done()
        return pushed or _has_new_mail(trailing)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _command(self) -> AsyncIterator[IMAPClient]:
        self._pending_commands += 1
        self._quiet.clear()
        self._interrupt_idle.set()
        try:
            async with self._lock:
                yield self._require_conn()
        finally:
            self._pending_commands -= 1
            if not self._pending_commands:
                self._quiet.set()

    def _require_conn(self) -> IMAPClient:
        if self._conn is None:
            raise ConnectionLostError("not connected")
        return self._conn

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except IMAPClientAbortError as exc:
            raise ConnectionLostError(f"connection aborted: {exc}") from exc
        except IMAPClientError as exc:
            raise MailboxProtocolError(str(exc)) from exc
        except OSError as exc:
            raise ConnectionLostError(f"socket error: {exc}") from exc
