"""ConnectionSupervisor — owns the IMAP connection and its reconnect cycle.

State machine::

    disconnected -> connecting -> ready -> failed -> connecting (backoff) -> ...
                                     \\-> ending -> disconnected   (shutdown)
    failed (attempts == ceiling) -> ReconnectExhaustedError

``failed`` lasts only until the reconnect is scheduled; the backoff
sleep itself counts as ``connecting``.

While ``ready`` the supervisor runs three kinds of session tasks in one
``asyncio.TaskGroup``: the IDLE push listener, the fallback timer, and
the watcher's check cycles.  Any task failing tears the whole session
down; nothing is resumed on a dead connection.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from .config import ImapConfig, ReconnectConfig
from .errors import ConnectionLostError, MailboxProtocolError, ReconnectExhaustedError
from .imap_client import AsyncImapClient
from .models import SessionState
from .watcher import MailboxWatcher

logger = structlog.get_logger()


class ConnectionSupervisor:
    """Connect, keep the session alive, and reconnect with backoff.

    Reconnect delays grow as ``base * 2**(attempt - 1)`` capped at
    ``max_delay_seconds``.  The attempt counter resets whenever a session
    reaches ``ready``; once it reaches ``max_attempts`` :meth:`run`
    raises :class:`ReconnectExhaustedError` and the process is expected
    to exit and be restarted by its host.
    """

    def __init__(
        self,
        imap_config: ImapConfig,
        reconnect_config: ReconnectConfig,
        watcher: MailboxWatcher,
        *,
        poll_interval_seconds: float,
        shutdown_event: asyncio.Event | None = None,
        client_factory: Callable[[ImapConfig], AsyncImapClient] = AsyncImapClient,
    ) -> None:
        self._imap_config = imap_config
        self._reconnect_config = reconnect_config
        self._watcher = watcher
        self._poll_interval = poll_interval_seconds
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._client_factory = client_factory

        self.state: SessionState = SessionState.DISCONNECTED
        self.reconnect_attempts: int = 0
        self.mailbox: str | None = None

        self._reconnecting = False
        self._task_group: asyncio.TaskGroup | None = None
        self._session_tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Keep a mailbox session alive until the shutdown event is set."""
        while not self._shutdown_event.is_set():
            failure = await self._connect_and_serve()
            if failure is None:
                break
            await self.schedule_reconnect()

        self.state = SessionState.DISCONNECTED
        logger.info("supervisor_stopped")

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def next_delay(self) -> float:
        """Delay before the reconnect numbered ``reconnect_attempts``."""
        attempt = max(self.reconnect_attempts, 1)
        delay = self._reconnect_config.base_delay_seconds * 2 ** (attempt - 1)
        return min(delay, self._reconnect_config.max_delay_seconds)

    async def schedule_reconnect(self) -> None:
        """Wait out the backoff delay before the next connect attempt.

        A call made while a reconnect is already pending is a no-op.
        """
        if self._reconnecting:
            logger.debug("imap_reconnect_already_pending")
            return

        max_attempts = self._reconnect_config.max_attempts
        if self.reconnect_attempts >= max_attempts:
            self.state = SessionState.FAILED
            logger.critical("imap_reconnect_exhausted", attempts=self.reconnect_attempts)
            raise ReconnectExhaustedError(self.reconnect_attempts)

        self._reconnecting = True
        # Backoff is part of reconnecting; only the ceiling is terminal.
        self.state = SessionState.CONNECTING
        try:
            self.reconnect_attempts += 1
            delay = self.next_delay()
            logger.warning(
                "imap_reconnect_scheduled",
                attempt=self.reconnect_attempts,
                max_attempts=max_attempts,
                delay_seconds=delay,
            )
            await self._pause(delay)
        finally:
            self._reconnecting = False

    async def _pause(self, delay: float) -> None:
        """Sleep *delay* seconds, waking early on shutdown."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _connect_and_serve(self) -> BaseException | None:
        """Run one session.  Returns the failure, or ``None`` on shutdown."""
        self.state = SessionState.CONNECTING
        client = self._client_factory(self._imap_config)
        try:
            await client.connect()
            await client.open_mailbox(self._imap_config.mailbox)
        except (ConnectionLostError, MailboxProtocolError) as exc:
            logger.error("imap_connect_failed", host=self._imap_config.host, error=str(exc))
            await client.disconnect()
            self.state = SessionState.FAILED
            return exc

        self.state = SessionState.READY
        self.reconnect_attempts = 0
        self.mailbox = client.mailbox
        logger.info("imap_session_ready", mailbox=self.mailbox)

        failure = await self._serve(client)
        await client.disconnect()
        return failure

    async def _serve(self, client: AsyncImapClient) -> BaseException | None:
        failure: BaseException | None = None
        self._watcher.attach(client)
        try:
            async with asyncio.TaskGroup() as tg:
                self._task_group = tg
                self._spawn(self._listen_for_push(client))
                self._spawn(self._run_fallback_timer())
                self.trigger()

                await self._shutdown_event.wait()
                self.state = SessionState.ENDING
                self._cancel_session_tasks()
        except* (ConnectionLostError, MailboxProtocolError) as group:
            failure = group.exceptions[0]
            logger.error("imap_connection_lost", error=str(failure))
        except* Exception as group:
            failure = group.exceptions[0]
            logger.error("imap_session_crashed", error=str(failure), exc_info=failure)
        finally:
            self._task_group = None
            self._watcher.detach()

        if failure is not None:
            self.state = SessionState.FAILED
        return failure

    def trigger(self) -> None:
        """Request a check cycle on the live session (coalesced by the watcher)."""
        if self._task_group is None or self.state != SessionState.READY:
            return
        self._spawn(self._watcher.run_check_cycle())

    async def _listen_for_push(self, client: AsyncImapClient) -> None:
        while True:
            if await client.wait_for_push(self._imap_config.idle_reissue_seconds):
                logger.info("new_mail_notification")
                self.trigger()

    async def _run_fallback_timer(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            self.trigger()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        assert self._task_group is not None
        task = self._task_group.create_task(coro)
        self._session_tasks.add(task)
        task.add_done_callback(self._session_tasks.discard)

    def _cancel_session_tasks(self) -> None:
        for task in list(self._session_tasks):
            task.cancel()
