"""InboxTriggerService — wires the components together and runs them."""

from __future__ import annotations

import asyncio
import signal
import time
from collections.abc import Callable

import structlog
import uvicorn

from .config import ImapConfig, ServiceConfig
from .dispatcher import AutomationDispatcher, PageAutomation
from .errors import ReconnectExhaustedError
from .filters import TargetFilter
from .health import create_health_app
from .imap_client import AsyncImapClient
from .logging import setup_logging
from .supervisor import ConnectionSupervisor
from .watcher import MailboxWatcher

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIGURATION_ERROR = 2

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class InboxTriggerService:
    """Top-level service object.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the connection supervisor (and through it the mailbox watcher)
    * the FastAPI health server, unless ``health_port`` is 0

    and returns the process exit code.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        automation: PageAutomation | None = None,
        client_factory: Callable[[ImapConfig], AsyncImapClient] = AsyncImapClient,
    ) -> None:
        self.config = config
        self.start_time: float = time.monotonic()
        self.target_filter = TargetFilter.from_config(config.filters)

        if automation is None:
            from .automation import PlaywrightAutomation

            automation = PlaywrightAutomation(config.automation)

        self._shutdown_event = asyncio.Event()
        self.dispatcher = AutomationDispatcher(automation)
        self.watcher = MailboxWatcher(self.target_filter, self.dispatcher, config.watcher)
        self.supervisor = ConnectionSupervisor(
            config.imap,
            config.reconnect,
            self.watcher,
            poll_interval_seconds=config.watcher.poll_interval_seconds,
            shutdown_event=self._shutdown_event,
            client_factory=client_factory,
        )

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self._on_shutdown_signal, sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    def _on_shutdown_signal(self, sig: signal.Signals) -> None:
        """End the session gracefully; a repeated signal is only logged."""
        if self._shutdown_event.is_set():
            logger.info("shutdown_already_in_progress", signal=sig.name)
            return
        logger.info(
            "shutdown_signal_received",
            signal=sig.name,
            state=self.supervisor.state.value,
            check_in_flight=self.watcher.in_flight,
        )
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Subsystems
    # ------------------------------------------------------------------

    async def _run_supervisor(self) -> None:
        try:
            await self.supervisor.run()
        finally:
            # Stop the health server too, whatever ended the session.
            self._shutdown_event.set()

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Run until shutdown or until reconnects are exhausted.

        Raises :class:`ConfigurationError` before connecting when the
        target filter is unusable.
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        self.target_filter.validate()
        self._install_signal_handlers()
        self.start_time = time.monotonic()

        logger.info(
            "service_starting",
            service=self.config.name,
            host=self.config.imap.host,
            mailbox=self.config.imap.mailbox,
            subjects=len(self.target_filter.subjects),
            addresses=len(self.target_filter.addresses),
        )

        exit_code = EXIT_OK
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_supervisor())
                if self.config.health_port:
                    tg.create_task(self._run_health_server())
        except* ReconnectExhaustedError as group:
            exit_code = EXIT_FATAL
            logger.critical("service_giving_up", error=str(group.exceptions[0]))
        except* Exception:
            exit_code = EXIT_FATAL
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            self._remove_signal_handlers()

        logger.info("service_stopped", service=self.config.name, exit_code=exit_code)
        return exit_code
