"""MailboxWatcher — serialized check cycles over a ready mailbox session."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from .config import WatcherConfig
from .decoder import decode_message, find_action_link
from .dispatcher import AutomationDispatcher
from .errors import ConfigurationError, ConnectionLostError, MailboxProtocolError
from .filters import TargetFilter, build_search_query
from .imap_client import AsyncImapClient
from .models import RawMessage

logger = structlog.get_logger()


class MailboxWatcher:
    """Run "check for matching unseen mail" cycles, one at a time.

    Push notifications and the fallback timer both call
    :meth:`run_check_cycle`.  A call made while a cycle is in flight only
    sets the recheck flag; however many arrive, exactly one more cycle
    runs once the current one finishes.  All flags are mutated on the
    event loop thread only.

    Connection failures (:class:`ConnectionLostError`) are not handled
    here; they propagate to the supervisor.
    """

    def __init__(
        self,
        target_filter: TargetFilter,
        dispatcher: AutomationDispatcher,
        config: WatcherConfig,
    ) -> None:
        self._filter = target_filter
        self._dispatcher = dispatcher
        self._config = config
        self._session: AsyncImapClient | None = None

        self._in_flight = False
        self._recheck_requested = False
        # UIDs already marked seen and dispatched in this mailbox epoch.
        self._handled_uids: set[int] = set()
        # Failed dispatches per UID; only tracked when failures re-surface mail.
        self._automation_failures: dict[int, int] = {}

        self.checks_completed: int = 0
        self.messages_matched: int = 0
        self.dispatch_failures: int = 0
        self.last_check_at: datetime | None = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def recheck_requested(self) -> bool:
        return self._recheck_requested

    # ------------------------------------------------------------------
    # Session epochs
    # ------------------------------------------------------------------

    def attach(self, session: AsyncImapClient) -> None:
        """Start a new mailbox epoch on a freshly opened session."""
        self._session = session
        self._handled_uids.clear()

    def detach(self) -> None:
        self._session = None
        self._recheck_requested = False

    # ------------------------------------------------------------------
    # Check cycle
    # ------------------------------------------------------------------

    async def run_check_cycle(self) -> None:
        """Run one check cycle, or request a recheck if one is in flight."""
        if self._in_flight:
            self._recheck_requested = True
            logger.debug("check_coalesced")
            return

        self._in_flight = True
        try:
            while True:
                self._recheck_requested = False
                try:
                    await self._check_once()
                except ConfigurationError as exc:
                    logger.error("check_aborted", reason="configuration", error=str(exc))
                    self._recheck_requested = False
                    return
                if not self._recheck_requested:
                    return
                logger.debug("check_rerun")
        finally:
            self._in_flight = False

    async def _check_once(self) -> None:
        self._filter.validate()
        session = self._require_session()

        try:
            uids = await session.search(build_search_query(self._filter.addresses))
        except MailboxProtocolError as exc:
            logger.error("imap_search_failed", error=str(exc))
            return

        self.checks_completed += 1
        self.last_check_at = datetime.now(UTC)

        uids = [uid for uid in uids if uid not in self._handled_uids]
        if not uids:
            return
        logger.info("candidate_messages_found", count=len(uids))

        pending: dict[int, RawMessage] = {}
        try:
            async for part in session.fetch_parts(uids):
                raw = pending.setdefault(part.uid, RawMessage(uid=part.uid))
                raw.append(part.section, part.data)
                raw.end(part.section)
                if raw.complete:
                    del pending[part.uid]
                    await self._process(session, raw)
        except MailboxProtocolError as exc:
            logger.error("imap_fetch_failed", error=str(exc))
            return

        for uid in pending:
            logger.warning("incomplete_message_skipped", uid=uid)

    async def _process(self, session: AsyncImapClient, raw: RawMessage) -> None:
        decoded = decode_message(raw)
        if not self._filter.matches(decoded.sender, decoded.subject):
            logger.info(
                "message_not_matching",
                uid=raw.uid,
                sender=decoded.sender,
                subject=decoded.subject,
            )
            return

        # Seen only after both filters matched, and before dispatch.
        try:
            await session.add_seen(raw.uid)
        except MailboxProtocolError as exc:
            logger.error("mark_seen_failed", uid=raw.uid, error=str(exc))
            return

        self._handled_uids.add(raw.uid)
        self.messages_matched += 1
        logger.info(
            "matching_message_received",
            uid=raw.uid,
            sender=decoded.sender,
            subject=decoded.subject,
        )

        link = find_action_link(decoded.links, self._config.action_marker)
        if link is None:
            logger.error(
                "action_link_missing",
                uid=raw.uid,
                marker=self._config.action_marker,
                links_found=len(decoded.links),
            )
            return

        result = await self._dispatcher.dispatch(link)
        if result.ok:
            self._automation_failures.pop(raw.uid, None)
            return
        self.dispatch_failures += 1
        await self._handle_dispatch_failure(session, raw.uid)

    async def _handle_dispatch_failure(self, session: AsyncImapClient, uid: int) -> None:
        """Re-surface a failed message, at most ``automation_max_retries`` times."""
        if not self._config.mark_unseen_on_automation_failure:
            return

        failures = self._automation_failures.get(uid, 0) + 1
        if failures > self._config.automation_max_retries:
            # Stays seen and handled; the link is not tried again.
            self._automation_failures.pop(uid, None)
            logger.error("automation_retries_exhausted", uid=uid, failures=failures)
            return
        self._automation_failures[uid] = failures

        try:
            await session.remove_seen(uid)
        except MailboxProtocolError as exc:
            logger.error("mark_unseen_failed", uid=uid, error=str(exc))
            return
        self._handled_uids.discard(uid)
        logger.info("message_marked_unseen", uid=uid, failures=failures)

    def _require_session(self) -> AsyncImapClient:
        if self._session is None:
            raise ConnectionLostError("no mailbox session attached")
        return self._session
