"""Tests for MailboxWatcher check cycles."""

from __future__ import annotations

import asyncio

import pytest

from inbox_trigger.config import WatcherConfig
from inbox_trigger.errors import ConnectionLostError, MailboxProtocolError
from inbox_trigger.filters import TargetFilter

ACTION_LINK = "https://www.netflix.com/account/update-primary-location?token=abc"


class TestCheckCycle:
    @pytest.mark.asyncio
    async def test_matching_message_is_marked_seen_and_dispatched(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert mailbox.seen == {1}
        assert automation.urls == [ACTION_LINK]
        assert watcher.messages_matched == 1
        assert watcher.checks_completed == 1
        assert watcher.last_check_at is not None
        assert not watcher.in_flight

    @pytest.mark.asyncio
    async def test_search_uses_unseen_and_sender(self, mailbox, automation, watcher_factory):
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert mailbox.search_calls == [["UNSEEN", "FROM", "info@netflix.com"]]

    @pytest.mark.asyncio
    async def test_subject_mismatch_stays_unseen(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email(subject="New on Netflix this week"))
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert mailbox.seen == set()
        assert automation.urls == []

    @pytest.mark.asyncio
    async def test_sender_mismatch_stays_unseen(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email(from_addr="Phisher <info@netfl1x.com>"))
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert mailbox.seen == set()
        assert automation.urls == []

    @pytest.mark.asyncio
    async def test_lookalike_sender_stays_unseen(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email(from_addr="Netflix <info@netflix.com.evil.example>"))
        mailbox.add(2, build_email(from_addr="Netflix <xinfo@netflix.com>"))
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert mailbox.seen == set()
        assert automation.urls == []
        assert watcher.messages_matched == 0

    @pytest.mark.asyncio
    async def test_truncated_subject_matches_longer_target(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email(subject="Household"))
        target = TargetFilter(
            subjects=("Your Netflix Household",),
            addresses=("info@netflix.com",),
        )
        watcher = watcher_factory(mailbox, automation, filter_=target)

        await watcher.run_check_cycle()

        assert automation.urls == [ACTION_LINK]

    @pytest.mark.asyncio
    async def test_missing_action_link_still_marks_seen(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email(body="Nothing to click here: https://www.netflix.com/browse"))
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert mailbox.seen == {1}
        assert automation.urls == []

    @pytest.mark.asyncio
    async def test_first_action_link_wins(self, mailbox, automation, watcher_factory, build_email):
        body = (
            "https://www.netflix.com/account/update-primary-location?token=first\r\n"
            "https://www.netflix.com/account/update-primary-location?token=second\r\n"
        )
        mailbox.add(1, build_email(body=body))
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert automation.urls == [
            "https://www.netflix.com/account/update-primary-location?token=first"
        ]

    @pytest.mark.asyncio
    async def test_base64_body_is_decoded(
        self, mailbox, automation, watcher_factory, build_email
    ):
        import base64

        body = base64.b64encode(f"Update: {ACTION_LINK}".encode()).decode()
        mailbox.add(1, build_email(body=body, transfer_encoding="base64"))
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert automation.urls == [ACTION_LINK]

    @pytest.mark.asyncio
    async def test_several_messages_processed_in_order(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(3, build_email(body="https://x.com/update-primary-location?n=3"))
        mailbox.add(1, build_email(body="https://x.com/update-primary-location?n=1"))
        mailbox.add(2, build_email(subject="Something else"))
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert automation.urls == [
            "https://x.com/update-primary-location?n=1",
            "https://x.com/update-primary-location?n=3",
        ]
        assert mailbox.seen == {1, 3}

    @pytest.mark.asyncio
    async def test_second_cycle_does_not_redispatch(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()
        await watcher.run_check_cycle()

        assert automation.urls == [ACTION_LINK]
        assert watcher.checks_completed == 2

    @pytest.mark.asyncio
    async def test_incomplete_message_is_skipped(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        mailbox.headers_only.add(1)
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert mailbox.seen == set()
        assert automation.urls == []


class TestSeenPolicy:
    @pytest.mark.asyncio
    async def test_seen_before_dispatch(self, mailbox, watcher_factory, build_email):
        observed: list[set[int]] = []

        class RecordingAutomation:
            async def automate(self, url: str) -> None:
                observed.append(set(mailbox.seen))

        mailbox.add(1, build_email())
        watcher = watcher_factory(mailbox, RecordingAutomation())

        await watcher.run_check_cycle()

        assert observed == [{1}]

    @pytest.mark.asyncio
    async def test_failed_automation_leaves_message_seen(
        self, mailbox, failing_automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        watcher = watcher_factory(mailbox, failing_automation)

        await watcher.run_check_cycle()

        assert mailbox.seen == {1}
        assert mailbox.unseen_calls == []
        assert watcher.dispatch_failures == 1

    @pytest.mark.asyncio
    async def test_failed_automation_marks_unseen_when_configured(
        self, mailbox, failing_automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        config = WatcherConfig(poll_interval_seconds=60.0, mark_unseen_on_automation_failure=True)
        watcher = watcher_factory(mailbox, failing_automation, config=config)

        await watcher.run_check_cycle()

        assert mailbox.seen == set()
        assert mailbox.unseen_calls == [1]

    @pytest.mark.asyncio
    async def test_unseen_retries_stop_after_limit(
        self, mailbox, failing_automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        config = WatcherConfig(
            poll_interval_seconds=60.0,
            mark_unseen_on_automation_failure=True,
            automation_max_retries=2,
        )
        watcher = watcher_factory(mailbox, failing_automation, config=config)

        for _ in range(5):
            await watcher.run_check_cycle()

        assert failing_automation.urls == [ACTION_LINK] * 3
        assert mailbox.unseen_calls == [1, 1]
        assert mailbox.seen == {1}
        assert watcher.dispatch_failures == 3

    @pytest.mark.asyncio
    async def test_zero_retries_leaves_failed_message_seen(
        self, mailbox, failing_automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        config = WatcherConfig(
            poll_interval_seconds=60.0,
            mark_unseen_on_automation_failure=True,
            automation_max_retries=0,
        )
        watcher = watcher_factory(mailbox, failing_automation, config=config)

        await watcher.run_check_cycle()
        await watcher.run_check_cycle()

        assert failing_automation.urls == [ACTION_LINK]
        assert mailbox.unseen_calls == []
        assert mailbox.seen == {1}

    @pytest.mark.asyncio
    async def test_mark_seen_failure_skips_dispatch(
        self, mailbox, automation, watcher_factory, build_email
    ):
        async def refuse(uid: int) -> None:
            raise MailboxProtocolError("STORE failed")

        mailbox.add(1, build_email())
        mailbox.add_seen = refuse
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert automation.urls == []
        assert watcher.messages_matched == 0


class TestErrors:
    @pytest.mark.asyncio
    async def test_search_failure_ends_cycle_quietly(self, mailbox, automation, watcher_factory):
        mailbox.search_error = MailboxProtocolError("SEARCH failed")
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert watcher.checks_completed == 0
        assert not watcher.in_flight

    @pytest.mark.asyncio
    async def test_fetch_failure_ends_cycle_quietly(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.add(1, build_email())
        mailbox.fetch_error = MailboxProtocolError("FETCH failed")
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert automation.urls == []
        assert mailbox.seen == set()

    @pytest.mark.asyncio
    async def test_connection_loss_propagates(self, mailbox, automation, watcher_factory):
        mailbox.search_error = ConnectionLostError("socket closed")
        watcher = watcher_factory(mailbox, automation)

        with pytest.raises(ConnectionLostError):
            await watcher.run_check_cycle()
        assert not watcher.in_flight

    @pytest.mark.asyncio
    async def test_empty_filter_aborts_without_search(self, mailbox, automation, watcher_factory):
        watcher = watcher_factory(
            mailbox, automation, filter_=TargetFilter(subjects=(), addresses=("a@x.com",))
        )

        await watcher.run_check_cycle()

        assert mailbox.search_calls == []

    @pytest.mark.asyncio
    async def test_no_session_raises(self, mailbox, automation, watcher_factory):
        watcher = watcher_factory(mailbox, automation)
        watcher.detach()

        with pytest.raises(ConnectionLostError):
            await watcher.run_check_cycle()


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_triggers_during_cycle_coalesce_into_one_rerun(
        self, mailbox, automation, watcher_factory
    ):
        mailbox.search_gate = asyncio.Event()
        watcher = watcher_factory(mailbox, automation)

        first = asyncio.create_task(watcher.run_check_cycle())
        await asyncio.sleep(0)
        assert watcher.in_flight

        for _ in range(5):
            await watcher.run_check_cycle()
        assert watcher.recheck_requested

        mailbox.search_gate.set()
        await first

        assert len(mailbox.search_calls) == 2
        assert not watcher.in_flight
        assert not watcher.recheck_requested

    @pytest.mark.asyncio
    async def test_no_trigger_means_single_search(self, mailbox, automation, watcher_factory):
        watcher = watcher_factory(mailbox, automation)

        await watcher.run_check_cycle()

        assert len(mailbox.search_calls) == 1

    @pytest.mark.asyncio
    async def test_mail_arriving_mid_cycle_is_picked_up_by_rerun(
        self, mailbox, automation, watcher_factory, build_email
    ):
        mailbox.search_gate = asyncio.Event()
        watcher = watcher_factory(mailbox, automation)

        first = asyncio.create_task(watcher.run_check_cycle())
        await asyncio.sleep(0)
        mailbox.add(9, build_email())
        await watcher.run_check_cycle()
        mailbox.search_gate.set()
        await first

        assert automation.urls == [ACTION_LINK]
