"""AutomationDispatcher — hand an action link to the page automation."""

from __future__ import annotations

from typing import Protocol

import structlog

from .errors import AutomationError
from .models import DispatchResult

logger = structlog.get_logger()


class PageAutomation(Protocol):
    """The page-automation collaborator: one opaque call per link.

    ``automate`` returns on success and raises :class:`AutomationError`
    (or any other exception) on failure.  It owns its own timeout and
    any internal retries.
    """

    async def automate(self, url: str) -> None: ...


class AutomationDispatcher:
    """Invoke the page automation and turn its outcome into a result.

    A failure is terminal for that link: the action behind it is assumed
    single-use, so the same link is never retried.
    """

    def __init__(self, automation: PageAutomation) -> None:
        self._automation = automation

    async def dispatch(self, link: str) -> DispatchResult:
        logger.info("automation_dispatch_started", link=link)
        try:
            await self._automation.automate(link)
        except AutomationError as exc:
            logger.error("automation_failed", link=link, error=str(exc))
            return DispatchResult(link=link, ok=False, error=str(exc))
        except Exception as exc:
            logger.exception("automation_crashed", link=link)
            return DispatchResult(link=link, ok=False, error=f"{type(exc).__name__}: {exc}")

        logger.info("automation_succeeded", link=link)
        return DispatchResult(link=link, ok=True)
