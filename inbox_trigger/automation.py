"""Playwright implementation of the page-automation collaborator."""

from __future__ import annotations

import asyncio

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, async_playwright

from .config import AutomationConfig
from .errors import AutomationError
from .retry import with_retry
from .state_store import StateStore

logger = structlog.get_logger()

# Polls for the success marker between clicks.
_CONFIRM_CHECK_MS = 1_000


class PlaywrightAutomation:
    """Open the action link in headless Chromium and confirm the action.

    The action button is clicked and the success marker checked
    repeatedly until it appears or ``timeout_seconds`` runs out.  When a
    ``storage_state_path`` is configured the browser context is seeded
    from it and saved back after a successful run.
    """

    def __init__(self, config: AutomationConfig) -> None:
        self._config = config
        self._store = StateStore(config.storage_state_path) if config.storage_state_path else None

    async def automate(self, url: str) -> None:
        storage_state = await asyncio.to_thread(self._store.load) if self._store else None

        async with async_playwright() as pw:
            browser = await pw.chromium.launch(
                headless=self._config.headless,
                args=["--disable-gl-drawing-for-tests"],
            )
            try:
                context = await browser.new_context(storage_state=storage_state)
                page = await context.new_page()
                await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self._config.navigation_timeout_seconds * 1000,
                )

                confirm = with_retry(
                    timeout_seconds=self._config.timeout_seconds,
                    retryable_exceptions=(PlaywrightError,),
                )(self._click_and_confirm)
                await confirm(page)

                if self._store is not None:
                    await self._save_state(await context.storage_state())
            except PlaywrightError as exc:
                raise AutomationError(
                    f"action not confirmed, the link may have expired: {exc}",
                    link=url,
                ) from exc
            finally:
                await browser.close()

    async def _click_and_confirm(self, page: Page) -> None:
        await page.locator(self._config.action_selector).click(force=True, timeout=_CONFIRM_CHECK_MS)
        await page.locator(self._config.success_selector).wait_for(
            state="attached",
            timeout=_CONFIRM_CHECK_MS,
        )

    async def _save_state(self, state: dict) -> None:
        assert self._store is not None
        try:
            await asyncio.to_thread(self._store.save, state)
        except (OSError, ValueError) as exc:
            logger.warning("browser_state_save_failed", path=str(self._store.path), error=str(exc))
