"""Playwright-backed access to the listing and article pages."""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import CrawlConfig
from .content import extract_detail
from .models import DetailDocument

logger = logging.getLogger("xz_mdx")

LISTING_ITEM_SELECTORS = (".news_item", 'div[class*="news_item"]')
LISTING_READY_SELECTOR = "#news_list .news_item"
COMMUNITY_TAB_TEXT = "text=社区板块"
NEXT_PAGE_SELECTOR = 'a:has-text("下一页")'


class ListingSource(Protocol):
    """What the crawl orchestrator needs from the browser layer."""

    async def navigate_to_listing(self) -> None: ...

    async def current_page_entries(self) -> List[str]: ...

    async def advance_to_next_page(self) -> bool: ...

    async def fetch_detail_document(self, url: str) -> DetailDocument: ...


class PlaywrightListingSource:
    """Drive a headless Chromium session over the community listing."""

    def __init__(self, config: CrawlConfig) -> None:
        self.config = config
        self._playwright_cm = None
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def __aenter__(self) -> "PlaywrightListingSource":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self) -> None:
        logger.info("Launching browser")
        self._playwright_cm = async_playwright()
        self._playwright = await self._playwright_cm.__aenter__()
        self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
        self._context = await self._browser.new_context(
            user_agent=self.config.user_agent,
            viewport={"width": 1920, "height": 1080},
        )
        self._page = await self._context.new_page()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
            logger.info("Browser closed")
        if self._playwright_cm is not None:
            await self._playwright_cm.__aexit__(None, None, None)
            self._playwright_cm = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser session has not been started")
        return self._page

    async def navigate_to_listing(self) -> None:
        logger.info("Loading %s", self.config.base_url)
        await self.page.goto(
            self.config.base_url,
            referer=self.config.referer,
            wait_until="domcontentloaded",
        )
        tab = self.page.locator(COMMUNITY_TAB_TEXT).first
        try:
            if await tab.count() and await tab.is_visible():
                logger.info("Switching to the community tab")
                await tab.click()
                await self.page.wait_for_load_state("networkidle")
            else:
                logger.info("Community tab not found; assuming it is already selected")
        except PlaywrightError as exc:
            logger.warning("Could not switch to the community tab: %s", exc)

    async def current_page_entries(self) -> List[str]:
        await self.page.wait_for_selector(LISTING_READY_SELECTOR, timeout=10_000)
        if self.config.listing_settle_delay:
            await self.page.wait_for_timeout(int(self.config.listing_settle_delay * 1000))
        for selector in LISTING_ITEM_SELECTORS:
            fragments = await self.page.locator(selector).evaluate_all(
                "elements => elements.map(element => element.outerHTML)"
            )
            if fragments:
                logger.debug("Selector %s matched %d listing item(s)", selector, len(fragments))
                return list(fragments)
        return []

    async def advance_to_next_page(self) -> bool:
        link = self.page.locator(NEXT_PAGE_SELECTOR).first
        if not await link.count() or not await link.is_visible():
            logger.info("No next-page link; reached the last page")
            return False
        await link.click()
        await self.page.wait_for_load_state("networkidle")
        return True

    async def fetch_detail_document(self, url: str) -> DetailDocument:
        if self._context is None:
            raise RuntimeError("Browser session has not been started")
        page = await self._context.new_page()
        page.set_default_navigation_timeout(self.config.detail_timeout * 1000)
        try:
            await page.goto(url, wait_until="load", referer=self.config.referer)
            html = await page.content()
            page_title = await page.title()
        except PlaywrightTimeoutError as exc:
            logger.error("Timeout while loading %s: %s", url, exc)
            return DetailDocument.failed(url, f"timeout: {exc}")
        except PlaywrightError as exc:
            logger.error("Failed to load %s: %s", url, exc)
            return DetailDocument.failed(url, str(exc))
        finally:
            await page.close()
        return extract_detail(html, page_title, url)
