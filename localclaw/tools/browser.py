"""
Browser Tool
============

Visits a URL in headless Chromium (via Playwright) and returns the page's
title, HTTP status and visible text.

The browser process is expensive to start, so one instance is shared by
every browse call in the process. BrowserSession owns it:

    session = BrowserSession(headless=True)
    browser = await session.acquire()     # launched on first use
    ...
    await session.close()                 # exactly once, at shutdown

Each call gets its own browser context (cookies, storage), which is always
closed when the call ends.
"""

import asyncio
from dataclasses import dataclass

from playwright.async_api import Browser, Playwright, async_playwright

from localclaw.tools import Tool, ToolRegistry, ToolResult
from localclaw.utils.config import BrowserToolConfig
from localclaw.utils.logger import Logger

logger = Logger("Browser")

MAX_CONTENT_CHARS = 50_000

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Drop non-visible elements before reading innerText
EXTRACT_TEXT_JS = """
() => {
    const body = document.body;
    if (!body) return '';
    body.querySelectorAll('script, style, noscript').forEach(el => el.remove());
    return body.innerText || body.textContent || '';
}
"""


@dataclass
class BrowseResult:
    url: str
    title: str
    content: str
    status: int
    error: str | None = None

    def to_text(self) -> str:
        return f"Title: {self.title}\nStatus: {self.status}\n\n{self.content}"


class BrowserSession:
    """
    Lazily launched, shared Chromium instance.

    close() releases whatever acquire() managed to create, even when the
    launch itself failed halfway, and is safe to call more than once.
    """

    def __init__(self, headless: bool = True):
        self.headless = headless
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._browser is not None

    async def acquire(self) -> Browser:
        async with self._lock:
            if self._browser is not None:
                return self._browser

            if self._playwright is None:
                self._playwright = await async_playwright().start()

            logger.info("Launching headless Chromium")
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox", "--disable-setuid-sandbox"],
            )
            return self._browser

    async def close(self) -> None:
        async with self._lock:
            browser, self._browser = self._browser, None
            playwright, self._playwright = self._playwright, None

        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping Playwright: {e}")
        if browser or playwright:
            logger.info("Browser closed")


class BrowserTool:
    """
    Fetches pages through a BrowserSession.

    Example:
        tool = BrowserTool(config.tools.browser)
        result = await tool.browse("https://example.com")
        print(result.title, result.status)
        await tool.close()
    """

    def __init__(self, config: BrowserToolConfig, session: BrowserSession | None = None):
        self.config = config
        self.session = session or BrowserSession(headless=config.headless)

    async def browse(self, url: str) -> BrowseResult:
        """
        Load a page and extract its visible text.

        Failures (navigation timeout, DNS, launch problems) are returned in
        BrowseResult.error rather than raised.
        """
        if not self.config.enabled:
            return BrowseResult(url, "", "Browser tool is disabled", 0, "Browser tool is disabled")

        logger.info(f"Browsing: {url}")

        try:
            browser = await self.session.acquire()
            context = await browser.new_context(user_agent=USER_AGENT)
            try:
                page = await context.new_page()
                page.set_default_timeout(self.config.timeout_seconds * 1000)

                response = await page.goto(url, wait_until="domcontentloaded")
                title = await page.title()
                content = await page.evaluate(EXTRACT_TEXT_JS)
            finally:
                await context.close()

            return BrowseResult(
                url=url,
                title=title,
                content=(content or "")[:MAX_CONTENT_CHARS],
                status=response.status if response else 0,
            )
        except Exception as e:
            logger.error(f"Browser error for {url}", e)
            return BrowseResult(url, "", "", 0, str(e))

    async def browse_tool(self, params: dict) -> ToolResult:
        if not self.config.enabled:
            return ToolResult.fail("Browser tool is disabled")

        url = params.get("url")
        if not url:
            return ToolResult.fail("Error browsing: 'url' is required")

        url = str(url).strip()
        if not url.startswith(("http://", "https://")):
            url = "https://" + url

        result = await self.browse(url)
        if result.error:
            return ToolResult.fail(f"Error browsing {url}: {result.error}")
        return ToolResult.ok(result.to_text())

    async def close(self) -> None:
        await self.session.close()


def register_browser_tools(registry: ToolRegistry, browser: BrowserTool) -> None:
    """Register the browse tool."""
    registry.register(Tool(
        name="browse",
        description="Visit a URL and return the page title and text content",
        parameters={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to visit"}
            },
            "required": ["url"]
        },
        execute=browser.browse_tool
    ))
