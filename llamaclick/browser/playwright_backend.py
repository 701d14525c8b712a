"""Headless browser backend using Playwright."""

from __future__ import annotations

import asyncio
from itertools import count
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout
from playwright.async_api import async_playwright

from llamaclick.browser.selectors import parse_target
from llamaclick.browser.types import ElementHandle, ElementInfo, PageState
from llamaclick.config import BrowserConfig
from llamaclick.errors import BrowserError, StaleElementError
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)

# Everything a semantic phrase could plausibly refer to
_CANDIDATE_SELECTOR = (
    "a, button, input, select, textarea, label, summary, option, "
    "[role=button], [role=link], [role=tab], [role=menuitem], [role=checkbox], "
    "[role=radio], [role=option], [role=combobox], [role=textbox], [onclick], "
    "h1, h2, h3, h4, [aria-label]"
)

_DESCRIBE_JS = """
(el) => {
    const attrs = {};
    for (const a of el.attributes) { attrs[a.name] = a.value; }
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    const visible = rect.width > 0 && rect.height > 0
        && style.visibility !== 'hidden' && style.display !== 'none';
    let text = (el.innerText || el.textContent || '').trim();
    if (!text && el.id) {
        const label = document.querySelector(`label[for="${CSS.escape(el.id)}"]`);
        if (label) { text = label.innerText.trim(); }
    }
    return {
        tag: el.tagName.toLowerCase(),
        text: text.substring(0, 500),
        role: el.getAttribute('role') || '',
        attributes: attrs,
        value: ('value' in el && typeof el.value === 'string') ? el.value : null,
        visible: visible,
        enabled: !el.disabled,
    };
}
"""

_STALE_MARKERS = ("not attached", "detached", "execution context was destroyed", "stale")


def _is_stale(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _STALE_MARKERS)


def _driver_error(exc: PlaywrightError, what: str) -> Exception:
    """Map a Playwright error onto the BrowserBackend error contract."""
    if isinstance(exc, PlaywrightTimeout):
        return asyncio.TimeoutError(f"{what}: {exc}")
    if _is_stale(exc):
        return StaleElementError(f"{what}: {exc}")
    return BrowserError(f"{what}: {exc}")


async def _block_images(route: Any) -> None:
    if route.request.resource_type == "image":
        await route.abort()
    else:
        await route.continue_()


class PlaywrightBrowser:
    """Browser capability backed by a single Playwright page.

    Element handles are only valid until the next query: each
    ``find_candidates``/``snapshot`` call disposes the previous set.
    """

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self._config = config or BrowserConfig()
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._handles: dict[str, Any] = {}
        self._ids = count(1)
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        self._playwright = await async_playwright().start()

        launch_kwargs: dict[str, Any] = {"headless": self._config.headless}
        if self._config.proxy:
            launch_kwargs["proxy"] = {"server": self._config.proxy}
        browser_type = self._config.browser

        if browser_type == "firefox":
            self._browser = await self._playwright.firefox.launch(**launch_kwargs)
        elif browser_type == "webkit":
            self._browser = await self._playwright.webkit.launch(**launch_kwargs)
        else:
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)

        self._context = await self._browser.new_context(
            user_agent=self._config.user_agent,
            viewport={"width": self._config.window_width, "height": self._config.window_height},
            ignore_https_errors=self._config.ignore_https_errors,
        )
        self._context.set_default_timeout(self._config.default_timeout * 1000)
        if self._config.block_images:
            await self._context.route("**/*", _block_images)
        self._page = await self._context.new_page()
        self._initialized = True
        log.info(
            "browser_initialized",
            browser=browser_type,
            headless=self._config.headless,
            proxy=bool(self._config.proxy),
            block_images=self._config.block_images,
        )

    def _register(self, element: Any, index: int) -> ElementHandle:
        handle = ElementHandle(id=f"el-{next(self._ids)}", index=index)
        self._handles[handle.id] = element
        return handle

    def _lookup(self, handle: ElementHandle) -> Any:
        element = self._handles.get(handle.id)
        if element is None:
            raise StaleElementError(f"unknown element handle {handle.id}")
        return element

    async def _release_handles(self) -> None:
        elements = list(self._handles.values())
        self._handles.clear()
        for element in elements:
            try:
                await element.dispose()
            except PlaywrightError as e:
                # Already gone with its document
                log.debug("handle_dispose_failed", error=str(e))

    async def navigate(self, url: str, timeout: float) -> None:
        await self._ensure_initialized()
        await self._release_handles()
        try:
            await self._page.goto(url, wait_until="load", timeout=timeout * 1000)
        except PlaywrightError as e:
            raise _driver_error(e, f"navigation to {url}") from e

    async def find_candidates(self, query: str) -> list[ElementHandle]:
        await self._ensure_initialized()
        desc = parse_target(query)
        selector = _CANDIDATE_SELECTOR if desc.is_semantic else desc.to_query()
        return await self._query_all(selector)

    async def _query_all(self, selector: str) -> list[ElementHandle]:
        await self._release_handles()
        try:
            elements = await self._page.query_selector_all(selector)
        except PlaywrightError as e:
            raise _driver_error(e, f"query {selector!r}") from e
        kept = elements[: self._config.max_candidates]
        for element in elements[self._config.max_candidates:]:
            try:
                await element.dispose()
            except PlaywrightError as e:
                log.debug("handle_dispose_failed", error=str(e))
        return [self._register(el, i) for i, el in enumerate(kept)]

    async def describe(self, handle: ElementHandle) -> ElementInfo:
        element = self._lookup(handle)
        try:
            data = await element.evaluate(_DESCRIBE_JS)
        except PlaywrightError as e:
            raise _driver_error(e, "describe") from e
        return ElementInfo(
            handle=handle,
            tag=data["tag"],
            text=data["text"],
            role=data["role"],
            attributes=data["attributes"],
            value=data["value"],
            visible=data["visible"],
            enabled=data["enabled"],
        )

    async def act(
        self, handle: ElementHandle, kind: str, value: str | None, timeout: float
    ) -> None:
        element = self._lookup(handle)
        ms = timeout * 1000
        try:
            if kind == "click":
                await element.click(timeout=ms)
                await self._page.wait_for_load_state("domcontentloaded", timeout=ms)
            elif kind == "fill":
                await element.fill(value or "", timeout=ms)
            elif kind == "select":
                await element.select_option(value, timeout=ms)
            else:
                raise BrowserError(f"Unknown action: {kind}")
        except PlaywrightError as e:
            raise _driver_error(e, kind) from e

    async def snapshot(self) -> PageState:
        await self._ensure_initialized()
        handles = await self._query_all(_CANDIDATE_SELECTOR)
        elements = []
        for handle in handles:
            try:
                elements.append(await self.describe(handle))
            except StaleElementError:
                continue
        try:
            text = await self._page.evaluate(
                "() => document.body ? document.body.innerText.substring(0, 20000) : ''"
            )
            title = await self._page.title()
        except PlaywrightError as e:
            raise _driver_error(e, "snapshot") from e
        return PageState(url=self._page.url, title=title, text=text, elements=tuple(elements))

    async def wait_for(self, selector: str, timeout: float) -> None:
        await self._ensure_initialized()
        try:
            await self._page.wait_for_selector(parse_target(selector).to_query(), timeout=timeout * 1000)
        except PlaywrightError as e:
            raise _driver_error(e, f"wait for {selector!r}") from e

    async def screenshot(self, path: str) -> None:
        await self._ensure_initialized()
        try:
            await self._page.screenshot(path=path, full_page=True)
        except PlaywrightError as e:
            raise _driver_error(e, "screenshot") from e

    async def html(self) -> str:
        await self._ensure_initialized()
        try:
            return await self._page.content()
        except PlaywrightError as e:
            raise _driver_error(e, "html") from e

    async def close(self) -> None:
        self._handles.clear()
        if self._context:
            await self._context.close()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()
        self._initialized = False
