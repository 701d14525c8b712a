"""Browser capability interface."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from llamaclick.browser.types import ElementHandle, ElementInfo, PageState


@runtime_checkable
class BrowserBackend(Protocol):
    """What the agent needs from a browser driver.

    Implementations raise :class:`~llamaclick.errors.StaleElementError` when a
    handle no longer refers to a live node, :class:`~llamaclick.errors.BrowserError`
    for other driver failures, and ``asyncio.TimeoutError`` when ``timeout``
    (seconds) elapses.
    """

    async def navigate(self, url: str, timeout: float) -> None: ...

    async def find_candidates(self, query: str) -> list[ElementHandle]:
        """Structural selectors return their matches; semantic phrases return
        every element that could plausibly be a target, in document order."""
        ...

    async def describe(self, handle: ElementHandle) -> ElementInfo: ...

    async def act(
        self, handle: ElementHandle, kind: str, value: str | None, timeout: float
    ) -> None: ...

    async def snapshot(self) -> PageState: ...

    async def wait_for(self, selector: str, timeout: float) -> None: ...

    async def screenshot(self, path: str) -> None:
        """Write a PNG of the whole current page to ``path``."""
        ...

    async def html(self) -> str: ...

    async def close(self) -> None: ...
