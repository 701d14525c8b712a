"""Browser capability and its backends."""

from llamaclick.browser.base import BrowserBackend
from llamaclick.browser.selectors import TargetDescriptor, TargetKind, parse_target
from llamaclick.browser.types import ElementHandle, ElementInfo, PageState
from llamaclick.config import BrowserConfig

__all__ = [
    "BrowserBackend",
    "ElementHandle",
    "ElementInfo",
    "PageState",
    "TargetDescriptor",
    "TargetKind",
    "parse_target",
    "create_browser",
]


def create_browser(config: BrowserConfig) -> BrowserBackend:
    """Factory to create the configured browser backend."""
    from llamaclick.browser.playwright_backend import PlaywrightBrowser

    return PlaywrightBrowser(config)
