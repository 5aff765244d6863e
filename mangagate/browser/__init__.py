"""Browser rendering surface via patchright (patched Playwright)."""

from mangagate.browser._renderer import BrowserRenderer

__all__ = ["BrowserRenderer"]
