"""Browser session used by the scraper engine."""

from .browser import BrowserSession

__all__ = ['BrowserSession']
