"""
Base types for the image scraper system.

This module defines the data structures shared by the browser session,
search engine, image extractor, downloader, scraper engine and job manager.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum
import logging

logger = logging.getLogger(__name__)

# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for colorized logging."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    # Colors
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @staticmethod
    def green(text):
        return f"{Colors.GREEN}{text}{Colors.RESET}"

    @staticmethod
    def yellow(text):
        return f"{Colors.YELLOW}{text}{Colors.RESET}"

    @staticmethod
    def red(text):
        return f"{Colors.RED}{text}{Colors.RESET}"

    @staticmethod
    def cyan(text):
        return f"{Colors.CYAN}{text}{Colors.RESET}"

    @staticmethod
    def gray(text):
        return f"{Colors.GRAY}{text}{Colors.RESET}"

    @staticmethod
    def bold(text):
        return f"{Colors.BOLD}{text}{Colors.RESET}"


class JobStatus(str, Enum):
    """Lifecycle states of a job. Transitions only move forward."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED)


class EventType(str, Enum):
    """Progress event kinds emitted by the scraper engine."""
    STATUS = "status"
    CF = "cf"
    SEARCH = "search"
    POST = "post"
    FOUND = "found"
    DOWNLOAD = "download"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = (EventType.COMPLETE, EventType.ERROR)

# Synthetic event delivered to subscribers when a job stream ends
CLOSE_EVENT = {'type': 'close'}


class SearchStrategy(str, Enum):
    """Which search cascade a site adapter allows."""
    AUTO = "auto"             # custom -> CMS query -> search form -> category browse
    WORDPRESS = "wordpress"   # custom -> CMS query -> category browse


@dataclass
class ProgressEvent:
    """
    One progress event.

    The payload fields depend on the type:
        status{message}, cf{message}, search{pages, posts},
        post{current, total, title}, found{count, message},
        download{current, total, filename}, complete{total, folder, duration},
        error{message}
    """
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, **self.data}


EventCallback = Callable[[ProgressEvent], None]


@dataclass
class Post:
    """A content page believed to contain matching images."""
    url: str
    title: str


@dataclass
class SearchResult:
    """Posts discovered by the search engine and the number of pages walked."""
    posts: List[Post] = field(default_factory=list)
    pages: int = 1


@dataclass
class SiteAdapter:
    """
    Per-site strategy record.

    Adapters never subclass anything; a site's behaviour is fully described
    by its search strategy, selector lists and optional search URL builder.
    """
    key: str
    name: str
    pattern: Optional[str] = None       # hostname regex; None = never auto-selected
    search_strategy: SearchStrategy = SearchStrategy.AUTO
    content_selectors: List[str] = field(default_factory=list)
    exclude_selectors: List[str] = field(default_factory=list)
    search_url_builder: Optional[Callable[[str, str], str]] = None

    def custom_search_url(self, origin: str, keyword: str) -> Optional[str]:
        """Return the site-specific search URL, or None to use the generic cascade."""
        if self.search_url_builder is None:
            return None
        return self.search_url_builder(origin, keyword)


@dataclass
class ScrapeResult:
    """Outcome of one engine run."""
    success: bool
    total: int = 0
    folder: str = ''
    duration: str = ''
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'total': self.total,
            'folder': self.folder,
            'duration': self.duration,
            'error': self.error,
        }


class ScrapeCancelledException(Exception):
    """Raised when a cancelled job reaches a cancellation check."""


class ChallengeTimeoutError(Exception):
    """Raised when an anti-bot challenge page never clears."""


class CancellationToken:
    """
    Cooperative cancellation flag shared by every component of one job.

    Nothing is interrupted when cancel() is called; loops check the token at
    their boundaries and stop there.
    """

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self):
        if self._cancelled:
            raise ScrapeCancelledException("Job was cancelled")


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    """True if the token exists and has been cancelled."""
    return token is not None and token.cancelled
