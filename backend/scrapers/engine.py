"""
Scraper engine - runs one job end to end.

Launches a browser session, clears the seed page's challenge, finds posts,
extracts and downloads their images, and reports everything as an ordered
stream of ProgressEvents that always ends in exactly one terminal event.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .base import (
    CancellationToken,
    ChallengeTimeoutError,
    Colors,
    EventCallback,
    EventType,
    Post,
    ProgressEvent,
    ScrapeCancelledException,
    ScrapeResult,
    TERMINAL_EVENTS,
)
from .config import resolve_adapter
from .crawlers.browser import BrowserSession, DEFAULT_USER_AGENT
from .downloader import ImageDownloader
from .extractor import ImageExtractor
from .search import SearchEngine
from .utils.normalizers import (
    build_filename,
    extract_album_name,
    format_duration,
    get_extension,
    next_sequence_start,
    slugify_keyword,
)

logger = logging.getLogger(__name__)

SEED_NAV_TIMEOUT = 30.0
DIRECT_URL_TITLE = 'Direct URL'


@dataclass
class ScrapeOptions:
    """Tunable knobs of a scrape run."""
    downloads_dir: Path = Path('downloads')
    min_width: int = 400
    min_height: int = 400
    min_file_size: int = 5000
    concurrency: int = 3
    max_pages: int = 50
    nav_timeout: float = 25.0
    challenge_timeout: int = 30
    mirror_challenge_timeout: int = 10
    page_timeout: float = 60.0
    download_timeout: float = 15.0
    headless: bool = True
    chrome_path: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_settings(cls, settings) -> 'ScrapeOptions':
        """Build options from the application settings object."""
        return cls(
            downloads_dir=Path(settings.downloads_dir),
            min_width=settings.scraper_min_width,
            min_height=settings.scraper_min_height,
            min_file_size=settings.scraper_min_file_size,
            concurrency=settings.scraper_concurrency,
            max_pages=settings.scraper_max_pages,
            nav_timeout=settings.scraper_nav_timeout,
            challenge_timeout=settings.scraper_challenge_timeout,
            mirror_challenge_timeout=settings.scraper_mirror_challenge_timeout,
            page_timeout=settings.scraper_page_timeout,
            download_timeout=settings.scraper_download_timeout,
            headless=settings.scraper_headless,
            chrome_path=settings.chrome_path,
            user_agent=settings.scraper_user_agent,
        )


class ScraperEngine:
    """
    Drives one scrape.

    Usage:
        engine = ScraperEngine(ScrapeOptions(downloads_dir=Path('downloads')))
        result = await engine.scrape(url, 'sunset', emit=print, token=token)

    Args:
        options: Scrape options
        session_factory: Callable (emit, token) -> browser session; defaults
            to a Playwright BrowserSession configured from options
        downloader_factory: Callable (session, referer) -> downloader
        job_id: Used to name the per-job logger
    """

    def __init__(
        self,
        options: Optional[ScrapeOptions] = None,
        session_factory: Optional[Callable] = None,
        downloader_factory: Optional[Callable] = None,
        job_id: Optional[str] = None,
    ):
        self.options = options or ScrapeOptions()
        self.session_factory = session_factory or self._browser_session
        self.downloader_factory = downloader_factory or self._image_downloader
        self.logger = logging.getLogger(f"scraper.job.{job_id}") if job_id else logger
        self._emit_callback: Optional[EventCallback] = None
        self._terminal_sent = False

    def _browser_session(self, emit, token) -> BrowserSession:
        opts = self.options
        return BrowserSession(
            emit=emit,
            token=token,
            headless=opts.headless,
            executable_path=opts.chrome_path,
            nav_timeout=opts.nav_timeout,
            challenge_timeout=opts.challenge_timeout,
            mirror_challenge_timeout=opts.mirror_challenge_timeout,
            user_agent=opts.user_agent,
        )

    def _image_downloader(self, session, referer: str) -> ImageDownloader:
        return ImageDownloader(
            session,
            referer=referer,
            user_agent=self.options.user_agent,
            timeout=self.options.download_timeout,
        )

    def emit(self, event_type: EventType, **data):
        """Forward an event; nothing gets through after the terminal one."""
        if self._terminal_sent:
            self.logger.debug(f"Dropping {event_type.value} event after terminal event")
            return
        if event_type in TERMINAL_EVENTS:
            self._terminal_sent = True
        if self._emit_callback is not None:
            self._emit_callback(ProgressEvent(type=event_type, data=data))

    async def scrape(
        self,
        url: str,
        keyword: str = '',
        emit: Optional[EventCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> ScrapeResult:
        """
        Run the whole job.

        Never raises for job-level failures: they become the single `error`
        event and an unsuccessful ScrapeResult. Files downloaded before a
        failure stay on disk and are counted.
        """
        self._emit_callback = emit
        self._terminal_sent = False
        token = token or CancellationToken()
        opts = self.options
        started = time.monotonic()

        adapter = resolve_adapter(url)
        folder_slug = slugify_keyword(keyword)
        save_dir = Path(opts.downloads_dir) / folder_slug
        save_dir.mkdir(parents=True, exist_ok=True)

        total = 0
        session = self.session_factory(lambda t, d: self.emit(t, **d), token)
        downloader = None
        self.logger.info(f"Scraping {url} (keyword={keyword!r}, adapter={adapter.key})")

        try:
            await session.launch()
            self.emit(EventType.STATUS, message=f"Connecting to {url}...")
            await session.goto(url, timeout=SEED_NAV_TIMEOUT)

            if not await session.wait_for_challenge():
                raise ChallengeTimeoutError(
                    f"Anti-bot challenge not cleared ({opts.challenge_timeout}s timeout)"
                )
            await session.discover_mirror_domains(url)

            if keyword:
                self.emit(EventType.STATUS, message=f'Searching for "{keyword}"...')
                search = SearchEngine(session, adapter, max_pages=opts.max_pages, token=token)
                result = await search.search(url, keyword)
                posts = result.posts
                self.emit(EventType.SEARCH, pages=result.pages, posts=len(posts))
            else:
                posts = [Post(url=url, title=DIRECT_URL_TITLE)]

            if not posts:
                self.emit(EventType.STATUS, message="No results found.")
                duration = format_duration(time.monotonic() - started)
                self.emit(EventType.COMPLETE, total=0, folder=folder_slug, duration=duration)
                return ScrapeResult(success=True, total=0, folder=str(save_dir), duration=duration)

            extractor = ImageExtractor(
                session, adapter,
                min_width=opts.min_width,
                min_height=opts.min_height,
                page_timeout=opts.page_timeout,
                token=token,
            )
            downloader = self.downloader_factory(session, url)
            seen_urls = set()
            sequence = next_sequence_start(save_dir)
            filename = ''

            for index, post in enumerate(posts, 1):
                token.raise_if_cancelled()
                self.emit(EventType.POST, current=index, total=len(posts), title=post.title)

                album = extract_album_name(post.title, keyword)
                images = await extractor.get_post_images(post.url)
                new_images = [u for u in images if u not in seen_urls]
                seen_urls.update(new_images)
                if not new_images:
                    continue
                self.emit(EventType.FOUND, count=len(new_images),
                          message=f"Found {len(new_images)} images")

                # Let the browser request images itself so their bodies get captured
                await session.preload_images(new_images)

                for batch in _batches(new_images, opts.concurrency):
                    token.raise_if_cancelled()
                    temp_files = await asyncio.gather(
                        *[self._download_one(downloader, u, save_dir) for u in batch]
                    )
                    for temp in temp_files:
                        if temp is None:
                            continue
                        # Another job may share the folder; skip names it already took
                        sequence += 1
                        filename = build_filename(folder_slug, album, sequence, temp.suffix)
                        while (save_dir / filename).exists():
                            sequence += 1
                            filename = build_filename(folder_slug, album, sequence, temp.suffix)
                        temp.rename(save_dir / filename)
                        total += 1
                    self.emit(EventType.DOWNLOAD, current=total, total=len(seen_urls), filename=filename)

            duration = format_duration(time.monotonic() - started)
            self.emit(EventType.COMPLETE, total=total, folder=folder_slug, duration=duration)
            self.logger.info(Colors.green(f"Done: {total} images in {duration} -> {save_dir}"))
            return ScrapeResult(success=True, total=total, folder=str(save_dir), duration=duration)

        except ScrapeCancelledException:
            self.logger.info(Colors.yellow(f"Job cancelled after {total} images"))
            self.emit(EventType.STATUS, message="Aborted by user")
            duration = format_duration(time.monotonic() - started)
            self.emit(EventType.COMPLETE, total=total, folder=folder_slug, duration=duration)
            return ScrapeResult(success=True, total=total, folder=str(save_dir), duration=duration)

        except Exception as e:
            self.logger.error(Colors.red(f"Scrape failed: {e}"))
            self.emit(EventType.ERROR, message=str(e))
            return ScrapeResult(
                success=False,
                total=total,
                folder=str(save_dir),
                duration=format_duration(time.monotonic() - started),
                error=str(e),
            )

        finally:
            if downloader is not None:
                await downloader.close()
            await session.close()

    async def _download_one(self, downloader, url: str, save_dir: Path) -> Optional[Path]:
        """
        Download to a temporary name; the caller assigns the final name.

        Returns:
            The temp file path, or None if the image failed or was too small
        """
        temp = save_dir / f".tmp_{uuid.uuid4().hex}{get_extension(url)}"
        try:
            if not await downloader.download(url, temp):
                return None
            if temp.stat().st_size < self.options.min_file_size:
                temp.unlink()
                return None
            return temp
        except Exception as e:
            self.logger.debug(f"Download failed for {url}: {e}")
            if temp.exists():
                temp.unlink()
            return None


def _batches(items: List[str], size: int):
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]
