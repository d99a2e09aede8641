"""
Pytest configuration and fixtures for PicHarvest tests.

No test starts a real browser: the scheduler is driven by controllable
engine stand-ins and the engine by an in-memory browser session.
"""

import asyncio
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from api.main import app
from scrapers.base import EventType, ProgressEvent, ScrapeResult
from scrapers.engine import ScrapeOptions
from scrapers.history import HistoryStore
from scrapers.manager import JobManager
from scrapers.utils.normalizers import slugify_keyword


# ============================================================
# ENGINE STAND-INS
# ============================================================

class ControlledEngines:
    """
    Engine factory whose engines block until released (or cancelled).

    Usage:
        engines = ControlledEngines()
        manager = JobManager(store, engine_factory=engines)
        ...
        engines.release(job_id)
    """

    def __init__(self, total: int = 3):
        self.total = total
        self.totals = {}
        self.failures = {}
        self.crashes = set()
        self.released = set()
        self.started = []
        self.running = 0
        self.max_running = 0

    def __call__(self, options=None, job_id=None):
        return _ControlledEngine(self, job_id)

    def release(self, job_id: str, total: int = None, error: str = None):
        if total is not None:
            self.totals[job_id] = total
        if error is not None:
            self.failures[job_id] = error
        self.released.add(job_id)

    def release_all(self):
        self.released.update(self.started)


class _ControlledEngine:
    def __init__(self, controller: ControlledEngines, job_id: str):
        self.controller = controller
        self.job_id = job_id

    async def scrape(self, url, keyword='', emit=None, token=None):
        ctl = self.controller
        ctl.started.append(self.job_id)
        ctl.running += 1
        ctl.max_running = max(ctl.max_running, ctl.running)
        try:
            emit(ProgressEvent(EventType.STATUS, {'message': f"Connecting to {url}..."}))
            while self.job_id not in ctl.released and not token.cancelled:
                await asyncio.sleep(0.005)
        finally:
            ctl.running -= 1

        if self.job_id in ctl.crashes:
            raise RuntimeError("engine blew up")
        if self.job_id in ctl.failures:
            message = ctl.failures[self.job_id]
            emit(ProgressEvent(EventType.ERROR, {'message': message}))
            partial = ctl.totals.get(self.job_id, 0)
            return ScrapeResult(
                success=False, total=partial, folder=slugify_keyword(keyword), duration='1s', error=message,
            )

        total = ctl.totals.get(self.job_id, ctl.total)
        emit(ProgressEvent(EventType.DOWNLOAD, {'current': total, 'total': total, 'filename': 'x_0001.jpg'}))
        emit(ProgressEvent(EventType.COMPLETE, {
            'total': total, 'folder': slugify_keyword(keyword), 'duration': '1s',
        }))
        return ScrapeResult(success=True, total=total, folder=slugify_keyword(keyword), duration='1s')


async def settle(rounds: int = 20):
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0.005)


# ============================================================
# BROWSER SESSION STAND-IN
# ============================================================

class FakeSession:
    """
    In-memory browser session serving canned HTML per URL.

    Runs in JS-disabled mode so extraction goes through the HTML strategies.
    Navigating to a URL listed in slow_urls never finishes.
    """

    def __init__(self, emit=None, token=None, pages=None, challenge_cleared=True, slow_urls=()):
        self._emit = emit or (lambda event_type, data: None)
        self.token = token
        self.pages = pages or {}
        self.challenge_cleared = challenge_cleared
        self.slow_urls = set(slow_urls)
        self.js_disabled = True
        self.current_url = ''
        self.visited = []
        self.image_cache = {}
        self.launched = False
        self.close_calls = 0

    def emit(self, event_type, **data):
        self._emit(event_type, data)

    async def launch(self):
        self.launched = True

    async def close(self):
        self.close_calls += 1

    async def goto(self, url, timeout=None):
        if url in self.slow_urls:
            await asyncio.sleep(3600)
        self.current_url = url
        self.visited.append(url)

    async def safe_goto(self, url):
        await self.goto(url)
        return url

    async def wait_for_challenge(self):
        return self.challenge_cleared

    async def discover_mirror_domains(self, url):
        pass

    async def try_mirrors(self, url):
        return None

    async def title(self):
        return 'Page'

    @staticmethod
    def is_challenge_page(title):
        return False

    def landed_on_blank(self):
        return False

    async def set_javascript_enabled(self, enabled):
        pass

    async def switch_to_js_disabled(self):
        self.js_disabled = True

    async def wait_for_network_idle(self, timeout=8.0):
        pass

    async def scroll_page(self, steps=40, timeout=8.0):
        pass

    async def get_page_html(self):
        return self.pages.get(self.current_url, '')

    async def content(self):
        return self.pages.get(self.current_url, '')

    async def evaluate(self, script, arg=None):
        return []

    async def cache_captured_bodies(self, urls, budget=10.0):
        pass

    async def get_response_body(self, url):
        return None

    async def preload_images(self, urls, batch_size=10, timeout=10.0):
        pass


class FakeDownloader:
    """Serves image bytes from a dict; unknown URLs fail."""

    def __init__(self, bodies):
        self.bodies = bodies
        self.requested = []
        self.closed = False

    async def download(self, url, path):
        self.requested.append(url)
        data = self.bodies.get(url)
        if data is None:
            return False
        path.write_bytes(data)
        return True

    async def close(self):
        self.closed = True


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(autouse=True)
def no_settle_delays(monkeypatch):
    """Skip the post-navigation settle sleeps of the image extractor."""
    monkeypatch.setattr('scrapers.extractor.JS_SETTLE_DELAY', 0)
    monkeypatch.setattr('scrapers.extractor.NO_JS_SETTLE_DELAY', 0)


@pytest.fixture
def history_store(tmp_path) -> HistoryStore:
    return HistoryStore(tmp_path / "data" / "history.json")


@pytest.fixture
def engines() -> ControlledEngines:
    return ControlledEngines()


@pytest.fixture
def scrape_options(tmp_path) -> ScrapeOptions:
    return ScrapeOptions(downloads_dir=tmp_path / "downloads", min_file_size=1000)


@pytest.fixture
def manager(history_store, engines) -> JobManager:
    return JobManager(history_store, max_concurrent=2, engine_factory=engines)


@pytest.fixture
def client(manager):
    """Test client whose app uses the fixture job manager."""
    app.state.job_manager = manager
    with TestClient(app) as test_client:
        yield test_client
    del app.state.job_manager


@pytest.fixture
def downloads_dir(scrape_options) -> Path:
    return Path(scrape_options.downloads_dir)
