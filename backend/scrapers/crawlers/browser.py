"""
Browser session for sites with anti-bot protection.

Uses Playwright Chromium with stealth launch options and a CDP session to:
- Wait out anti-bot challenge pages (and reroute through mirror domains)
- Fall back to a JavaScript-disabled mode when scripts break navigation
- Capture image responses at the protocol level so their bodies can be
  read back without a second, hotlink-checked request
"""

import asyncio
import base64
import logging
import time
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from playwright.async_api import async_playwright, Browser, BrowserContext, CDPSession, Page

from ..base import CancellationToken, EventType, is_cancelled
from ..config import BLOCKED_SCRIPTS, CHALLENGE_TITLES, IMAGE_EXTENSIONS

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

STEALTH_INIT_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    });
    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en']
    });
"""

MIRROR_DISCOVERY_SCRIPT = """
    ([baseName, currentHost]) => {
        const found = new Set();
        document.querySelectorAll('a[href]').forEach(a => {
            try {
                const h = new URL(a.href).hostname;
                if (h !== currentHost && h.startsWith(baseName + '.')) found.add(h);
            } catch (e) {}
        });
        return [...found];
    }
"""

SCROLL_SCRIPT = """
    async (steps) => {
        for (let i = 0; i < steps; i++) {
            window.scrollBy(0, window.innerHeight);
            await new Promise(r => setTimeout(r, 150));
        }
        window.scrollTo(0, 0);
    }
"""

PRELOAD_SCRIPT = """
    async (urls) => {
        await Promise.all(urls.map(url => new Promise(resolve => {
            const img = new Image();
            img.onload = () => resolve();
            img.onerror = () => resolve();
            setTimeout(resolve, 8000);
            img.src = url;
        })));
    }
"""


class BrowserSession:
    """
    One browser, page and CDP session owned by a single job.

    Usage:
        async with BrowserSession(emit=emit, token=token) as session:
            await session.goto(url)
            passed = await session.wait_for_challenge()
    """

    def __init__(
        self,
        emit: Optional[Callable[[EventType, dict], None]] = None,
        token: Optional[CancellationToken] = None,
        headless: bool = True,
        executable_path: Optional[str] = None,
        nav_timeout: float = 25.0,
        challenge_timeout: int = 30,
        mirror_challenge_timeout: int = 10,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        """
        Initialize the browser session.

        Args:
            emit: Callback receiving (event_type, payload) progress updates
            token: Cancellation token of the owning job
            headless: Run browser in headless mode
            executable_path: Optional Chromium/Chrome binary to launch
            nav_timeout: Navigation timeout in seconds
            challenge_timeout: Seconds to wait for a challenge page to clear
            mirror_challenge_timeout: Shorter wait used once mirrors are known
            user_agent: User agent of the browser context
        """
        self.headless = headless
        self.executable_path = executable_path
        self.nav_timeout = nav_timeout
        self.challenge_timeout = challenge_timeout
        self.mirror_challenge_timeout = mirror_challenge_timeout
        self.user_agent = user_agent
        self.token = token
        self._emit = emit or (lambda event_type, data: None)

        self.js_disabled = False
        # url -> {'request_id': str, 'status': int}
        self.captured_images: Dict[str, dict] = {}
        # url -> raw bytes fetched from the browser ahead of download
        self.image_cache: Dict[str, bytes] = {}

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.cdp: Optional[CDPSession] = None
        self._mirror_domains: Dict[str, List[str]] = {}
        self._closed = False

    @property
    def aborted(self) -> bool:
        return is_cancelled(self.token)

    def emit(self, event_type: EventType, **data):
        self._emit(event_type, data)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def launch(self):
        """Start Chromium, open the working page and attach the CDP session."""
        self.emit(EventType.STATUS, message="Starting browser...")
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            executable_path=self.executable_path or None,
            args=[
                '--no-sandbox',
                '--disable-setuid-sandbox',
                '--disable-blink-features=AutomationControlled',
                '--disable-popup-blocking',
                '--disable-notifications',
                '--disable-dev-shm-usage',
            ],
            handle_sigint=False,
            handle_sigterm=False,
            handle_sighup=False,
        )
        self._context = await self._browser.new_context(
            viewport={'width': 1920, 'height': 1080},
            user_agent=self.user_agent,
            locale='en-US',
            ignore_https_errors=True,
        )
        await self._context.add_init_script(STEALTH_INIT_SCRIPT)
        self.page = await self._context.new_page()
        # Sites love opening ad tabs; only the working page may live
        self._context.on('page', self._on_new_page)

        self.cdp = await self._context.new_cdp_session(self.page)
        await self.cdp.send('Network.enable')
        self.cdp.on('Network.responseReceived', self._on_response)

        await self.page.route('**/*', self._route_request)
        logger.debug("Browser session launched")

    def _on_new_page(self, page: Page):
        if page is not self.page:
            asyncio.ensure_future(self._close_quietly(page))

    async def _close_quietly(self, page: Page):
        try:
            await page.close()
        except Exception as e:
            logger.debug(f"Error closing extra tab: {e}")

    def _on_response(self, params: dict):
        response = params.get('response', {})
        url = response.get('url', '')
        if IMAGE_EXTENSIONS.search(url):
            self.captured_images[url] = {
                'request_id': params.get('requestId'),
                'status': response.get('status'),
            }

    async def _route_request(self, route):
        url = route.request.url.lower()
        if any(s in url for s in BLOCKED_SCRIPTS):
            await route.abort()
        else:
            await route.continue_()

    async def close(self):
        """Detach CDP, clear captures and close the browser. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        cleanup_timeout = 5.0

        if self.cdp:
            try:
                await asyncio.wait_for(self.cdp.detach(), timeout=cleanup_timeout)
            except Exception as e:
                logger.debug(f"Error detaching CDP session: {e}")
            self.cdp = None

        self.captured_images.clear()
        self.image_cache.clear()

        if self._context:
            try:
                await asyncio.wait_for(self._context.close(), timeout=cleanup_timeout)
            except Exception as e:
                logger.debug(f"Error closing context: {e}")
            self._context = None
            self.page = None

        if self._browser:
            try:
                await asyncio.wait_for(self._browser.close(), timeout=cleanup_timeout)
            except asyncio.TimeoutError:
                logger.warning("Browser close timed out, forcing cleanup")
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
            self._browser = None

        if self._playwright:
            try:
                await asyncio.wait_for(self._playwright.stop(), timeout=cleanup_timeout)
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None

    async def __aenter__(self):
        await self.launch()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Challenge handling
    # ------------------------------------------------------------------

    @staticmethod
    def is_challenge_page(title: str) -> bool:
        """True if the page title is a known anti-bot interstitial."""
        return any(phrase in (title or '') for phrase in CHALLENGE_TITLES)

    async def title(self) -> str:
        try:
            return await self.page.title()
        except Exception:
            return ''

    async def wait_for_challenge(self) -> bool:
        """
        Poll the page title once per second until the challenge clears.

        Returns:
            True if the page is (or became) a normal page within the timeout
        """
        max_wait = self.mirror_challenge_timeout if self._mirror_domains else self.challenge_timeout
        for i in range(max_wait):
            if not self.is_challenge_page(await self.title()):
                if i > 0:
                    self.emit(EventType.CF, message=f"Challenge passed ({i}s)")
                return True
            self.emit(EventType.CF, message=f"Waiting for challenge... ({i + 1}s)")
            await asyncio.sleep(1)
        return False

    async def discover_mirror_domains(self, url: str):
        """Remember same-name hosts on other TLDs/subdomains linked from the current page."""
        current_host = urlparse(url).hostname or ''
        if not current_host or current_host in self._mirror_domains:
            return
        base_name = current_host.rsplit('.', 1)[0]
        try:
            mirrors = await self.page.evaluate(MIRROR_DISCOVERY_SCRIPT, [base_name, current_host])
        except Exception as e:
            logger.debug(f"Mirror discovery failed: {e}")
            mirrors = []
        if mirrors:
            self._mirror_domains[current_host] = mirrors
            self.emit(EventType.STATUS, message=f"Mirror domains found: {', '.join(mirrors)}")

    def mirror_urls(self, url: str) -> List[str]:
        """The same URL on every known mirror host of its hostname."""
        parsed = urlparse(url)
        mirrors = self._mirror_domains.get(parsed.hostname or '', [])
        urls = []
        for host in mirrors:
            netloc = host if parsed.port is None else f"{host}:{parsed.port}"
            urls.append(urlunparse(parsed._replace(netloc=netloc)))
        return urls

    async def try_mirrors(self, url: str) -> Optional[str]:
        """
        Retry a challenged URL on each mirror host.

        Returns:
            The mirror URL that loaded without a challenge, or None
        """
        for mirror_url in self.mirror_urls(url):
            self.emit(EventType.CF, message=f"Trying mirror {urlparse(mirror_url).hostname}...")
            try:
                await self.page.goto(mirror_url, wait_until='domcontentloaded',
                                     timeout=int(self.nav_timeout * 1000))
                await asyncio.sleep(1)
                if not self.is_challenge_page(await self.title()):
                    self.emit(EventType.CF, message="Mirror domain loaded")
                    return mirror_url
            except Exception as e:
                logger.debug(f"Mirror {mirror_url} failed: {e}")
        return None

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def set_javascript_enabled(self, enabled: bool):
        if self.cdp:
            await self.cdp.send('Emulation.setScriptExecutionDisabled', {'value': not enabled})

    async def switch_to_js_disabled(self):
        """Permanently disable JavaScript for the rest of this session."""
        if self.js_disabled:
            return
        self.js_disabled = True
        self.emit(EventType.STATUS, message="Switching to JS-free mode")
        await self.set_javascript_enabled(False)

    @property
    def current_url(self) -> str:
        return self.page.url if self.page else ''

    def landed_on_blank(self) -> bool:
        current = self.current_url
        return current == 'about:blank' or not current.startswith('http')

    async def goto(self, url: str, timeout: Optional[float] = None):
        """Plain navigation waiting for DOMContentLoaded."""
        await self.page.goto(url, wait_until='domcontentloaded',
                             timeout=int((timeout or self.nav_timeout) * 1000))

    async def safe_goto(self, url: str) -> str:
        """
        Navigate with JS-disabled fallback and challenge/mirror handling.

        Returns:
            The URL that was finally loaded (a mirror URL after rerouting)
        """
        if self.js_disabled:
            await self.set_javascript_enabled(False)
        await self.goto(url)
        await asyncio.sleep(1)

        if not self.js_disabled and self.landed_on_blank():
            await self.switch_to_js_disabled()
            await self.goto(url)
            await asyncio.sleep(1)

        if self.is_challenge_page(await self.title()):
            if not await self.wait_for_challenge():
                mirror = await self.try_mirrors(url)
                if mirror:
                    return mirror
        return url

    async def wait_for_network_idle(self, timeout: float = 8.0):
        if self.js_disabled:
            return
        try:
            await self.page.wait_for_load_state('networkidle', timeout=int(timeout * 1000))
        except Exception:
            pass  # Busy pages never go idle; content is usually there anyway

    async def scroll_page(self, steps: int = 40, timeout: float = 8.0):
        """Scroll down the page to trigger lazy loading."""
        try:
            await asyncio.wait_for(self.page.evaluate(SCROLL_SCRIPT, steps), timeout=timeout)
        except Exception as e:
            logger.debug(f"Scroll failed: {e}")

    async def get_page_html(self) -> str:
        """Current page HTML, after a lazy-load scroll when scripts run."""
        if not self.js_disabled:
            await self.scroll_page()
            await asyncio.sleep(1)
        try:
            return await self.page.content()
        except Exception:
            return ''

    async def content(self) -> str:
        try:
            return await self.page.content()
        except Exception:
            return ''

    async def evaluate(self, script: str, arg=None):
        return await self.page.evaluate(script, arg)

    # ------------------------------------------------------------------
    # Protocol-level capture
    # ------------------------------------------------------------------

    async def get_response_body(self, url: str) -> Optional[bytes]:
        """
        Body of a captured image response, read through CDP.

        Returns:
            The bytes of a previously captured 200 response, or None
        """
        info = self.captured_images.get(url)
        if not info or info.get('status') != 200 or not self.cdp:
            return None
        try:
            result = await self.cdp.send('Network.getResponseBody', {'requestId': info['request_id']})
        except Exception as e:
            logger.debug(f"getResponseBody failed for {url}: {e}")
            return None
        body = result.get('body', '')
        data = base64.b64decode(body) if result.get('base64Encoded') else body.encode('utf-8')
        return data or None

    async def cache_captured_bodies(self, urls: List[str], budget: float = 10.0):
        """Copy captured response bodies into the image cache within a time budget."""
        if not self.cdp:
            return
        started = time.monotonic()
        for url in urls:
            if time.monotonic() - started > budget:
                break
            if url in self.image_cache:
                continue
            body = await self.get_response_body(url)
            if body:
                self.image_cache[url] = body

    async def preload_images(self, urls: List[str], batch_size: int = 10, timeout: float = 10.0):
        """
        Load uncaptured images through the page itself.

        The browser then issues the requests with its own cookies and referrer,
        and the responses land in captured_images.
        """
        if not self.cdp or self.js_disabled:
            return
        uncaptured = [u for u in urls if u not in self.captured_images]
        for start in range(0, len(uncaptured), batch_size):
            if self.aborted:
                break
            batch = uncaptured[start:start + batch_size]
            try:
                await asyncio.wait_for(self.page.evaluate(PRELOAD_SCRIPT, batch), timeout=timeout)
            except Exception as e:
                logger.debug(f"Preload batch failed: {e}")
        if uncaptured:
            await asyncio.sleep(0.5)
