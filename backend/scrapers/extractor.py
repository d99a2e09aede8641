"""
Image extractor - collects content image URLs from a post.

Each post page is loaded in the job's browser session. With JavaScript
running, images are read from the live DOM (natural sizes, currentSrc);
in JS-disabled mode, or when the DOM yields nothing, the static HTML
strategies in utils.extractors are used instead. Multi-page posts are
followed through their numbered page links.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from .base import CancellationToken, EventType, SiteAdapter, is_cancelled
from .config import EXCLUDE_PATTERNS
from .utils.extractors import extract_images_from_html, find_post_pages
from .utils.normalizers import normalize_image_url

logger = logging.getLogger(__name__)

POST_NAV_TIMEOUT = 20.0
FALLBACK_NAV_TIMEOUT = 15.0
DOM_EXTRACT_TIMEOUT = 10.0
BODY_CACHE_BUDGET = 10.0

# Settle time after DOMContentLoaded
JS_SETTLE_DELAY = 1.5
NO_JS_SETTLE_DELAY = 0.8

EXTRACT_IMAGES_SCRIPT = """
    ([exPatterns, minWidth, minHeight, contentSels, excludeSels]) => {
        const origin = location.origin;
        const resolve = (u) => {
            if (!u) return '';
            if (u.startsWith('http')) return u;
            try { return new URL(u, origin).href; } catch (e) { return ''; }
        };
        const isExcluded = (el) => excludeSels.some(sel => el.closest(sel));
        const isNoise = (u) => {
            const lower = u.toLowerCase();
            return exPatterns.some(p => lower.includes(p)) || /-\\d+x\\d+\\.\\w+$/.test(u);
        };

        const extractFrom = (root) => {
            const images = new Set();
            root.querySelectorAll('img').forEach(img => {
                if (isExcluded(img)) return;
                const lazySrc = resolve(img.dataset.lazySrc || img.dataset.src || img.dataset.original || '');
                const src = lazySrc || img.currentSrc || img.src || '';
                if (!src || !src.startsWith('http') || isNoise(src)) return;
                const isLazy = !!lazySrc || img.loading === 'lazy' || img.classList.contains('lazyload');
                const w = img.naturalWidth || img.width || 0;
                const h = img.naturalHeight || img.height || 0;
                if (isLazy || w >= minWidth || h >= minHeight) images.add(src);
            });
            root.querySelectorAll('img[srcset]').forEach(img => {
                if (isExcluded(img)) return;
                (img.getAttribute('srcset') || '').split(',')
                    .map(s => s.trim().split(/\\s+/)[0]).filter(Boolean)
                    .forEach(s => {
                        const r = resolve(s);
                        if (r && !isNoise(r)) images.add(r);
                    });
            });
            root.querySelectorAll('a[href]').forEach(a => {
                if (isExcluded(a)) return;
                const href = a.href;
                if (!href || !href.startsWith('http')) return;
                if (/\\.(jpg|jpeg|png|webp|gif|bmp)(![a-z]+)?(\\?|$)/i.test(href) && !isNoise(href)) {
                    images.add(href);
                }
            });
            return images;
        };

        const contentImages = new Set();
        for (const sel of contentSels) {
            const el = document.querySelector(sel);
            if (el) extractFrom(el).forEach(i => contentImages.add(i));
        }
        if (contentImages.size >= 5) return [...contentImages];
        return [...extractFrom(document)];
    }
"""


class ImageExtractor:
    """
    Per-post image URL discovery.

    Usage:
        extractor = ImageExtractor(session, adapter, min_width=400, min_height=400)
        urls = await extractor.get_post_images(post.url)
    """

    def __init__(
        self,
        session,
        adapter: SiteAdapter,
        min_width: int = 400,
        min_height: int = 400,
        page_timeout: float = 60.0,
        token: Optional[CancellationToken] = None,
    ):
        self.session = session
        self.adapter = adapter
        self.min_width = min_width
        self.min_height = min_height
        self.page_timeout = page_timeout
        self.token = token

    def _html_images(self, html: str) -> List[str]:
        return extract_images_from_html(
            html,
            self.adapter.content_selectors,
            self.adapter.exclude_selectors,
            self.min_width,
            self.min_height,
        )

    async def get_post_images(self, post_url: str) -> List[str]:
        """
        Collect image URLs from a post and its numbered sub-pages.

        A page that exceeds the per-page timeout is skipped, not retried;
        images found on earlier pages are kept.

        Returns:
            Normalized image URLs in discovery order
        """
        images: List[str] = []
        pages_to_visit = [post_url]
        visited = set()

        while pages_to_visit:
            current_url = pages_to_visit.pop(0)
            if current_url in visited or is_cancelled(self.token):
                break
            visited.add(current_url)

            page_images: List[str] = []
            html = ''
            try:
                page_images, html = await asyncio.wait_for(
                    self._extract_page(current_url), timeout=self.page_timeout
                )
            except asyncio.TimeoutError:
                self.session.emit(EventType.STATUS,
                                  message=f"Page timed out, skipping: {current_url.rstrip('/').split('/')[-1]}")
                await self._reset_page()
                continue
            except Exception as e:
                logger.debug(f"Extraction failed for {current_url}: {e}")
                page_images, html = await self._static_fallback(current_url)

            page_images = [normalize_image_url(u) for u in page_images]
            for url in page_images:
                if url not in images:
                    images.append(url)

            if page_images:
                await self.session.cache_captured_bodies(page_images, budget=BODY_CACHE_BUDGET)

            # Sub-pages are only discovered from the post's first page
            if len(visited) == 1:
                if not html:
                    html = await self.session.content()
                for page_url in find_post_pages(html, post_url):
                    if page_url not in visited:
                        pages_to_visit.append(page_url)

        return images

    async def _extract_page(self, url: str) -> Tuple[List[str], str]:
        session = self.session
        await session.set_javascript_enabled(not session.js_disabled)
        await session.goto(url, timeout=POST_NAV_TIMEOUT)
        await asyncio.sleep(NO_JS_SETTLE_DELAY if session.js_disabled else JS_SETTLE_DELAY)

        nav_url = url
        if session.is_challenge_page(await session.title()):
            session.emit(EventType.CF, message="Challenge on post page, retrying...")
            if not await session.wait_for_challenge():
                mirror = await session.try_mirrors(url)
                if mirror:
                    nav_url = mirror

        if session.js_disabled:
            html = await session.content()
            return self._html_images(html), html

        if session.landed_on_blank() or session.is_challenge_page(await session.title()):
            await session.switch_to_js_disabled()
            await session.goto(nav_url, timeout=POST_NAV_TIMEOUT)
            await asyncio.sleep(NO_JS_SETTLE_DELAY)
            html = await session.content()
            return self._html_images(html), html

        await session.scroll_page(steps=30)
        await asyncio.sleep(1)
        await session.wait_for_network_idle(timeout=5.0)

        images = await self.extract_images_from_dom()
        html = ''
        if not images:
            html = await session.content()
            images = self._html_images(html)
        return images, html

    async def extract_images_from_dom(self) -> List[str]:
        """Run the in-page extraction script, capped at DOM_EXTRACT_TIMEOUT."""
        args = [
            EXCLUDE_PATTERNS,
            self.min_width,
            self.min_height,
            self.adapter.content_selectors,
            self.adapter.exclude_selectors,
        ]
        try:
            result = await asyncio.wait_for(
                self.session.evaluate(EXTRACT_IMAGES_SCRIPT, args), timeout=DOM_EXTRACT_TIMEOUT
            )
        except Exception as e:
            logger.debug(f"DOM image extraction failed: {e}")
            return []
        return list(result or [])

    async def _static_fallback(self, url: str) -> Tuple[List[str], str]:
        """Reload the page without JavaScript and parse its HTML."""
        try:
            await self.session.set_javascript_enabled(False)
            await self.session.goto(url, timeout=FALLBACK_NAV_TIMEOUT)
            html = await self.session.content()
        except Exception as e:
            logger.debug(f"Static fallback failed for {url}: {e}")
            return [], ''
        return self._html_images(html), html

    async def _reset_page(self):
        try:
            await self.session.goto('about:blank', timeout=5.0)
        except Exception:
            pass
