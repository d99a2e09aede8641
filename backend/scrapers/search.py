"""
Search engine - finds candidate posts for a keyword on a site.

Strategies are tried in order and the first one with keyword-relevant
results wins:
1. Site adapter custom search URL
2. CMS query-string search (/?s=keyword)
3. In-page search form discovery (auto strategy only)
4. Category/listing browse with title filtering
"""

import logging
from typing import List, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

from .base import CancellationToken, EventType, Post, SearchResult, SearchStrategy, SiteAdapter, is_cancelled
from .utils.extractors import (
    build_page_url,
    dedupe_posts,
    detect_pagination_style,
    extract_posts_from_html,
    filter_posts_by_keyword,
    find_search_param,
    has_next_page,
)

logger = logging.getLogger(__name__)

# Pages shorter than this are error pages or empty shells
MIN_PAGE_LENGTH = 500

# HTML matchers below this yield trigger the DOM fallback
DOM_FALLBACK_THRESHOLD = 5
FORM_DOM_FALLBACK_THRESHOLD = 3

NOT_FOUND_MARKERS = ('Page not found', 'Nothing Found')

EXTRACT_POSTS_SCRIPT = """
    (origin) => {
        const results = [];
        const seen = new Set();
        document.querySelectorAll('a[href]').forEach(a => {
            const href = a.href;
            if (!href || !href.startsWith(origin)) return;
            if (href.includes('/page/') || href.includes('/search/') ||
                href.includes('?s=') || href.includes('?post_type=')) return;
            const parsed = new URL(href);
            const path = parsed.pathname;
            if (path === '/tag' || path.startsWith('/tag/') ||
                path.startsWith('/category/') || path.startsWith('/tags/')) return;
            if (/^\\/[a-z][a-z0-9-]*\\/?$/i.test(path) && !parsed.search) return;
            if (path === '/' || path === '') return;
            const title = (a.textContent || '').trim();
            if (title.length < 5 || /^\\d+P?$/i.test(title)) return;
            if (seen.has(href)) return;
            seen.add(href);
            results.push({url: href, title: title.substring(0, 200)});
        });
        return results;
    }
"""


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _set_query_param(url: str, name: str, value) -> str:
    parsed = urlparse(url)
    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != name]
    params.append((name, str(value)))
    return urlunparse(parsed._replace(query=urlencode(params)))


class SearchEngine:
    """
    Post discovery for one job.

    Usage:
        engine = SearchEngine(session, adapter, max_pages=50, token=token)
        result = await engine.search(url, 'sunset')
        for post in result.posts:
            ...
    """

    def __init__(
        self,
        session,
        adapter: SiteAdapter,
        max_pages: int = 50,
        token: Optional[CancellationToken] = None,
    ):
        self.session = session
        self.adapter = adapter
        self.max_pages = max_pages
        self.token = token

    @property
    def aborted(self) -> bool:
        return is_cancelled(self.token)

    def _status(self, message: str):
        self.session.emit(EventType.STATUS, message=message)

    async def search(self, url: str, keyword: str) -> SearchResult:
        """
        Run the strategy cascade.

        Args:
            url: Seed URL of the site
            keyword: Search keyword

        Returns:
            SearchResult with de-duplicated posts and pages walked
        """
        origin = _origin(url)
        strategy = self.adapter.search_strategy

        custom_url = self.adapter.custom_search_url(origin, keyword)
        if custom_url:
            self._status("Using site-specific search...")
            result = await self._run(self.custom_search(custom_url, origin, keyword), 'custom')
            if result.posts:
                return result

        if strategy in (SearchStrategy.AUTO, SearchStrategy.WORDPRESS):
            result = await self._run(self.query_search(origin, keyword), 'query')
            kw_lower = keyword.lower()
            if any(kw_lower in p.title.lower() for p in result.posts):
                return result

        if strategy == SearchStrategy.AUTO:
            self._status("Switching to the site's search form...")
            result = await self._run(self.form_search(url, keyword), 'form')
            if result.posts:
                return result

        self._status("Switching to category browsing...")
        return await self._run(self.browse_category(url, keyword), 'category')

    async def _run(self, coro, name: str) -> SearchResult:
        try:
            return await coro
        except Exception as e:
            logger.warning(f"Search strategy '{name}' failed: {e}")
            return SearchResult(posts=[], pages=1)

    # ------------------------------------------------------------------
    # Page helpers
    # ------------------------------------------------------------------

    async def _load(self, url: str) -> Optional[str]:
        """Navigate and return the page HTML, or None if navigation failed."""
        try:
            await self.session.safe_goto(url)
            await self.session.wait_for_network_idle()
        except Exception as e:
            logger.debug(f"Navigation to {url} failed: {e}")
            return None
        return await self.session.get_page_html()

    async def extract_posts_from_dom(self, origin: str) -> List[Post]:
        try:
            raw = await self.session.evaluate(EXTRACT_POSTS_SCRIPT, origin)
        except Exception as e:
            logger.debug(f"DOM post extraction failed: {e}")
            return []
        return [Post(url=item['url'], title=item['title']) for item in raw or []]

    async def _posts_from(self, html: str, origin: str, threshold: int = DOM_FALLBACK_THRESHOLD) -> List[Post]:
        posts = extract_posts_from_html(html, origin)
        if len(posts) < threshold and not self.session.js_disabled:
            dom_posts = await self.extract_posts_from_dom(origin)
            if len(dom_posts) > len(posts):
                posts = dom_posts
        return posts

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _walk_listing(self, base_url: str, origin: str, keyword: str, label: str) -> SearchResult:
        """Walk a paginated listing, keeping posts whose title contains the keyword."""
        matched_posts: List[Post] = []
        style = None
        page_num = 1

        while page_num <= self.max_pages:
            if self.aborted:
                break
            page_url = build_page_url(base_url, page_num, style)
            self._status(f"Scanning {label} page {page_num}...")

            html = await self._load(page_url)
            if html is None or len(html) < MIN_PAGE_LENGTH:
                break
            if style is None:
                style = detect_pagination_style(html)

            posts = await self._posts_from(html, origin)
            if not posts:
                break

            # Listings mix in latest posts and widgets
            matched = filter_posts_by_keyword(posts, keyword)
            if matched:
                matched_posts.extend(matched)
                self._status(f"Page {page_num}: {len(matched)} matching (of {len(posts)})")

            if not has_next_page(html, page_num + 1):
                break
            page_num += 1

        return SearchResult(posts=dedupe_posts(matched_posts), pages=page_num)

    async def custom_search(self, search_url: str, origin: str, keyword: str) -> SearchResult:
        """Adapter-supplied search endpoint."""
        return await self._walk_listing(search_url, origin, keyword, 'search')

    async def browse_category(self, url: str, keyword: str) -> SearchResult:
        """No usable search; filter listing pages by title."""
        return await self._walk_listing(url, _origin(url), keyword, 'listing')

    async def query_search(self, origin: str, keyword: str) -> SearchResult:
        """CMS-native ?s= search, following /page/N until no next page."""
        all_posts: List[Post] = []
        encoded = quote(keyword, safe='')
        search_query = None
        page_num = 1

        while page_num <= self.max_pages:
            if self.aborted:
                break
            if page_num == 1:
                page_url = f"{origin}/?s={encoded}"
            elif search_query:
                page_url = f"{origin}/page/{page_num}?{search_query}"
            else:
                page_url = f"{origin}/page/{page_num}/?s={encoded}"
            self._status(f"Scanning search page {page_num}...")

            html = await self._load(page_url)
            if html is None:
                break
            if page_num == 1:
                # Sites may rewrite the query (extra params, different encoding)
                query = urlparse(self.session.current_url).query
                if 's=' in query:
                    search_query = query

            if any(marker in html for marker in NOT_FOUND_MARKERS) or len(html) < MIN_PAGE_LENGTH:
                break

            posts = await self._posts_from(html, origin)
            if not posts:
                break
            all_posts.extend(posts)

            if f"/page/{page_num + 1}" not in html and f"page={page_num + 1}" not in html:
                break
            page_num += 1

        return SearchResult(posts=dedupe_posts(all_posts), pages=page_num)

    async def form_search(self, url: str, keyword: str) -> SearchResult:
        """Find the page's own search box and submit it as a query parameter."""
        origin = _origin(url)
        html = await self._load(url)
        if not html:
            return SearchResult(posts=[], pages=1)

        param = find_search_param(html)
        if not param:
            return SearchResult(posts=[], pages=1)
        self._status(f"Searching via form field '{param}'")

        html = await self._load(_set_query_param(url, param, keyword))
        if html is None:
            return SearchResult(posts=[], pages=1)
        searched_url = self.session.current_url

        posts = await self._posts_from(html, origin, FORM_DOM_FALLBACK_THRESHOLD)
        all_posts = list(posts)

        page_num = 2
        while posts and page_num <= self.max_pages and not self.aborted:
            if not (f"?p={page_num}" in html or f"&p={page_num}" in html
                    or f"/page/{page_num}" in html or f"page={page_num}" in html):
                break
            self._status(f"Scanning search results page {page_num}...")
            page_html = await self._load(_set_query_param(searched_url, 'p', page_num))
            if page_html is None:
                break
            page_posts = await self._posts_from(page_html, origin, FORM_DOM_FALLBACK_THRESHOLD)
            if not page_posts:
                break
            all_posts.extend(page_posts)
            page_num += 1

        return SearchResult(posts=dedupe_posts(all_posts), pages=1)
