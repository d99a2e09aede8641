"""
Data extraction utilities for scrapers.

These functions work on raw HTML only (no browser), so every strategy can
be tested against fixture pages.
"""

import re
from typing import Callable, Iterable, List, Optional, Set
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from ..base import Post
from ..config import EXCLUDE_PATTERNS, IMAGE_EXTENSIONS, THUMBNAIL_SUFFIX
from .normalizers import normalize_image_url

MAX_TITLE_LENGTH = 200

# Lazy-load attributes, checked before src
LAZY_ATTRIBUTES = ['data-lazy-src', 'data-src', 'data-original']


# ============================================================
# POST EXTRACTION
# ============================================================

def _resolve_href(raw: str, origin: str) -> str:
    if raw.startswith('http'):
        return raw
    return urljoin(origin + '/', raw)


def _is_listing_link(href: str) -> bool:
    """Search, pagination and taxonomy links are never posts."""
    if '?s=' in href or '/page/' in href or '/search/' in href:
        return True
    path = urlparse(href).path
    return path == '/tag' or path.startswith('/tag/') or path.startswith('/category/')


def _heading_wrapped_links(html: str, origin: str) -> Iterable[tuple]:
    """<h2><a href="...">Title</a></h2>"""
    pattern = re.compile(r'<h[234][^>]*>\s*<a[^>]+href=["\']([^"\']+)["\'][^>]*>([^<]+)</a>', re.IGNORECASE)
    for m in pattern.finditer(html):
        href = _resolve_href(m.group(1), origin)
        if _is_listing_link(href):
            continue
        yield href, m.group(2).strip()


def _link_wrapped_headings(html: str, origin: str) -> Iterable[tuple]:
    """<a href="..."><div><h3>Title</h3></div></a>"""
    pattern = re.compile(r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>.*?<h[234][^>]*>([^<]+)</h[234]>',
                         re.IGNORECASE | re.DOTALL)
    for m in pattern.finditer(html):
        href = _resolve_href(m.group(1), origin)
        if _is_listing_link(href):
            continue
        yield href, m.group(2).strip()


def _paragraph_wrapped_links(html: str, origin: str) -> Iterable[tuple]:
    """<p><a href="...">Title</a></p>, skipping static .html/.php pages"""
    pattern = re.compile(r'<p[^>]*>\s*<a[^>]+href=["\']([^"\']+)["\'][^>]*>([^<]+)</a>\s*</p>', re.IGNORECASE)
    for m in pattern.finditer(html):
        href = _resolve_href(m.group(1), origin)
        title = m.group(2).strip()
        if len(title) < 3:
            continue
        if '?s=' in href or '/page/' in href or '/search/' in href:
            continue
        if re.search(r'\.(html|php)$', urlparse(href).path, re.IGNORECASE):
            continue
        yield href, title


def _file_extension_links(html: str, origin: str) -> Iterable[tuple]:
    """<a href="/2024/post-123.html">Some title</a>"""
    pattern = re.compile(r'<a[^>]+href=["\']([^"\']+\.html)["\'][^>]*>([^<]{5,})</a>', re.IGNORECASE)
    for m in pattern.finditer(html):
        href = _resolve_href(m.group(1), origin)
        title = m.group(2).strip()
        if '/page/' in href or '/search/' in href or '?s=' in href:
            continue
        if re.match(r'^\d+P?$', title, re.IGNORECASE) or len(title) < 5:
            continue
        yield href, title


# Tried in order; the first matcher that yields any post wins
POST_MATCHERS: List[Callable[[str, str], Iterable[tuple]]] = [
    _heading_wrapped_links,
    _link_wrapped_headings,
    _paragraph_wrapped_links,
    _file_extension_links,
]


def extract_posts_from_html(html: str, origin: str) -> List[Post]:
    """
    Extract post links from a listing/search page.

    Args:
        html: Page HTML
        origin: Site origin (scheme://host); links elsewhere are ignored

    Returns:
        Posts from the first matcher that finds any, de-duplicated by URL
    """
    for matcher in POST_MATCHERS:
        results: List[Post] = []
        seen: Set[str] = set()
        for href, title in matcher(html, origin):
            if not href.startswith(origin) or href in seen:
                continue
            seen.add(href)
            results.append(Post(url=href, title=title[:MAX_TITLE_LENGTH]))
        if results:
            return results
    return []


def dedupe_posts(posts: Iterable[Post]) -> List[Post]:
    """Drop repeated URLs, keeping first occurrence order."""
    seen: Set[str] = set()
    result = []
    for post in posts:
        if post.url in seen:
            continue
        seen.add(post.url)
        result.append(post)
    return result


def filter_posts_by_keyword(posts: Iterable[Post], keyword: str) -> List[Post]:
    """Posts whose title contains the keyword (case-insensitive)."""
    kw_lower = keyword.lower()
    return [p for p in posts if kw_lower in p.title.lower()]


# ============================================================
# PAGINATION
# ============================================================

PAGINATION_PATH = 'path'       # /page/2
PAGINATION_QUERY_P = 'query_p'  # ?p=2
PAGINATION_QUERY = 'query'     # ?page=2


def detect_pagination_style(html: str) -> str:
    """Guess how a listing paginates from its first page."""
    if '/page/2' in html:
        return PAGINATION_PATH
    if '?p=2' in html or '&p=2' in html:
        return PAGINATION_QUERY_P
    return PAGINATION_QUERY


def build_page_url(base_url: str, page_num: int, style: str) -> str:
    """
    URL of page N of a listing.

    Examples:
        ('https://x.com/cat/', 3, 'path')    -> 'https://x.com/cat/page/3'
        ('https://x.com/s?k=a', 2, 'query')  -> 'https://x.com/s?k=a&page=2'
    """
    if page_num <= 1:
        return base_url
    sep = '&' if '?' in base_url else '?'
    if style == PAGINATION_PATH:
        return f"{base_url.rstrip('/')}/page/{page_num}"
    if style == PAGINATION_QUERY_P:
        return f"{base_url}{sep}p={page_num}"
    return f"{base_url}{sep}page={page_num}"


def has_next_page(html: str, next_num: int) -> bool:
    """True if the page links to page `next_num` in any supported style."""
    return (f"page={next_num}" in html
            or f"/page/{next_num}" in html
            or f"p={next_num}" in html)


# ============================================================
# SEARCH FORM DISCOVERY
# ============================================================

_SEARCH_HINTS = ('search', 'title', 'keyword')


def find_search_param(html: str) -> Optional[str]:
    """
    Find the query parameter name of an in-page search box.

    Looks at text/search inputs and matches their placeholder, name or id
    against common search hints.

    Returns:
        The input's name attribute, or None
    """
    soup = BeautifulSoup(html, 'html.parser')
    for inp in soup.find_all('input'):
        input_type = (inp.get('type') or '').lower()
        if input_type not in ('', 'text', 'search'):
            continue
        placeholder = (inp.get('placeholder') or '').lower()
        name = (inp.get('name') or '').lower()
        input_id = (inp.get('id') or '').lower()
        matches = (
            any(h in placeholder for h in _SEARCH_HINTS)
            or any(h in name for h in _SEARCH_HINTS) or 'query' in name or name == 'q'
            or 'search' in input_id or 'title' in input_id
        )
        if matches:
            return inp.get('name') or None
    return None


# ============================================================
# IMAGE EXTRACTION
# ============================================================

def is_noise_image(url: str) -> bool:
    """True for icons, ratings, placeholders and resized thumbnails."""
    lower = url.lower()
    if any(p in lower for p in EXCLUDE_PATTERNS):
        return True
    return bool(THUMBNAIL_SUFFIX.search(url))


def _int_attr(value) -> int:
    try:
        return int(str(value).strip().rstrip('px'))
    except (TypeError, ValueError):
        return 0


def _srcset_urls(srcset: str) -> List[str]:
    return [part.strip().split()[0] for part in srcset.split(',') if part.strip()]


def _images_in(root, min_width: int, min_height: int) -> List[str]:
    images: List[str] = []

    def add(url: str):
        if url and url.startswith('http') and not is_noise_image(url) and url not in images:
            images.append(url)

    for img in root.find_all('img'):
        lazy_src = ''
        for attr in LAZY_ATTRIBUTES:
            if img.get(attr, '').startswith('http'):
                lazy_src = img[attr]
                break
        src = lazy_src or img.get('src', '')
        if src:
            is_lazy = bool(lazy_src) or img.get('loading') == 'lazy' or 'lazyload' in (img.get('class') or [])
            width = _int_attr(img.get('width'))
            height = _int_attr(img.get('height'))
            # Unknown dimensions count as pre-load, not as too small
            sized_ok = (width == 0 and height == 0) or width >= min_width or height >= min_height
            if is_lazy or sized_ok:
                add(src)
        if img.get('srcset'):
            for candidate in _srcset_urls(img['srcset']):
                add(candidate)

    for a in root.find_all('a', href=True):
        href = a['href']
        if href.startswith('http') and IMAGE_EXTENSIONS.search(href):
            add(href)
    return images


def extract_images_from_html(
    html: str,
    content_selectors: Optional[List[str]] = None,
    exclude_selectors: Optional[List[str]] = None,
    min_width: int = 0,
    min_height: int = 0,
) -> List[str]:
    """
    Extract content image URLs from page HTML.

    Excluded regions (sidebars, widgets, footers) are removed first. The
    content areas are scanned next; if they yield fewer than 5 images the
    whole document is scanned instead.

    Args:
        html: Page HTML
        content_selectors: CSS selectors of the main content area
        exclude_selectors: CSS selectors of regions to ignore
        min_width: Minimum width attribute for non-lazy images
        min_height: Minimum height attribute for non-lazy images

    Returns:
        Normalized image URLs in document order
    """
    soup = BeautifulSoup(html, 'html.parser')
    for selector in exclude_selectors or []:
        for el in soup.select(selector):
            el.decompose()

    content_images: List[str] = []
    for selector in content_selectors or []:
        el = soup.select_one(selector)
        if el is None:
            continue
        for url in _images_in(el, min_width, min_height):
            if url not in content_images:
                content_images.append(url)

    if len(content_images) >= 5:
        images = content_images
    else:
        images = _images_in(soup, min_width, min_height)
    return [normalize_image_url(u) for u in images]


# ============================================================
# IN-POST PAGINATION
# ============================================================

def find_post_pages(html: str, post_url: str) -> List[str]:
    """
    Find the other pages of a multi-page post.

    Recognizes numbered path segments (/post/2, /post/3) and, for .html
    posts, numbered suffixes (post_2.html).

    Returns:
        Page URLs sorted by page number, without duplicates or the post itself
    """
    found = []
    base = re.sub(r'/\d+$', '', post_url)
    for m in re.finditer(rf'href=["\']{re.escape(base)}/(\d+)["\']', html):
        found.append((int(m.group(1)), f"{base}/{m.group(1)}"))

    if post_url.endswith('.html'):
        html_base = post_url[:-len('.html')]
        for m in re.finditer(rf'href=["\']{re.escape(html_base)}_(\d+)\.html["\']', html):
            found.append((int(m.group(1)), f"{html_base}_{m.group(1)}.html"))

    pages = []
    seen_nums = set()
    for num, url in sorted(found):
        if num in seen_nums or url == post_url:
            continue
        seen_nums.add(num)
        pages.append(url)
    return pages
