"""
Site adapter registry and scraping constants.

Each site adapter is a SiteAdapter record that defines:
- Which hostnames it applies to
- Which search strategies are allowed
- Content/exclude selectors for image extraction
- An optional custom search URL builder
"""

import re
from typing import Dict, List
from urllib.parse import quote

from .base import SiteAdapter, SearchStrategy


# ============================================================
# SCRAPING CONSTANTS
# ============================================================

# Substrings of image URLs that are never content (icons, ratings, ads)
EXCLUDE_PATTERNS = [
    'rating_off', 'rating_on', 'loading.gif', 'avatar', 'logo', 'icon',
    'favicon', 'emoji', 'star', 'close-icon', 'wp-postratings',
    'advertisement', 'banner', 'placeholder', 'spinner',
]

# Anti-devtools scripts that break automation; requests for these are aborted
BLOCKED_SCRIPTS = ['disabley', 'disable-devtool', 'devtools-detect']

# Image URL test; allows an optional "!size" suffix before the query string
IMAGE_EXTENSIONS = re.compile(r'\.(jpg|jpeg|png|webp|gif|bmp)(![a-z]+)?(\?|$)', re.IGNORECASE)

# WordPress-style resized thumbnails: photo-300x200.jpg
THUMBNAIL_SUFFIX = re.compile(r'-\d+x\d+\.\w+$')

# Interstitial page titles in several locales
CHALLENGE_TITLES = [
    'Just a moment', 'Checking', '잠시만', '请稍候', 'Einen Moment', 'Un instant',
]

DEFAULT_CONTENT_SELECTORS = ['article', '.entry-content', '.post-content', 'main', '#content']
DEFAULT_EXCLUDE_SELECTORS = ['aside', '.sidebar', '.widget', 'nav', 'footer', '.related-posts']


# ============================================================
# SITE ADAPTERS
# ============================================================

DEFAULT_ADAPTER = SiteAdapter(
    key='default',
    name='Generic blog',
    content_selectors=DEFAULT_CONTENT_SELECTORS,
    exclude_selectors=DEFAULT_EXCLUDE_SELECTORS,
)

SITES: Dict[str, SiteAdapter] = {
    '4khd': SiteAdapter(
        key='4khd',
        name='4KHD',
        pattern=r'4khd\.com',
        search_url_builder=lambda origin, keyword: f"{origin}/search/{quote(keyword, safe='')}",
        content_selectors=['.entry-content', '.post-content', 'article', '.content', 'main'],
        exclude_selectors=[
            'aside', '.sidebar', '.widget', 'nav', 'footer',
            '[class*="sidebar"]', '[id*="sidebar"]',
            '.related-posts', '.comments',
        ],
    ),

    'everiaclub': SiteAdapter(
        key='everiaclub',
        name='EveriaClub',
        pattern=r'everiaclub\.com',
        search_url_builder=lambda origin, keyword: f"{origin}/search/?keyword={quote(keyword, safe='')}",
        content_selectors=['.entry-content', '.post-content', 'article .content', 'article'],
        exclude_selectors=[
            'aside', '.sidebar', '.widget', 'nav', 'footer',
            '.widget_recent_entries', '.recent-posts',
            '[class*="sidebar"]', '[id*="sidebar"]',
        ],
    ),

    # Never matched by hostname; select explicitly with get_adapter('wordpress')
    'wordpress': SiteAdapter(
        key='wordpress',
        name='WordPress (generic)',
        search_strategy=SearchStrategy.WORDPRESS,
        content_selectors=['.entry-content', '.post-content', 'article', '.content-area'],
        exclude_selectors=['aside', '.sidebar', '.widget-area', 'nav', 'footer', '.comments-area'],
    ),
}


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def resolve_adapter(url: str) -> SiteAdapter:
    """
    Pick the adapter for a URL.

    Args:
        url: Seed URL of the job

    Returns:
        The first adapter whose pattern matches, else the default adapter
    """
    for adapter in SITES.values():
        if adapter.pattern and re.search(adapter.pattern, url, re.IGNORECASE):
            return adapter
    return DEFAULT_ADAPTER


def get_adapter(key: str) -> SiteAdapter:
    """
    Get an adapter by its key.

    Raises:
        ValueError: If key is not registered
    """
    if key == DEFAULT_ADAPTER.key:
        return DEFAULT_ADAPTER
    if key not in SITES:
        valid_keys = ', '.join(sorted(SITES.keys()))
        raise ValueError(f"Unknown adapter: '{key}'. Valid adapters: {valid_keys}")
    return SITES[key]


def list_adapters() -> List[dict]:
    """Get a summary of all adapters for display."""
    summary = []
    for key, adapter in SITES.items():
        summary.append({
            'key': key,
            'name': adapter.name,
            'pattern': adapter.pattern,
            'strategy': adapter.search_strategy.value,
            'custom_search': adapter.search_url_builder is not None,
        })
    return summary
