"""
Naming and normalization utilities for scrapers.

These functions turn keywords, post titles and image URLs into consistent
folder names, filename fragments and file extensions.
"""

import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

# Characters that are illegal in filenames on at least one common platform
_ILLEGAL_CHARS = re.compile(r'[/\?<>\\:\*\|"\x00-\x1f\x80-\x9f]')
_RESERVED_NAMES = re.compile(r'^(con|prn|aux|nul|com[0-9]|lpt[0-9])(\..*)?$', re.IGNORECASE)

IMAGE_FILE_PATTERN = re.compile(r'\.(jpg|jpeg|png|webp|gif)$', re.IGNORECASE)
SEQUENCE_PATTERN = re.compile(r'_(\d{4,})\.\w+$')


def sanitize_filename(name: str) -> str:
    """
    Strip characters that cannot appear in a filename.

    Examples:
        'a/b:c' -> 'abc'
        '..'    -> ''
        'CON'   -> ''
    """
    if not name:
        return ''
    cleaned = _ILLEGAL_CHARS.sub('', name)
    if cleaned in ('.', '..') or _RESERVED_NAMES.match(cleaned):
        return ''
    cleaned = cleaned.rstrip('. ')
    return cleaned[:255]


def slugify_keyword(keyword: Optional[str]) -> str:
    """
    Folder slug for a keyword.

    Examples:
        'Sunset Beach' -> 'sunset_beach'
        ''             -> 'unnamed'
    """
    slug = sanitize_filename(keyword or 'unnamed')
    slug = re.sub(r'\s+', '_', slug).lower()
    return slug or 'unnamed'


def extract_album_name(title: Optional[str], keyword: Optional[str]) -> str:
    """
    Derive an album fragment from a post title.

    The keyword and bracketed tags are removed, leading/trailing separators
    are stripped, and the result is sanitized and capped at 50 characters.

    Examples:
        ('[Cosplay] Sunset - Vol.2', 'sunset') -> 'Vol.2'
        ('Direct URL', 'x')                    -> ''
    """
    if not title or title == 'Direct URL':
        return ''
    album = title
    if keyword:
        album = re.sub(re.escape(keyword), '', album, flags=re.IGNORECASE)
    album = re.sub(r'\[[^\]]*\]\s*', '', album)
    album = re.sub(r'^[\s\-–—|:,·]+|[\s\-–—|:,·]+$', '', album).strip()
    album = sanitize_filename(album)
    album = re.sub(r'\s+', '_', album)
    album = re.sub(r'_+', '_', album).strip('_')
    if len(album) > 50:
        album = album[:50].rstrip('_')
    return album


def normalize_image_url(url: str) -> str:
    """Upgrade small size suffixes to the large variant (photo.jpg!sml -> photo.jpg!lrg)."""
    return re.sub(r'!sml$', '!lrg', url, flags=re.IGNORECASE)


def get_extension(image_url: str) -> str:
    """
    Infer the file extension from the URL path, defaulting to '.jpg'.

    Examples:
        'https://x.com/a/b.png?w=1' -> '.png'
        'https://x.com/a/b'         -> '.jpg'
        'https://x.com/a/b.jpg!lrg' -> '.jpg'
    """
    try:
        path = urlparse(image_url).path
    except ValueError:
        return '.jpg'
    path = re.sub(r'![a-z]+$', '', path, flags=re.IGNORECASE)
    suffix = Path(path).suffix
    if not suffix or len(suffix) > 6 or not re.match(r'^\.\w+$', suffix):
        return '.jpg'
    return suffix.lower()


def build_filename(folder_slug: str, album: str, sequence: int, ext: str) -> str:
    """
    Build '{keyword}_{album?}_{seq:04d}{ext}'.

    Examples:
        ('sunset', 'Vol.2', 7, '.jpg') -> 'sunset_Vol.2_0007.jpg'
        ('sunset', '', 12, '.png')     -> 'sunset_0012.png'
    """
    prefix = f"{folder_slug}_{album}" if album else folder_slug
    return f"{prefix}_{sequence:04d}{ext}"


def next_sequence_start(folder: Path) -> int:
    """
    Highest sequence number already used in a folder.

    Falls back to the number of image files when no file carries a
    sequence suffix, so re-runs never overwrite earlier downloads.
    """
    if not folder.exists():
        return 0
    highest = 0
    image_count = 0
    for entry in folder.iterdir():
        if not entry.is_file() or not IMAGE_FILE_PATTERN.search(entry.name):
            continue
        image_count += 1
        match = SEQUENCE_PATTERN.search(entry.name)
        if match:
            highest = max(highest, int(match.group(1)))
    return max(highest, image_count)


def format_duration(seconds: float) -> str:
    """
    Human-readable duration.

    Examples:
        5   -> '5s'
        125 -> '2m 5s'
    """
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
