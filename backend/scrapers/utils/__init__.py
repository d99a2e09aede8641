"""Shared utilities for scrapers."""

from .normalizers import (
    sanitize_filename,
    slugify_keyword,
    extract_album_name,
    normalize_image_url,
    get_extension,
    build_filename,
    next_sequence_start,
    format_duration,
)
from .extractors import (
    extract_posts_from_html,
    extract_images_from_html,
    find_post_pages,
    find_search_param,
)

__all__ = [
    'sanitize_filename',
    'slugify_keyword',
    'extract_album_name',
    'normalize_image_url',
    'get_extension',
    'build_filename',
    'next_sequence_start',
    'format_duration',
    'extract_posts_from_html',
    'extract_images_from_html',
    'find_post_pages',
    'find_search_param',
]
