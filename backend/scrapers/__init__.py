"""
Image scraper engine and job orchestrator for PicHarvest.

This module provides:
- A Playwright browser session that gets past anti-bot challenges
- Cascading post search and per-post image extraction
- Three-tier image downloads
- A concurrency-bounded, crash-recoverable job manager
"""

from .base import (
    CancellationToken,
    EventType,
    JobStatus,
    Post,
    ProgressEvent,
    ScrapeResult,
    SearchStrategy,
    SiteAdapter,
)
from .config import SITES, get_adapter, list_adapters, resolve_adapter
from .engine import ScrapeOptions, ScraperEngine
from .history import HistoryStore
from .manager import JobManager

__all__ = [
    'CancellationToken',
    'EventType',
    'JobStatus',
    'Post',
    'ProgressEvent',
    'ScrapeResult',
    'SearchStrategy',
    'SiteAdapter',
    'SITES',
    'get_adapter',
    'list_adapters',
    'resolve_adapter',
    'ScrapeOptions',
    'ScraperEngine',
    'HistoryStore',
    'JobManager',
]
