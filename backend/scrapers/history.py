"""
Durable job history stored as a single JSON file.

The file holds a JSON array of history entries, newest first, capped at
MAX_ENTRIES. Every mutation is a whole-file read-modify-write; callers run
on one event loop so writes never interleave.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_ENTRIES = 200

ENTRY_FIELDS = ('id', 'url', 'keyword', 'status', 'createdAt', 'startedAt', 'completedAt', 'result', 'error')


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _result_total(entry: Dict) -> int:
    result = entry.get('result') or {}
    return result.get('total') or 0


class HistoryStore:
    """
    JSON-file history of jobs.

    Usage:
        store = HistoryStore(Path('data/history.json'))
        store.upsert({'id': 'abc', 'url': url, 'keyword': 'sunset', 'status': 'queued'})
        store.update('abc', status='running')
    """

    def __init__(self, path: Path, max_entries: int = MAX_ENTRIES):
        self.path = Path(path)
        self.max_entries = max_entries

    def load(self) -> List[Dict]:
        """All entries, newest first. A missing or unreadable file reads as empty."""
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read history file {self.path}: {e}")
            return []
        return data if isinstance(data, list) else []

    def save(self, entries: List[Dict]):
        """Replace the whole file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            tmp_path.write_text(json.dumps(entries, indent=2, ensure_ascii=False), encoding='utf-8')
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Could not write history file {self.path}: {e}")

    def find(self, job_id: str) -> Optional[Dict]:
        for entry in self.load():
            if entry.get('id') == job_id:
                return entry
        return None

    def upsert(self, entry: Dict):
        """
        Insert a new entry at the front or replace an existing one in place.

        When the entry is a completed job with results, older entries for the
        same (url, keyword) that produced nothing are dropped.
        """
        entry = {k: entry.get(k) for k in ENTRY_FIELDS}
        history = self.load()
        for i, existing in enumerate(history):
            if existing.get('id') == entry['id']:
                history[i] = entry
                break
        else:
            history.insert(0, entry)

        if entry['status'] == 'completed' and _result_total(entry) > 0:
            history = [
                h for h in history
                if h.get('id') == entry['id']
                or h.get('url') != entry['url']
                or h.get('keyword') != entry['keyword']
                or _result_total(h) > 0
            ]

        self.save(history[:self.max_entries])

    def update(self, job_id: str, **fields) -> bool:
        """Merge fields into an existing entry. Returns False if there is none."""
        history = self.load()
        for entry in history:
            if entry.get('id') == job_id:
                entry.update(fields)
                self.save(history)
                return True
        return False

    def remove(self, job_id: str) -> bool:
        history = self.load()
        remaining = [h for h in history if h.get('id') != job_id]
        if len(remaining) == len(history):
            return False
        self.save(remaining)
        return True

    def clear(self):
        self.save([])
