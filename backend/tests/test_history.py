"""
Tests for the JSON history store.
"""

import json

from scrapers.history import HistoryStore


def entry(job_id, status='completed', keyword='sunset', total=None, url='https://x.com'):
    return {
        'id': job_id,
        'url': url,
        'keyword': keyword,
        'status': status,
        'result': None if total is None else {'total': total, 'folder': keyword, 'duration': '1s'},
    }


class TestHistoryStore:
    """Test persistence, ordering and pruning."""

    def test_missing_file_reads_empty(self, tmp_path):
        assert HistoryStore(tmp_path / "none.json").load() == []

    def test_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("{not json")
        assert HistoryStore(path).load() == []

    def test_new_entries_go_first(self, history_store):
        history_store.upsert(entry('a'))
        history_store.upsert(entry('b'))

        assert [h['id'] for h in history_store.load()] == ['b', 'a']

    def test_upsert_replaces_in_place(self, history_store):
        history_store.upsert(entry('a', status='queued'))
        history_store.upsert(entry('b'))
        history_store.upsert(entry('a', status='running'))

        rows = history_store.load()
        assert [h['id'] for h in rows] == ['b', 'a']
        assert rows[1]['status'] == 'running'

    def test_rows_have_every_field(self, history_store):
        history_store.upsert({'id': 'a', 'url': 'https://x.com', 'keyword': '', 'status': 'queued', 'extra': 1})

        row = history_store.load()[0]
        assert set(row) == {'id', 'url', 'keyword', 'status', 'createdAt', 'startedAt',
                            'completedAt', 'result', 'error'}

    def test_capped(self, tmp_path):
        store = HistoryStore(tmp_path / "history.json", max_entries=3)
        for i in range(5):
            store.upsert(entry(f"j{i}", keyword=f"k{i}"))

        assert [h['id'] for h in store.load()] == ['j4', 'j3', 'j2']

    def test_zero_result_duplicates_dropped(self, history_store):
        history_store.upsert(entry('empty', total=0))
        history_store.upsert(entry('failed', status='failed'))
        history_store.upsert(entry('other', keyword='forest', total=0))
        history_store.upsert(entry('good', total=4))

        ids = [h['id'] for h in history_store.load()]
        assert ids == ['good', 'other']

    def test_update_and_remove(self, history_store):
        history_store.upsert(entry('a', status='queued'))

        assert history_store.update('a', status='running', startedAt='t')
        assert history_store.find('a')['startedAt'] == 't'
        assert not history_store.update('missing', status='running')
        assert history_store.remove('a')
        assert not history_store.remove('a')

    def test_file_is_json_array(self, history_store):
        history_store.upsert(entry('a'))
        assert isinstance(json.loads(history_store.path.read_text()), list)

    def test_clear(self, history_store):
        history_store.upsert(entry('a'))
        history_store.clear()
        assert history_store.load() == []
