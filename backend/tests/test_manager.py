"""
Tests for the job manager: admission, state machine, events, history and recovery.
"""

import asyncio

import pytest

from scrapers.base import JobStatus
from scrapers.history import HistoryStore
from scrapers.manager import JobManager

from conftest import ControlledEngines, settle

URL = "https://blog.example.com"


def terminal_events(events):
    return [e for e in events if e['type'] in ('complete', 'error')]


class TestAdmission:
    """Test concurrency limits and FIFO queueing."""

    def test_third_job_is_queued(self, manager, engines):
        """With two jobs running, a third waits in the queue."""
        async def scenario():
            first = manager.create_job(URL, "alpha")
            second = manager.create_job(URL, "beta")
            third = manager.create_job(URL, "sunset")
            await settle()

            assert first['status'] == 'running'
            assert second['status'] == 'running'
            assert third == {'jobId': third['jobId'], 'status': 'queued'}
            assert engines.running == 2

            engines.release(first['jobId'])
            await settle()

            job = manager.get_job(third['jobId'])
            assert job['status'] == 'running'
            assert manager.get_job_events(third['jobId'])[0] == {'type': 'status', 'message': 'Job started'}

            engines.release_all()
            await settle()
            assert all(j['status'] == 'completed' for j in manager.get_jobs())

        asyncio.run(scenario())

    def test_never_more_than_max_running(self, history_store):
        """Many jobs never push the running count past max_concurrent."""
        engines = ControlledEngines()
        manager = JobManager(history_store, max_concurrent=2, engine_factory=engines)

        async def scenario():
            ids = [manager.create_job(URL, f"kw{i}")['jobId'] for i in range(6)]
            for job_id in ids:
                await settle(5)
                assert manager.get_stats()['running'] <= 2
                engines.release(job_id)
            await settle()

        asyncio.run(scenario())
        assert engines.max_running <= 2
        assert manager.get_stats()['completed'] == 6

    def test_status_event_precedes_engine_events(self, manager, engines):
        """The first recorded event of a started job is a status event."""
        async def scenario():
            created = manager.create_job(URL, "sunset")
            await settle()
            engines.release(created['jobId'])
            await settle()
            return manager.get_job_events(created['jobId'])

        events = asyncio.run(scenario())
        assert events[0]['type'] == 'status'
        types = [e['type'] for e in events]
        assert types.index('status') < types.index('download')


class TestDuplicates:
    """Test (url, keyword) duplicate suppression."""

    def test_duplicate_returns_existing_id(self, manager):
        """A second identical request while the first is live is rejected."""
        async def scenario():
            first = manager.create_job(URL, "sunset")
            second = manager.create_job(URL, "sunset")
            return first, second

        first, second = asyncio.run(scenario())
        assert second == {'error': 'duplicate', 'existingJobId': first['jobId']}
        assert len(manager.get_jobs()) == 1

    def test_missing_keyword_matches_empty_keyword(self, manager):
        """None and '' are the same keyword."""
        async def scenario():
            first = manager.create_job(URL, None)
            return first, manager.create_job(URL, "")

        first, second = asyncio.run(scenario())
        assert second['existingJobId'] == first['jobId']

    def test_finished_job_allows_new_one(self, manager, engines):
        """Once a job is terminal the same request creates a new job."""
        async def scenario():
            first = manager.create_job(URL, "sunset")
            await settle()
            engines.release(first['jobId'])
            await settle()
            return first, manager.create_job(URL, "sunset")

        first, second = asyncio.run(scenario())
        assert 'jobId' in second
        assert second['jobId'] != first['jobId']


class TestTerminalEvents:
    """Test the single-terminal-event guarantee and failure handling."""

    def test_completion_records_result(self, manager, engines, history_store):
        """A complete event finishes the job and persists its result."""
        async def scenario():
            created = manager.create_job(URL, "sunset")
            await settle()
            engines.release(created['jobId'], total=7)
            await settle()
            return created['jobId']

        job_id = asyncio.run(scenario())
        job = manager.get_job(job_id)
        assert job['status'] == 'completed'
        assert job['result'] == {'total': 7, 'folder': 'sunset', 'duration': '1s'}
        assert job['lastEvent']['type'] == 'complete'
        assert history_store.find(job_id)['status'] == 'completed'
        assert history_store.find(job_id)['completedAt'] is not None

    def test_error_event_fails_job(self, manager, engines):
        """An error event marks the job failed with its message."""
        async def scenario():
            created = manager.create_job(URL, "sunset")
            await settle()
            engines.release(created['jobId'], error="challenge timeout")
            await settle()
            return created['jobId']

        job_id = asyncio.run(scenario())
        job = manager.get_job(job_id)
        assert job['status'] == 'failed'
        assert job['error'] == "challenge timeout"
        assert len(terminal_events(manager.get_job_events(job_id))) == 1

    def test_failed_job_keeps_partial_total(self, manager, engines, history_store):
        """Images saved before a failure are still reported."""
        async def scenario():
            created = manager.create_job(URL, "sunset")
            await settle()
            engines.release(created['jobId'], total=2, error="connection reset")
            await settle()
            return created['jobId']

        job_id = asyncio.run(scenario())
        job = manager.get_job(job_id)
        assert job['status'] == 'failed'
        assert job['error'] == "connection reset"
        assert job['result'] == {'total': 2, 'folder': 'sunset', 'duration': '1s'}
        assert history_store.find(job_id)['result']['total'] == 2
        assert "Result: 2 images (1s)" in manager.get_job_summary(job_id)

    def test_engine_factory_error_fails_job(self, history_store):
        """A job whose engine cannot be built fails instead of holding its slot."""
        def broken_factory(options=None, job_id=None):
            raise RuntimeError("no browser available")

        manager = JobManager(history_store, max_concurrent=1, engine_factory=broken_factory)

        async def scenario():
            first = manager.create_job(URL, "a")
            second = manager.create_job(URL, "b")
            await settle()
            return first['jobId'], second['jobId']

        first_id, second_id = asyncio.run(scenario())
        assert manager.get_job(first_id)['status'] == 'failed'
        assert manager.get_job(first_id)['error'] == "no browser available"
        assert manager.get_job(second_id)['status'] == 'failed'

    def test_engine_crash_is_an_error_event(self, manager, engines):
        """An exception escaping the engine fails the job and frees the slot."""
        async def scenario():
            first = manager.create_job(URL, "a")
            manager.create_job(URL, "b")
            queued = manager.create_job(URL, "c")
            await settle()
            engines.crashes.add(first['jobId'])
            engines.release(first['jobId'])
            await settle()
            return first['jobId'], queued['jobId']

        crashed_id, queued_id = asyncio.run(scenario())
        events = manager.get_job_events(crashed_id)
        assert manager.get_job(crashed_id)['status'] == 'failed'
        assert events[-1] == {'type': 'error', 'message': 'engine blew up'}
        assert manager.get_job(queued_id)['status'] == 'running'

    def test_events_after_terminal_are_dropped(self, manager):
        """Nothing is recorded after the first terminal event."""
        from scrapers.base import EventType, ProgressEvent

        async def scenario():
            created = manager.create_job(URL, "sunset")
            job = manager.jobs[created['jobId']]
            manager._on_event(job, ProgressEvent(EventType.COMPLETE, {'total': 1, 'folder': 'sunset', 'duration': '1s'}))
            manager._on_event(job, ProgressEvent(EventType.ERROR, {'message': 'late'}))
            manager._on_event(job, ProgressEvent(EventType.STATUS, {'message': 'late'}))
            job.token.cancel()
            await settle()
            return created['jobId']

        job_id = asyncio.run(scenario())
        events = manager.get_job_events(job_id)
        assert events[-1]['type'] == 'complete'
        assert len(terminal_events(events)) == 1
        assert manager.get_job(job_id)['status'] == 'completed'


class TestAbortAndDelete:
    """Test abort and delete of running and queued jobs."""

    def test_abort_running_job_frees_slot(self, manager, engines, history_store):
        """Abort marks the job right away and the queue advances."""
        closed = []

        async def scenario():
            first = manager.create_job(URL, "a")
            manager.create_job(URL, "b")
            queued = manager.create_job(URL, "c")
            await settle()
            manager.subscribe_to_job(first['jobId'], closed.append)

            assert manager.abort_job(first['jobId']) == {'status': 'aborted'}
            assert manager.get_job(first['jobId'])['status'] == 'aborted'
            assert manager.get_job(queued['jobId'])['status'] == 'running'
            await settle()
            return first['jobId']

        job_id = asyncio.run(scenario())
        assert closed[-1] == {'type': 'close'}
        job = manager.get_job(job_id)
        # The cooperative engine still finished; its totals are kept, status is not
        assert job['status'] == 'aborted'
        assert job['result']['total'] == 3
        assert manager.get_job_events(job_id)[-1]['type'] == 'complete'
        assert history_store.find(job_id)['status'] == 'aborted'
        assert history_store.find(job_id)['result']['total'] == 3

    def test_abort_queued_job_never_runs(self, manager, engines):
        """An aborted queued job leaves the queue without starting."""
        async def scenario():
            first = manager.create_job(URL, "a")
            manager.create_job(URL, "b")
            queued = manager.create_job(URL, "c")
            manager.abort_job(queued['jobId'])
            engines.release(first['jobId'])
            await settle()
            return queued['jobId']

        job_id = asyncio.run(scenario())
        assert job_id not in engines.started
        assert manager.get_job(job_id)['status'] == 'aborted'

    def test_abort_finished_job_keeps_status(self, manager, engines):
        """Terminal states are final."""
        async def scenario():
            created = manager.create_job(URL, "a")
            await settle()
            engines.release(created['jobId'])
            await settle()
            return manager.abort_job(created['jobId'])

        assert asyncio.run(scenario()) == {'status': 'completed'}

    def test_abort_unknown_job(self, manager):
        assert manager.abort_job("nope") == {'error': 'not_found'}

    def test_delete_running_job(self, manager, engines, history_store):
        """Delete cancels, forgets the job and removes its history row."""
        async def scenario():
            created = manager.create_job(URL, "a")
            await settle()
            result = manager.delete_job(created['jobId'])
            await settle()
            return created['jobId'], result

        job_id, result = asyncio.run(scenario())
        assert result == {'status': 'deleted'}
        assert manager.get_job(job_id) is None
        assert history_store.find(job_id) is None

    def test_delete_history_only_row(self, history_store, engines):
        """Rows of jobs from an earlier run can still be deleted."""
        history_store.upsert({'id': 'old1', 'url': URL, 'keyword': 'x', 'status': 'completed'})
        manager = JobManager(history_store, engine_factory=engines)

        assert manager.delete_job('old1') == {'status': 'deleted'}
        assert manager.delete_job('old1') == {'error': 'not_found'}


class TestSubscribers:
    """Test per-job publish/subscribe."""

    def test_subscribers_receive_events_then_close(self, manager, engines):
        """Every subscriber gets each event followed by the close signal."""
        first_seen, second_seen = [], []

        async def scenario():
            created = manager.create_job(URL, "sunset")
            manager.subscribe_to_job(created['jobId'], first_seen.append)
            manager.subscribe_to_job(created['jobId'], second_seen.append)
            await settle()
            engines.release(created['jobId'])
            await settle()

        asyncio.run(scenario())
        assert first_seen == second_seen
        assert [e['type'] for e in first_seen][-3:] == ['download', 'complete', 'close']

    def test_unsubscribe_stops_delivery(self, manager, engines):
        seen = []

        async def scenario():
            created = manager.create_job(URL, "sunset")
            unsubscribe = manager.subscribe_to_job(created['jobId'], seen.append)
            unsubscribe()
            await settle()
            engines.release(created['jobId'])
            await settle()

        asyncio.run(scenario())
        assert seen == []

    def test_failing_subscriber_does_not_break_job(self, manager, engines):
        def broken(event):
            raise ValueError("boom")

        async def scenario():
            created = manager.create_job(URL, "sunset")
            manager.subscribe_to_job(created['jobId'], broken)
            await settle()
            engines.release(created['jobId'])
            await settle()
            return created['jobId']

        job_id = asyncio.run(scenario())
        assert manager.get_job(job_id)['status'] == 'completed'


class TestHistory:
    """Test the history views and pruning."""

    def test_zero_result_duplicates_pruned(self, manager, engines, history_store):
        """A successful run drops earlier empty runs of the same request."""
        async def scenario():
            empty = manager.create_job(URL, "sunset")
            await settle()
            engines.release(empty['jobId'], total=0)
            await settle()
            other = manager.create_job(URL, "other")
            await settle()
            engines.release(other['jobId'], total=0)
            full = manager.create_job(URL, "sunset")
            await settle()
            engines.release(full['jobId'], total=5)
            await settle()
            return empty['jobId'], other['jobId'], full['jobId']

        empty_id, other_id, full_id = asyncio.run(scenario())
        ids = [h['id'] for h in history_store.load()]
        assert empty_id not in ids
        assert other_id in ids
        assert ids[0] == full_id

    def test_jobs_newest_first(self, manager):
        async def scenario():
            return [manager.create_job(URL, f"kw{i}")['jobId'] for i in range(3)]

        ids = asyncio.run(scenario())
        assert [j['id'] for j in manager.get_jobs()] == list(reversed(ids))

    def test_history_overlays_live_state(self, manager, history_store):
        """Live jobs report their in-memory status over the stored row."""
        async def scenario():
            created = manager.create_job(URL, "sunset")
            await settle()
            return created['jobId']

        job_id = asyncio.run(scenario())
        history_store.update(job_id, status='queued')
        assert manager.get_history()[0]['status'] == 'running'

    def test_clear_history_keeps_unfinished_jobs(self, manager, engines, history_store):
        async def scenario():
            done = manager.create_job(URL, "a")
            live = manager.create_job(URL, "b")
            await settle()
            engines.release(done['jobId'])
            await settle()
            manager.clear_history()
            return live['jobId']

        live_id = asyncio.run(scenario())
        assert [h['id'] for h in history_store.load()] == [live_id]


class TestSummary:
    """Test the plain-text job summary."""

    def test_summary_of_downloading_job(self, manager):
        from scrapers.base import EventType, ProgressEvent

        async def scenario():
            created = manager.create_job(URL, "sunset")
            job = manager.jobs[created['jobId']]
            manager._on_event(job, ProgressEvent(EventType.DOWNLOAD, {'current': 2, 'total': 4, 'filename': 'f'}))
            summary = manager.get_job_summary(created['jobId'])
            job.token.cancel()
            await settle()
            return summary

        summary = asyncio.run(scenario())
        assert summary.startswith("Status: Downloading\nKeyword: sunset\n")
        assert "Progress: 2/4 images (50%)" in summary
        assert "Elapsed: " in summary

    def test_summary_falls_back_to_history(self, history_store, engines):
        history_store.upsert({
            'id': 'old1', 'url': URL, 'keyword': '', 'status': 'completed',
            'result': {'total': 12, 'folder': 'unnamed', 'duration': '3s'},
        })
        manager = JobManager(history_store, engine_factory=engines)

        summary = manager.get_job_summary('old1')
        assert summary == "Status: Completed\nKeyword: none\nResult: 12 images (3s)\n"
        assert manager.get_job_summary('missing') is None


class TestRecovery:
    """Test crash recovery from the history file."""

    def test_orphaned_rows_are_requeued_and_finish(self, tmp_path):
        """Rows left running/queued by a crash are re-admitted and complete."""
        store = HistoryStore(tmp_path / "history.json")
        store.save([
            {'id': 'q1', 'url': URL, 'keyword': 'c', 'status': 'queued', 'createdAt': '2026-01-01T00:00:02+00:00'},
            {'id': 'r2', 'url': URL, 'keyword': 'b', 'status': 'running', 'createdAt': '2026-01-01T00:00:01+00:00'},
            {'id': 'r1', 'url': URL, 'keyword': 'a', 'status': 'running', 'createdAt': '2026-01-01T00:00:00+00:00'},
            {'id': 'd1', 'url': URL, 'keyword': 'd', 'status': 'completed'},
        ])
        engines = ControlledEngines()
        manager = JobManager(store, max_concurrent=2, engine_factory=engines)

        async def scenario():
            recovered = manager.recover_orphaned_jobs()
            await settle()
            # Oldest first: r1 and r2 run, q1 waits
            assert manager.get_job('q1')['status'] == 'queued'
            engines.release_all()
            await settle()
            engines.release_all()
            await settle()
            return recovered

        assert asyncio.run(scenario()) == 3
        statuses = {h['id']: h['status'] for h in store.load()}
        assert statuses == {'q1': 'completed', 'r2': 'completed', 'r1': 'completed', 'd1': 'completed'}
        assert manager.get_job('d1') is None

    def test_shutdown_leaves_rows_for_recovery(self, history_store, engines):
        """Cancelled runners keep their rows running so the next start recovers them."""
        manager = JobManager(history_store, engine_factory=engines)

        async def scenario():
            created = manager.create_job(URL, "sunset")
            await settle()
            await manager.shutdown()
            return created['jobId']

        job_id = asyncio.run(scenario())
        assert history_store.find(job_id)['status'] == 'running'

        restarted = JobManager(history_store, engine_factory=ControlledEngines())

        async def recover():
            count = restarted.recover_orphaned_jobs()
            await restarted.shutdown()
            return count

        assert asyncio.run(recover()) == 1
