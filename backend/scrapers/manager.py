"""
Job Manager - schedules scrape jobs and fans out their progress.

Provides admission control (at most max_concurrent running jobs, FIFO
queue for the rest), the one-directional job state machine, durable
history, per-job publish/subscribe and crash recovery.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional
import logging

from .base import (
    CLOSE_EVENT,
    CancellationToken,
    Colors,
    EventType,
    JobStatus,
    ProgressEvent,
)
from .engine import ScrapeOptions, ScraperEngine
from .history import HistoryStore, utc_now

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict], None]

SUMMARY_LABELS = {
    JobStatus.QUEUED: 'Queued',
    JobStatus.RUNNING: 'Downloading',
    JobStatus.COMPLETED: 'Completed',
    JobStatus.FAILED: 'Failed',
    JobStatus.ABORTED: 'Aborted',
}


@dataclass
class Job:
    """In-memory state of one job."""
    id: str
    url: str
    keyword: str = ''
    status: JobStatus = JobStatus.QUEUED
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    events: List[dict] = field(default_factory=list)
    last_event: Optional[dict] = None
    result: Optional[dict] = None
    error: Optional[str] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    task: Optional[asyncio.Task] = None
    finished: bool = False  # terminal event received from the engine

    def to_history(self) -> dict:
        return {
            'id': self.id,
            'url': self.url,
            'keyword': self.keyword,
            'status': self.status.value,
            'createdAt': self.created_at,
            'startedAt': self.started_at,
            'completedAt': self.completed_at,
            'result': self.result,
            'error': self.error,
        }

    def to_dict(self) -> dict:
        data = self.to_history()
        data['lastEvent'] = self.last_event
        return data


def _elapsed_seconds(start: str, end: Optional[str]) -> int:
    started = datetime.fromisoformat(start)
    finished = datetime.fromisoformat(end) if end else datetime.now(timezone.utc)
    return max(0, int((finished - started).total_seconds()))


class JobManager:
    """
    Owns every job of the process.

    Usage:
        manager = JobManager(HistoryStore(path), max_concurrent=2, options=options)
        manager.recover_orphaned_jobs()

        created = manager.create_job('https://example.com', 'sunset')
        unsubscribe = manager.subscribe_to_job(created['jobId'], print)

    create_job schedules work on the running event loop, so it must be
    called from inside one.
    """

    def __init__(
        self,
        history: HistoryStore,
        max_concurrent: int = 2,
        options: Optional[ScrapeOptions] = None,
        engine_factory: Callable = ScraperEngine,
    ):
        """
        Initialize the job manager.

        Args:
            history: Durable history store
            max_concurrent: Maximum number of simultaneously running jobs
            options: Scrape options handed to every engine
            engine_factory: Callable (options=, job_id=) -> engine with an async scrape()
        """
        self.history = history
        self.max_concurrent = max_concurrent
        self.options = options or ScrapeOptions()
        self.engine_factory = engine_factory
        self.jobs: Dict[str, Job] = {}
        self.queue: List[str] = []
        self._subscribers: Dict[str, List[Subscriber]] = {}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _running_count(self) -> int:
        return sum(1 for job in self.jobs.values() if job.status == JobStatus.RUNNING)

    def _admit(self, job: Job):
        if self._running_count() < self.max_concurrent:
            self._run_job(job)
        else:
            self.queue.append(job.id)
            logger.info(f"Job {job.id} queued (position {len(self.queue)})")

    def _process_queue(self):
        while self.queue and self._running_count() < self.max_concurrent:
            job = self.jobs.get(self.queue.pop(0))
            if job and job.status == JobStatus.QUEUED:
                self._run_job(job)

    def _run_job(self, job: Job):
        job.status = JobStatus.RUNNING
        job.started_at = utc_now()
        self.history.update(job.id, status=job.status.value, startedAt=job.started_at)
        logger.info(Colors.cyan(f"Job {job.id} started: {job.url} ({job.keyword or 'no keyword'})"))
        self._on_event(job, ProgressEvent(EventType.STATUS, {'message': 'Job started'}))
        job.task = asyncio.get_running_loop().create_task(self._runner(job))

    async def _runner(self, job: Job):
        try:
            engine = self.engine_factory(options=self.options, job_id=job.id)
            result = await engine.scrape(
                job.url,
                job.keyword,
                emit=lambda event: self._on_event(job, event),
                token=job.token,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Job {job.id} crashed: {e}")
            self._on_event(job, ProgressEvent(EventType.ERROR, {'message': str(e)}))
            return

        if job.finished:
            if not result.success and result.total and job.result is None:
                # Files saved before the failure stay on disk and are counted
                job.result = {
                    'total': result.total,
                    'folder': Path(result.folder).name if result.folder else '',
                    'duration': result.duration,
                }
                if self.jobs.get(job.id) is job:
                    self.history.upsert(job.to_history())
        else:
            # Engine returned without a terminal event
            if result.success:
                self._on_event(job, ProgressEvent(EventType.COMPLETE, {
                    'total': result.total,
                    'folder': Path(result.folder).name if result.folder else '',
                    'duration': result.duration,
                }))
            else:
                self._on_event(job, ProgressEvent(EventType.ERROR, {'message': result.error or 'Scrape failed'}))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _on_event(self, job: Job, event: ProgressEvent):
        if job.finished:
            return
        payload = event.to_dict()
        job.events.append(payload)
        job.last_event = payload
        self._notify_subscribers(job.id, payload)

        if not event.is_terminal:
            return
        job.finished = True
        if self.jobs.get(job.id) is not job:
            return  # deleted while running

        if event.type == EventType.COMPLETE:
            job.result = {
                'total': event.data.get('total', 0),
                'folder': event.data.get('folder', ''),
                'duration': event.data.get('duration', ''),
            }
        else:
            job.error = event.data.get('message')

        if job.status == JobStatus.ABORTED:
            # Late result of an aborted job: record it, keep the status
            self.history.upsert(job.to_history())
            return

        job.status = JobStatus.COMPLETED if event.type == EventType.COMPLETE else JobStatus.FAILED
        job.completed_at = utc_now()
        self.history.upsert(job.to_history())
        self._close_subscribers(job.id)
        if job.status == JobStatus.COMPLETED:
            logger.info(Colors.green(f"Job {job.id} completed: {job.result['total']} images"))
        else:
            logger.warning(Colors.red(f"Job {job.id} failed: {job.error}"))
        self._process_queue()

    def _notify_subscribers(self, job_id: str, payload: dict):
        for callback in list(self._subscribers.get(job_id, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.debug(f"Subscriber error for job {job_id}: {e}")

    def _close_subscribers(self, job_id: str):
        subscribers = self._subscribers.pop(job_id, [])
        for callback in subscribers:
            try:
                callback(dict(CLOSE_EVENT))
            except Exception as e:
                logger.debug(f"Subscriber close error for job {job_id}: {e}")

    def subscribe_to_job(self, job_id: str, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for future events of a job.

        The callback receives event dicts and finally {'type': 'close'}.

        Returns:
            Function that removes the callback
        """
        self._subscribers.setdefault(job_id, []).append(callback)

        def unsubscribe():
            subscribers = self._subscribers.get(job_id)
            if subscribers and callback in subscribers:
                subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_job(self, url: str, keyword: Optional[str] = None) -> dict:
        """
        Create a job, or point at the live job with the same url and keyword.

        Returns:
            {'jobId', 'status'} or {'error': 'duplicate', 'existingJobId'}
        """
        keyword = keyword or ''
        for existing in self.jobs.values():
            if existing.url == url and existing.keyword == keyword and not existing.status.is_terminal:
                return {'error': 'duplicate', 'existingJobId': existing.id}

        job = Job(id=uuid.uuid4().hex[:12], url=url, keyword=keyword)
        self.jobs[job.id] = job
        self.history.upsert(job.to_history())
        self._admit(job)
        return {'jobId': job.id, 'status': job.status.value}

    def abort_job(self, job_id: str) -> dict:
        """Request cooperative cancellation and mark the job aborted right away."""
        job = self.jobs.get(job_id)
        if not job:
            return {'error': 'not_found'}
        if job.status.is_terminal:
            return {'status': job.status.value}

        job.token.cancel()
        if job_id in self.queue:
            self.queue.remove(job_id)
        job.status = JobStatus.ABORTED
        job.completed_at = utc_now()
        self.history.upsert(job.to_history())
        self._close_subscribers(job_id)
        logger.info(Colors.yellow(f"Job {job_id} aborted"))
        self._process_queue()
        return {'status': 'aborted'}

    def delete_job(self, job_id: str) -> dict:
        """Abort if active, forget the job and drop its history row. Files stay on disk."""
        job = self.jobs.get(job_id)
        if not job:
            if self.history.remove(job_id):
                return {'status': 'deleted'}
            return {'error': 'not_found'}

        job.token.cancel()
        self._close_subscribers(job_id)
        if job_id in self.queue:
            self.queue.remove(job_id)
        del self.jobs[job_id]
        self.history.remove(job_id)
        logger.info(f"Job {job_id} deleted")
        self._process_queue()
        return {'status': 'deleted'}

    def get_job(self, job_id: str) -> Optional[dict]:
        job = self.jobs.get(job_id)
        return job.to_dict() if job else None

    def get_job_events(self, job_id: str) -> Optional[List[dict]]:
        job = self.jobs.get(job_id)
        return list(job.events) if job else None

    def get_jobs(self) -> List[dict]:
        """Live jobs, newest first."""
        return [job.to_history() for job in reversed(list(self.jobs.values()))]

    def get_history(self) -> List[dict]:
        """History rows with live job state laid over them."""
        rows = []
        for entry in self.history.load():
            job = self.jobs.get(entry.get('id'))
            rows.append(job.to_history() if job else entry)
        return rows

    def clear_history(self):
        """Drop every history row except those of live, unfinished jobs."""
        self.history.save([
            job.to_history()
            for job in reversed(list(self.jobs.values()))
            if not job.status.is_terminal
        ])

    def get_stats(self) -> dict:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status.value] += 1
        counts['total'] = len(self.jobs)
        return counts

    def get_job_summary(self, job_id: str) -> Optional[str]:
        """Plain-text status report; falls back to history for jobs no longer live."""
        job = self.jobs.get(job_id)
        if not job:
            entry = self.history.find(job_id)
            if not entry:
                return None
            status = entry.get('status', '')
            lines = [
                f"Status: {status.capitalize()}",
                f"Keyword: {entry.get('keyword') or 'none'}",
            ]
            if entry.get('result'):
                lines.append(f"Result: {entry['result']['total']} images ({entry['result']['duration']})")
            if entry.get('error'):
                lines.append(f"Error: {entry['error']}")
            return '\n'.join(lines) + '\n'

        lines = [
            f"Status: {SUMMARY_LABELS[job.status]}",
            f"Keyword: {job.keyword or 'none'}",
        ]
        event = job.last_event
        if event:
            if event['type'] == EventType.DOWNLOAD.value and event.get('total', 0) > 0:
                pct = round(event['current'] / event['total'] * 100)
                lines.append(f"Progress: {event['current']}/{event['total']} images ({pct}%)")
            elif event['type'] == EventType.SEARCH.value:
                lines.append(f"Search: {event['pages']} pages, {event['posts']} posts")
            elif event['type'] == EventType.POST.value:
                lines.append(f"Post: {event['current']}/{event['total']}")

        if job.started_at:
            minutes, seconds = divmod(_elapsed_seconds(job.started_at, job.completed_at), 60)
            lines.append(f"Elapsed: {f'{minutes}m ' if minutes else ''}{seconds}s")
        if job.result:
            lines.append(f"Result: {job.result['total']} images ({job.result['duration']})")
        if job.error:
            lines.append(f"Error: {job.error}")
        return '\n'.join(lines) + '\n'

    def recover_orphaned_jobs(self) -> int:
        """
        Re-admit every history row left running or queued by a crash.

        Jobs restart from scratch, oldest first.

        Returns:
            Number of recovered jobs
        """
        orphaned = [
            h for h in self.history.load()
            if h.get('status') in (JobStatus.RUNNING.value, JobStatus.QUEUED.value)
            and h.get('id') not in self.jobs
        ]
        if not orphaned:
            return 0

        logger.info(Colors.yellow(f"Recovering {len(orphaned)} interrupted job(s)..."))
        for entry in reversed(orphaned):
            job = Job(
                id=entry['id'],
                url=entry['url'],
                keyword=entry.get('keyword') or '',
                created_at=entry.get('createdAt') or utc_now(),
            )
            self.jobs[job.id] = job
            self.history.update(job.id, status=JobStatus.QUEUED.value, startedAt=None)
            logger.info(f"  -> Re-queued: \"{job.keyword}\" ({job.url})")
            self._admit(job)
        return len(orphaned)

    async def shutdown(self):
        """Cancel runner tasks; their history rows stay as they are for recovery."""
        tasks = [job.task for job in self.jobs.values() if job.task and not job.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Job manager stopped ({len(tasks)} running job(s) interrupted)")
