from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from typing import Optional
from urllib.parse import urlparse
import json
import logging
import asyncio
import socket
import time
import re

from api.config import settings
from scrapers.base import JobStatus
from scrapers.config import list_adapters
from scrapers.engine import ScrapeOptions
from scrapers.history import HistoryStore
from scrapers.manager import JobManager
from pydantic import BaseModel

VERSION = "1.0.0"

# Setup logging directory
settings.log_dir.mkdir(parents=True, exist_ok=True)


# Custom formatter to strip ANSI color codes from file logs
class ColorStripFormatter(logging.Formatter):
    """Formatter that strips ANSI color codes from log messages."""
    ansi_escape = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')

    def format(self, record):
        message = super().format(record)
        return self.ansi_escape.sub('', message)


# Setup logging with color support for console, stripped for file
file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
file_handler.setFormatter(ColorStripFormatter(settings.log_format))

console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter(settings.log_format))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[file_handler, console_handler],
    force=True  # Override any existing configuration
)

# Per-job engine loggers live under 'scraper'; give them their own handlers
# so each message appears once
scraper_logger = logging.getLogger('scraper')
scraper_logger.propagate = False
if not scraper_logger.handlers:
    scraper_file_handler = logging.FileHandler(settings.log_file, encoding='utf-8')
    scraper_file_handler.setFormatter(ColorStripFormatter(settings.log_format))
    scraper_logger.addHandler(scraper_file_handler)

    scraper_console_handler = logging.StreamHandler()
    scraper_console_handler.setFormatter(logging.Formatter(settings.log_format))
    scraper_logger.addHandler(scraper_console_handler)
scraper_logger.setLevel(getattr(logging, settings.log_level.upper()))

logger = logging.getLogger(__name__)


# Filter to suppress noisy polling endpoint access logs
class PollingEndpointFilter(logging.Filter):
    # Endpoints that poll frequently and clutter logs
    SUPPRESSED_ENDPOINTS = ['/api/health', '/api/jobs']

    def filter(self, record):
        try:
            msg = record.getMessage()
        except Exception:
            msg = str(record.msg)
        for endpoint in self.SUPPRESSED_ENDPOINTS:
            if endpoint in msg:
                return False
        return True


# Apply filter to uvicorn access logger at module load time
uvicorn_access_logger = logging.getLogger("uvicorn.access")
uvicorn_access_logger.addFilter(PollingEndpointFilter())


def build_job_manager() -> JobManager:
    """Job manager wired to the configured history file and scrape options."""
    return JobManager(
        HistoryStore(settings.history_file),
        max_concurrent=settings.max_concurrent,
        options=ScrapeOptions.from_settings(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info("PicHarvest Backend Starting Up")
    logger.info("=" * 60)
    logger.info(f"Log file: {settings.log_file}")
    logger.info(f"Downloads: {settings.downloads_dir}")
    logger.info(f"History: {settings.history_file}")

    # Tests inject their own manager before startup
    manager = getattr(app.state, "job_manager", None)
    if manager is None:
        manager = build_job_manager()
        app.state.job_manager = manager
    app.state.started_at = time.time()

    recovered = manager.recover_orphaned_jobs()
    if recovered:
        logger.info(f"Recovered {recovered} interrupted job(s)")
    logger.info("Backend ready to accept requests")

    yield  # Application runs here

    # Shutdown
    logger.info("=" * 60)
    logger.info("PicHarvest Backend Shutting Down")
    logger.info("=" * 60)
    try:
        await asyncio.wait_for(manager.shutdown(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Job shutdown timed out, forcing exit")
    logger.info("Shutdown complete")


app = FastAPI(
    title="PicHarvest API",
    version=VERSION,
    lifespan=lifespan
)

# Note: allow_credentials must be False when allow_origins is ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_manager(request: Request) -> JobManager:
    """Dependency returning the application's job manager."""
    return request.app.state.job_manager


class ScrapeRequest(BaseModel):
    url: Optional[str] = None
    keyword: Optional[str] = None


def is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def sse_message(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    """Return empty response for favicon requests"""
    return Response(status_code=204)


@app.get("/")
async def root():
    return {"message": "PicHarvest API", "version": VERSION}


@app.get("/api/health")
async def health(request: Request, manager: JobManager = Depends(get_manager)):
    stats = manager.get_stats()
    started_at = getattr(request.app.state, "started_at", time.time())
    return {
        "status": "ok",
        "version": VERSION,
        "uptime": int(time.time() - started_at),
        "hostname": socket.gethostname(),
        "jobs": {
            "running": stats["running"],
            "queued": stats["queued"],
            "completed": stats["completed"],
            "total": stats["total"],
        },
    }


@app.get("/api/adapters")
async def get_adapters():
    return list_adapters()


@app.post("/api/scrape")
async def create_scrape(body: ScrapeRequest, manager: JobManager = Depends(get_manager)):
    """Create a scrape job. Returns 409 with the live job's id for duplicates."""
    url = (body.url or "").strip()
    if not url:
        raise HTTPException(status_code=400, detail="URL is required")
    if not is_valid_url(url):
        raise HTTPException(status_code=400, detail="Invalid URL")

    keyword = (body.keyword or "").strip()
    result = manager.create_job(url, keyword)
    if result.get("error") == "duplicate":
        return JSONResponse(status_code=409, content=result)
    logger.info(f"Scrape requested: {url} (keyword={keyword!r}) -> {result['jobId']}")
    return result


@app.get("/api/progress/{job_id}")
async def job_progress(job_id: str, request: Request, manager: JobManager = Depends(get_manager)):
    """
    Server-sent event stream of a job's progress.

    Past events are replayed first; for a finished job the stream then ends,
    otherwise live events follow until the job closes.
    """
    job = manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    past_events = manager.get_job_events(job_id)
    finished = JobStatus(job["status"]).is_terminal
    queue: asyncio.Queue = asyncio.Queue()
    # Subscribe in the same step as the replay snapshot so nothing falls between
    unsubscribe = None if finished else manager.subscribe_to_job(job_id, queue.put_nowait)

    async def stream():
        try:
            yield "retry: 2000\n\n"
            for event in past_events:
                yield sse_message(event)
            if finished:
                return
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                if event.get("type") == "close":
                    break
                yield sse_message(event)
        finally:
            if unsubscribe:
                unsubscribe()

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/jobs")
async def get_jobs(manager: JobManager = Depends(get_manager)):
    return manager.get_jobs()


@app.get("/api/jobs/{job_id}")
async def get_job(job_id: str, manager: JobManager = Depends(get_manager)):
    job = manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/api/jobs/{job_id}/summary", response_class=PlainTextResponse)
async def get_job_summary(job_id: str, manager: JobManager = Depends(get_manager)):
    summary = manager.get_job_summary(job_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return summary


@app.delete("/api/jobs/{job_id}")
async def delete_job(job_id: str, manager: JobManager = Depends(get_manager)):
    result = manager.delete_job(job_id)
    if result.get("error") == "not_found":
        raise HTTPException(status_code=404, detail="Job not found")
    return result


@app.post("/api/abort/{job_id}")
async def abort_job(job_id: str, manager: JobManager = Depends(get_manager)):
    result = manager.abort_job(job_id)
    if result.get("error") == "not_found":
        raise HTTPException(status_code=404, detail="Job not found")
    return result


@app.get("/api/history")
async def get_history(manager: JobManager = Depends(get_manager)):
    return manager.get_history()


@app.delete("/api/history")
async def clear_history(manager: JobManager = Depends(get_manager)):
    manager.clear_history()
    return {"status": "cleared"}


if __name__ == "__main__":
    import uvicorn

    # Configure uvicorn for faster shutdown
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        access_log=True,
        log_config=None,  # Use default but our filter will handle it
        timeout_keep_alive=5,  # Reduce keep-alive timeout
        timeout_graceful_shutdown=5.0,  # Graceful shutdown timeout (5 seconds)
    )
