"""
unsubscriber API.

Run as a single process (`uvicorn unsubscriber.main:app --workers 1`). The
browser session limit and the job worker live in this process, so extra
workers would each get their own browser slot and poll loop.
"""
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from unsubscriber.database import init_db
from unsubscriber.config import get_settings
from unsubscriber.routers import unsubscribe
from unsubscriber.services.browser import session_limiter
from unsubscriber.services.jobs import get_job_runner

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    runner = None
    if settings.job_worker_enabled:
        runner = get_job_runner()
        runner.start()
    else:
        logger.info("Unsubscribe job worker disabled")
    yield
    if runner is not None:
        await runner.stop()


app = FastAPI(
    title="unsubscriber",
    description="Automatic mailing-list unsubscribe service",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(unsubscribe.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "browser_sessions": session_limiter.get_stats()}
