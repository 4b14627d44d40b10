"""
Durable unsubscribe job queue.

Jobs are rows in `unsubscribe_jobs`. A single asyncio poll loop claims due
jobs and runs each one under the job pool semaphore; browser sessions are
limited separately by the browser module.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from unsubscriber.config import get_settings
from unsubscriber.database import SessionLocal
from unsubscriber.models import TERMINAL_ATTEMPT_STATUSES, UnsubscribeAttempt, UnsubscribeJob
from unsubscriber.services.ledger import AttemptLedger
from unsubscriber.services.messages import MessageStore
from unsubscriber.services.unsubscribe import (
    UnsubscribeEngine,
    UnsubscribeOutcome,
    UnsubscribeTarget,
)

logger = logging.getLogger(__name__)

# Outcomes that another run cannot change
NON_RETRIABLE = {"no_unsubscribe_link", "email_not_found"}


class UnsubscribeJobRunner:
    def __init__(
        self,
        session_factory=None,
        engine: Optional[UnsubscribeEngine] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory or SessionLocal
        self._engine = engine
        self.concurrency = concurrency or settings.unsubscribe_concurrency
        self.poll_interval = poll_interval or settings.job_poll_interval

        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._slots: Optional[asyncio.Semaphore] = None
        self._in_flight: set = set()

    @property
    def engine(self) -> UnsubscribeEngine:
        if self._engine is None:
            self._engine = UnsubscribeEngine()
        return self._engine

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, email_id: int) -> UnsubscribeJob:
        """Persist a job for the email and wake the worker loop."""
        with self.session_factory() as db:
            job = UnsubscribeJob(
                email_id=email_id,
                status="queued",
                attempts=0,
                max_attempts=self.settings.unsubscribe_max_attempts,
                run_after=datetime.utcnow(),
            )
            db.add(job)
            db.commit()
            db.refresh(job)

        logger.info("Queued unsubscribe job %s for email %s", job.id, email_id)
        if self._wake is not None:
            self._wake.set()
        return job

    async def perform(self, email_id: int) -> UnsubscribeOutcome:
        """Run one unsubscribe for an email and record it in the ledger."""
        logger.info("Processing unsubscribe for email %s", email_id)

        with self.session_factory() as db:
            store = MessageStore(db)
            ledger = AttemptLedger(db)

            if store.get(email_id) is None:
                logger.warning("Email %s no longer exists", email_id)
                return UnsubscribeOutcome.failed("email_not_found")

            url = store.get_unsubscribe_link(email_id)
            if not url:
                logger.warning("No unsubscribe link found for email %s", email_id)
                attempt = ledger.create(email_id, None)
                ledger.update(attempt.id, "failed", error_message="no_unsubscribe_link")
                return UnsubscribeOutcome.failed("no_unsubscribe_link", "Email has no unsubscribe link")

            attempt = ledger.create(email_id, url)
            ledger.update(attempt.id, "processing")

            try:
                outcome = await self.engine.attempt(UnsubscribeTarget(url=url, source_message_id=email_id))
            except asyncio.CancelledError:
                logger.warning("Unsubscribe for email %s cancelled mid-attempt", email_id)
                ledger.update(attempt.id, "failed", error_message="cancelled")
                raise
            except Exception as e:
                logger.exception("Unsubscribe engine crashed for email %s", email_id)
                outcome = UnsubscribeOutcome.failed("unexpected_error", str(e))

            if outcome.success:
                ledger.update(attempt.id, "success", method=outcome.method)
                logger.info("Successfully unsubscribed from email %s via %s", email_id, outcome.method)
            else:
                ledger.update(attempt.id, "failed", error_message=outcome.method)
                logger.error("Failed to unsubscribe from email %s: %s", email_id, outcome.detail)

            return outcome

    async def run_job(self, job_id: int) -> Optional[UnsubscribeOutcome]:
        with self.session_factory() as db:
            job = db.get(UnsubscribeJob, job_id)
            if job is None:
                logger.warning("Unsubscribe job %s disappeared", job_id)
                return None
            email_id = job.email_id

        try:
            outcome = await self.perform(email_id)
        except Exception as e:
            logger.exception("Unsubscribe job %s crashed", job_id)
            outcome = UnsubscribeOutcome.failed("unexpected_error", str(e))

        self._finish_job(job_id, outcome)
        return outcome

    def _finish_job(self, job_id: int, outcome: UnsubscribeOutcome) -> None:
        with self.session_factory() as db:
            job = db.get(UnsubscribeJob, job_id)
            if job is None:
                return

            if outcome.success:
                job.status = "done"
                job.last_error = None
            elif outcome.method in NON_RETRIABLE or job.attempts >= job.max_attempts:
                job.status = "failed"
                job.last_error = outcome.method
            else:
                delay = self.settings.retry_backoff_seconds * (2 ** (job.attempts - 1))
                job.status = "queued"
                job.last_error = outcome.method
                job.run_after = datetime.utcnow() + timedelta(seconds=delay)
                logger.info(
                    "Retrying unsubscribe job %s in %.0fs (attempt %s of %s)",
                    job_id, delay, job.attempts + 1, job.max_attempts,
                )
            db.commit()

    def _claim_due_jobs(self, limit: int) -> list[int]:
        with self.session_factory() as db:
            jobs = (
                db.query(UnsubscribeJob)
                .filter(
                    UnsubscribeJob.status == "queued",
                    UnsubscribeJob.run_after <= datetime.utcnow(),
                )
                .order_by(UnsubscribeJob.run_after, UnsubscribeJob.id)
                .limit(limit)
                .all()
            )
            for job in jobs:
                job.status = "running"
                job.attempts += 1
            db.commit()
            return [job.id for job in jobs]

    def _requeue_stale(self) -> int:
        """
        Jobs left running by a previous process go back to the queue.

        Their open attempt rows are closed as interrupted; the re-run writes
        a new row.
        """
        with self.session_factory() as db:
            stale = db.query(UnsubscribeJob).filter(UnsubscribeJob.status == "running").all()
            email_ids = {job.email_id for job in stale}
            for job in stale:
                job.status = "queued"
                job.attempts = max(job.attempts - 1, 0)
            db.commit()

            if email_ids:
                ledger = AttemptLedger(db)
                open_attempts = (
                    db.query(UnsubscribeAttempt)
                    .filter(
                        UnsubscribeAttempt.email_id.in_(email_ids),
                        UnsubscribeAttempt.status.notin_(TERMINAL_ATTEMPT_STATUSES),
                    )
                    .all()
                )
                for attempt in open_attempts:
                    ledger.update(attempt.id, "failed", error_message="interrupted")
        if stale:
            logger.info("Re-queued %d interrupted unsubscribe jobs", len(stale))
        return len(stale)

    async def _run_with_slot(self, job_id: int) -> None:
        async with self._get_slots():
            await self.run_job(job_id)

    def _get_slots(self) -> asyncio.Semaphore:
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.concurrency)
        return self._slots

    async def run_pending(self) -> int:
        """Claim due jobs up to free pool capacity and start them."""
        free = self.concurrency - len(self._in_flight)
        if free <= 0:
            return 0

        job_ids = self._claim_due_jobs(free)
        for job_id in job_ids:
            task = asyncio.create_task(self._run_with_slot(job_id))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(job_ids)

    async def drain(self) -> None:
        """Run due jobs until none are left or running."""
        while True:
            started = await self.run_pending()
            if self._in_flight:
                await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            elif not started:
                return

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_pending()
            except Exception:
                logger.exception("Unsubscribe job loop error")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def start(self) -> None:
        if self.running:
            return
        self._requeue_stale()
        self._wake = asyncio.Event()
        self._slots = asyncio.Semaphore(self.concurrency)
        self._task = asyncio.create_task(self._loop())
        logger.info("Unsubscribe job runner started (concurrency %d)", self.concurrency)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        pending = [self._task, *self._in_flight]
        for task in pending[1:]:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._task = None
        self._wake = None
        logger.info("Unsubscribe job runner stopped")


_runner: Optional[UnsubscribeJobRunner] = None


def get_job_runner() -> UnsubscribeJobRunner:
    global _runner
    if _runner is None:
        _runner = UnsubscribeJobRunner()
    return _runner
