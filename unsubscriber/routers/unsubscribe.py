from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from unsubscriber.database import get_db
from unsubscriber.models import Email, UnsubscribeJob
from unsubscriber.schemas import (
    BulkEmailAction,
    EnqueueResult,
    AttemptResponse,
    JobResponse,
)
from unsubscriber.services.jobs import UnsubscribeJobRunner, get_job_runner
from unsubscriber.services.ledger import AttemptLedger

router = APIRouter(prefix="/api/unsubscribe", tags=["unsubscribe"])


@router.post("", response_model=list[EnqueueResult])
async def bulk_unsubscribe(
    action: BulkEmailAction,
    db: Session = Depends(get_db),
    runner: UnsubscribeJobRunner = Depends(get_job_runner),
):
    """Queue an unsubscribe job for each known email. Results land in the ledger."""
    emails = db.query(Email).filter(Email.id.in_(action.email_ids)).all()

    if not emails:
        raise HTTPException(status_code=404, detail="No emails found")

    results = []
    for email in emails:
        job = runner.enqueue(email.id)
        results.append(EnqueueResult(email_id=email.id, job_id=job.id, status=job.status))

    return results


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, db: Session = Depends(get_db)):
    job = db.get(UnsubscribeJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/{email_id}/attempts", response_model=list[AttemptResponse])
async def list_attempts(email_id: int, db: Session = Depends(get_db)):
    """All unsubscribe attempts for an email, newest first."""
    if not db.get(Email, email_id):
        raise HTTPException(status_code=404, detail="Email not found")
    return AttemptLedger(db).list_for(email_id)


@router.get("/{email_id}/latest", response_model=AttemptResponse)
async def latest_attempt(email_id: int, db: Session = Depends(get_db)):
    """
    Latest unsubscribe attempt for an email.

    On failure the response still carries unsubscribe_url so the client can
    offer the link for a manual unsubscribe.
    """
    attempt = AttemptLedger(db).latest_for(email_id)
    if not attempt:
        raise HTTPException(status_code=404, detail="No unsubscribe attempts for this email")
    return attempt
