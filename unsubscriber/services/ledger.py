import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from unsubscriber.models import UnsubscribeAttempt, ATTEMPT_STATUSES

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    pass


class AttemptLedger:
    """Append-only record of unsubscribe attempts and their outcomes."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        email_id: int,
        url: Optional[str],
        status: str = "pending",
        attempted_at: Optional[datetime] = None,
    ) -> UnsubscribeAttempt:
        self._check_status(status)
        attempt = UnsubscribeAttempt(
            email_id=email_id,
            unsubscribe_url=url,
            status=status,
            attempted_at=attempted_at or datetime.utcnow(),
        )
        self.db.add(attempt)
        self.db.commit()
        self.db.refresh(attempt)
        logger.debug("Created unsubscribe attempt %s for email %s", attempt.id, email_id)
        return attempt

    def update(
        self,
        attempt_id: int,
        status: str,
        method: Optional[str] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> UnsubscribeAttempt:
        """
        Move an attempt to a new status.

        Terminal attempts are never rewritten; a retry creates a new row.
        """
        self._check_status(status)
        attempt = self.db.get(UnsubscribeAttempt, attempt_id)
        if attempt is None:
            raise LedgerError(f"Unknown unsubscribe attempt {attempt_id}")
        if attempt.is_terminal:
            raise LedgerError(
                f"Unsubscribe attempt {attempt_id} is already {attempt.status}"
            )

        attempt.status = status
        if method is not None:
            attempt.method = method
        if error_message is not None:
            attempt.error_message = error_message
        if attempt.is_terminal:
            attempt.completed_at = completed_at or datetime.utcnow()

        self.db.commit()
        self.db.refresh(attempt)
        logger.debug("Unsubscribe attempt %s is now %s", attempt_id, status)
        return attempt

    def latest_for(self, email_id: int) -> Optional[UnsubscribeAttempt]:
        return (
            self.db.query(UnsubscribeAttempt)
            .filter(UnsubscribeAttempt.email_id == email_id)
            .order_by(UnsubscribeAttempt.attempted_at.desc(), UnsubscribeAttempt.id.desc())
            .first()
        )

    def list_for(self, email_id: int) -> list[UnsubscribeAttempt]:
        return (
            self.db.query(UnsubscribeAttempt)
            .filter(UnsubscribeAttempt.email_id == email_id)
            .order_by(UnsubscribeAttempt.attempted_at.desc(), UnsubscribeAttempt.id.desc())
            .all()
        )

    def _check_status(self, status: str) -> None:
        if status not in ATTEMPT_STATUSES:
            raise LedgerError(f"Invalid attempt status: {status}")
