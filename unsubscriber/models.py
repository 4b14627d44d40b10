from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from unsubscriber.database import Base


ATTEMPT_STATUSES = ("pending", "processing", "success", "failed")
TERMINAL_ATTEMPT_STATUSES = ("success", "failed")

JOB_STATUSES = ("queued", "running", "done", "failed")


class Email(Base):
    """Minimal view of an ingested message; ingestion itself lives elsewhere."""

    __tablename__ = "emails"

    id = Column(Integer, primary_key=True, index=True)
    gmail_message_id = Column(String(255), nullable=False, index=True)
    subject = Column(String(500))
    sender = Column(String(255))
    sender_email = Column(String(255))
    body_text = Column(Text)
    body_html = Column(Text)
    unsubscribe_link = Column(Text)  # Extracted at ingestion (List-Unsubscribe or body)
    created_at = Column(DateTime, default=datetime.utcnow)

    unsubscribe_attempts = relationship(
        "UnsubscribeAttempt", back_populates="email", cascade="all, delete-orphan"
    )


class UnsubscribeAttempt(Base):
    __tablename__ = "unsubscribe_attempts"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")
    method = Column(String(50))
    unsubscribe_url = Column(Text)
    error_message = Column(Text)
    attempted_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    email = relationship("Email", back_populates="unsubscribe_attempts")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT_STATUSES


class UnsubscribeJob(Base):
    __tablename__ = "unsubscribe_jobs"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="queued", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=2)
    run_after = Column(DateTime, default=datetime.utcnow)
    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
