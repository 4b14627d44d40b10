import re
from typing import Optional

from bs4 import BeautifulSoup
from sqlalchemy.orm import Session

from unsubscriber.models import Email


def find_unsubscribe_link(body_html: Optional[str], body_text: Optional[str]) -> Optional[str]:
    """Find an unsubscribe link in an email body."""
    patterns = [
        r'href=["\']([^"\']*unsubscribe[^"\']*)["\']',
        r'href=["\']([^"\']*opt.?out[^"\']*)["\']',
        r'href=["\']([^"\']*remove[^"\']*)["\']',
    ]

    content = body_html or body_text or ""

    for pattern in patterns:
        matches = re.findall(pattern, content, re.IGNORECASE)
        if matches:
            return matches[0]

    if body_html:
        soup = BeautifulSoup(body_html, "html.parser")
        for link in soup.find_all("a"):
            text = link.get_text().lower()
            if "unsubscribe" in text or "opt out" in text or "opt-out" in text:
                href = link.get("href")
                if href:
                    return href

    if body_text:
        match = re.search(r"https?://\S*(?:unsubscribe|opt.?out)\S*", body_text, re.IGNORECASE)
        if match:
            return match.group(0).rstrip(".,;)>\"'")

    return None


class MessageStore:
    """Read-only view of ingested messages used by the unsubscribe jobs."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, email_id: int) -> Optional[Email]:
        return self.db.get(Email, email_id)

    def get_unsubscribe_link(self, email_id: int) -> Optional[str]:
        """Return an http(s) unsubscribe URL for the email, or None."""
        email = self.get(email_id)
        if email is None:
            return None
        if email.unsubscribe_link:
            link = _http_link(email.unsubscribe_link)
            if link:
                return link
        return _http_link(find_unsubscribe_link(email.body_html, email.body_text))


def _http_link(value: Optional[str]) -> Optional[str]:
    # List-Unsubscribe style values look like "<mailto:...>, <https://...>"
    if not value:
        return None
    candidates = re.findall(r"<([^>]+)>", value) or [value]
    for candidate in candidates:
        candidate = candidate.strip()
        if candidate.lower().startswith(("http://", "https://")):
            return candidate
    return None
