import re
from typing import Optional


# Shared by one-click detection, legacy form POST confirmation and
# post-automation confirmation.
SUCCESS_PATTERNS = [
    re.compile(r"unsubscribed", re.IGNORECASE),
    re.compile(r"successfully removed", re.IGNORECASE),
    re.compile(r"will no longer receive", re.IGNORECASE),
    re.compile(r"preference.*updated", re.IGNORECASE),
    re.compile(r"you have been removed", re.IGNORECASE),
    re.compile(r"email.*removed", re.IGNORECASE),
]


def looks_like_success(text: Optional[str]) -> bool:
    """Return True if the text contains an unsubscribe confirmation."""
    if not text or not isinstance(text, str):
        return False
    return any(pattern.search(text) for pattern in SUCCESS_PATTERNS)
