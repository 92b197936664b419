"""Session title derived from the first user message."""
from __future__ import annotations

TITLE_MAX_LENGTH = 50


def generate_title(user_message: str) -> str:
    """Return the first line of the message as the conversation title.

    The line is kept exactly as typed. Lines longer than
    TITLE_MAX_LENGTH are cut to 47 characters plus "...".
    """
    first_line = (user_message or "").split("\n")[0]
    if len(first_line) <= TITLE_MAX_LENGTH:
        return first_line
    return first_line[:TITLE_MAX_LENGTH - 3] + "..."
