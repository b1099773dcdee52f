"""Derive a session title from the first assistant reply."""

from __future__ import annotations

import re

from models.chat_models import DEFAULT_TITLE

MAX_TITLE_LENGTH = 40

_MARKUP = re.compile(r"^[#>\-\s]+|[*_`]+")


def derive_title(reply: str, max_length: int = MAX_TITLE_LENGTH) -> str:
    """Return the first non-empty line of `reply`, without markdown markup."""
    for line in (reply or "").splitlines():
        cleaned = _MARKUP.sub("", line).strip()
        if not cleaned:
            continue
        if len(cleaned) > max_length:
            return cleaned[: max_length - 1].rstrip() + "…"
        return cleaned
    return DEFAULT_TITLE
