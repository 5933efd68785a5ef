"""FAQ knowledge-base search.

Entries live in the ``faq_entries`` table (managed by the admin backend).
The search is a simple keyword score: every query word longer than two
characters that appears in the question or answer counts one point; a
query with no such word is matched as a whole phrase.  Results are ranked
by score, then by the entry's display order, and capped.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_agent.models import FaqEntry

logger = logging.getLogger(__name__)

MAX_RESULTS = 3

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _score(text: str, words: list[str], phrase: str) -> int:
    if not words:
        return 1 if phrase in text else 0
    return sum(1 for w in words if w in text)


def search_faq(
    session: Session,
    query: str,
    category: str | None = None,
    limit: int = MAX_RESULTS,
) -> list[FaqEntry]:
    """Return up to *limit* active entries matching *query*."""
    phrase = query.strip().lower()
    if not phrase:
        return []
    words = [w for w in dict.fromkeys(_WORD_RE.findall(phrase)) if len(w) > 2]

    stmt = select(FaqEntry).where(FaqEntry.active.is_(True))
    if category:
        stmt = stmt.where(FaqEntry.category == category.strip().lower())

    scored: list[tuple[int, FaqEntry]] = []
    for entry in session.scalars(stmt):
        score = _score(f"{entry.question} {entry.answer}".lower(), words, phrase)
        if score > 0:
            scored.append((score, entry))

    scored.sort(key=lambda pair: (-pair[0], pair[1].order, pair[1].id))
    logger.debug("FAQ search %r (category=%s): %d hit(s)", query, category, len(scored))
    return [entry for _, entry in scored[:limit]]
