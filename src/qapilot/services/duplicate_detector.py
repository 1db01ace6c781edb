from __future__ import annotations

import re
from typing import FrozenSet, Iterable, List, Optional, Sequence

from ..domain.models import DuplicateCandidate, PriorTicket

# Scoring weights; they sum to 1.0 so scores stay in [0, 1].
SUMMARY_WEIGHT = 0.7
MODULE_WEIGHT = 0.2
ISSUE_TYPE_WEIGHT = 0.1

STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "the", "and", "for", "with", "when", "not", "are", "was", "were", "can", "cannot",
        "does", "doesnt", "into", "from", "after", "before", "this", "that", "then", "than",
        "while", "there", "their", "has", "have", "had", "app", "user", "page", "screen",
        "issue", "error", "bug", "unable", "able",
    }
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokens(text: str) -> FrozenSet[str]:
    """Lower-cased word tokens with stop words and short tokens removed."""
    cleaned = (text or "").lower().replace("'", "")
    return frozenset(t for t in _TOKEN_RE.findall(cleaned) if len(t) >= 3 and t not in STOP_WORDS)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


def summary_similarity(a: str, b: str) -> float:
    ta, tb = tokens(a), tokens(b)
    if not ta and not tb:
        return 1.0 if (a or "").strip().lower() == (b or "").strip().lower() else 0.0
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


class DuplicateDetector:
    """Deterministic near-duplicate scoring for ticket summaries.

    Score = 0.7 * token Jaccard of the summaries + 0.2 if the modules match
    + 0.1 if the issue types match. Only the ``window`` most recent priors are
    compared; results below ``floor`` are dropped and the rest are ranked by
    score descending, then by key.
    """

    def __init__(self, window: int = 50, floor: float = 0.35, threshold: float = 0.75) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        self.window = window
        self.floor = floor
        self.threshold = threshold

    def score(
        self,
        summary: str,
        priors: Sequence[PriorTicket],
        module: Optional[str] = None,
        issue_type: Optional[str] = None,
    ) -> List[DuplicateCandidate]:
        ranked: List[DuplicateCandidate] = []
        for prior in self._recent(priors):
            value = SUMMARY_WEIGHT * summary_similarity(summary, prior.summary)
            if _same(module, prior.module):
                value += MODULE_WEIGHT
            if _same(issue_type, prior.issue_type):
                value += ISSUE_TYPE_WEIGHT
            value = round(min(value, 1.0), 4)
            if value >= self.floor:
                ranked.append(
                    DuplicateCandidate(key=prior.key, summary=prior.summary, status=prior.status, score=value, url=prior.url)
                )
        ranked.sort(key=lambda c: (-c.score, c.key))
        return ranked

    def likely(self, candidates: Iterable[DuplicateCandidate]) -> List[DuplicateCandidate]:
        return [c for c in candidates if c.score >= self.threshold]

    def _recent(self, priors: Sequence[PriorTicket]) -> List[PriorTicket]:
        def recency(item):
            idx, prior = item
            if prior.created_at is None:
                return (1, 0.0, idx)
            return (0, -prior.created_at.timestamp(), idx)

        # newest first when timestamps exist, otherwise keep the caller's order
        ordered = sorted(enumerate(priors), key=recency)
        return [p for _, p in ordered[: self.window]]
