"""Attribution of filesystem changes to unbridged agent processes.

Pure functions with no hidden state: every input the score depends on
is passed in, so tie-breaking can be tested exhaustively.

Scoring, for a changed path ``p``:

- +3 when the candidate's process holds ``p`` open.
- +2 to every candidate whose working directory is a path prefix of
  ``p`` with the longest such prefix among all candidates.
- +1 to the single most recently seen candidate (no award on a tie).

Highest total wins, the earliest first-seen candidate breaks ties, and
a best total of zero attributes nothing.
"""
from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath

from .models import ObserverCandidate

OPEN_FILE_POINTS = 3
PROXIMITY_POINTS = 2
RECENCY_POINTS = 1


@dataclass(frozen=True)
class CandidateScore:
    candidate: ObserverCandidate
    total: int
    holds_open: bool
    proximity: bool
    recency: bool


def prefix_depth(working_directory: str | None, changed_path: str) -> int:
    """Component count of *working_directory* if it contains *changed_path*, else -1."""
    if not working_directory:
        return -1
    base = PurePosixPath(os.path.normpath(working_directory))
    target = PurePosixPath(os.path.normpath(changed_path))
    if base.parts != target.parts[: len(base.parts)]:
        return -1
    return len(base.parts)


def _longest_prefix(candidates: Iterable[ObserverCandidate], changed_path: str) -> int:
    return max((prefix_depth(c.working_directory, changed_path) for c in candidates), default=-1)


def _unique_most_recent(candidates: Sequence[ObserverCandidate]) -> int | None:
    if not candidates:
        return None
    latest = max(c.last_seen_time for c in candidates)
    winners = [c for c in candidates if c.last_seen_time == latest]
    return winners[0].pid if len(winners) == 1 else None


def score(
    candidate: ObserverCandidate,
    changed_path: str,
    peers: Sequence[ObserverCandidate],
    holds_open: bool,
) -> int:
    """Score one candidate against *peers* (which must include it)."""
    total = OPEN_FILE_POINTS if holds_open else 0
    depth = prefix_depth(candidate.working_directory, changed_path)
    if depth >= 0 and depth == _longest_prefix(peers, changed_path):
        total += PROXIMITY_POINTS
    if _unique_most_recent(peers) == candidate.pid:
        total += RECENCY_POINTS
    return total


def score_candidates(
    candidates: Sequence[ObserverCandidate],
    changed_path: str,
    open_holders: Iterable[int] = (),
) -> list[CandidateScore]:
    """Score every candidate; result order follows *candidates*."""
    holders = set(open_holders)
    longest = _longest_prefix(candidates, changed_path)
    recent_pid = _unique_most_recent(candidates)
    scores: list[CandidateScore] = []
    for c in candidates:
        holds_open = c.pid in holders
        depth = prefix_depth(c.working_directory, changed_path)
        proximity = depth >= 0 and depth == longest
        recency = recent_pid == c.pid
        total = (
            (OPEN_FILE_POINTS if holds_open else 0)
            + (PROXIMITY_POINTS if proximity else 0)
            + (RECENCY_POINTS if recency else 0)
        )
        scores.append(CandidateScore(c, total, holds_open, proximity, recency))
    return scores


def pick_candidate(
    candidates: Sequence[ObserverCandidate],
    changed_path: str,
    open_holders: Iterable[int] = (),
) -> ObserverCandidate | None:
    """Return the best-scoring candidate, or None when nobody scores above zero."""
    scored = score_candidates(candidates, changed_path, open_holders)
    if not scored:
        return None
    best = max(s.total for s in scored)
    if best <= 0:
        return None
    tied = [s.candidate for s in scored if s.total == best]
    return min(tied, key=lambda c: (c.first_seen_time, c.pid))
