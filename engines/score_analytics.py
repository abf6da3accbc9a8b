"""Summary statistics over a learner's score records.

All averages are reported as whole percentages using round-half-up, so an
average of 84.5 is reported as 85. Per-subject and per-type groups keep the
order in which each group first appears in the input.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence

from schemas import Score, round_half_up

RECENT_TREND_SIZE = 10
STRENGTH_THRESHOLD = 85.0
WEAKNESS_THRESHOLD = 70.0
MAX_RANKED_SUBJECTS = 3


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _group_percentages(scores: Iterable[Score], key: str) -> Dict[str, List[int]]:
    groups: Dict[str, List[int]] = defaultdict(list)
    for score in scores:
        groups[getattr(score, key)].append(score.percentage)
    return groups


def empty_summary() -> Dict[str, Any]:
    return {
        "count": 0,
        "average": 0,
        "highest": 0,
        "lowest": 0,
        "subject_stats": [],
        "recent_trend": [],
        "type_stats": [],
    }


def subject_stats(scores: Iterable[Score]) -> List[Dict[str, Any]]:
    return [
        {
            "subject": subject,
            "average": round_half_up(_mean(values)),
            "count": len(values),
            "highest": max(values),
            "lowest": min(values),
        }
        for subject, values in _group_percentages(scores, "subject").items()
    ]


def type_stats(scores: Iterable[Score]) -> List[Dict[str, Any]]:
    return [
        {
            "type": score_type,
            "average": round_half_up(_mean(values)),
            "count": len(values),
        }
        for score_type, values in _group_percentages(scores, "type").items()
    ]


def chronological(scores: Iterable[Score]) -> List[Score]:
    return sorted(scores, key=lambda s: s.created_at)


def recent_trend(scores: Iterable[Score], size: int = RECENT_TREND_SIZE) -> List[Dict[str, Any]]:
    """Last ``size`` records, oldest first, numbered from 1."""
    window = chronological(scores)[-size:] if size > 0 else []
    return [
        {
            "index": position,
            "percentage": score.percentage,
            "subject": score.subject,
            "date": _iso(score.date),
        }
        for position, score in enumerate(window, start=1)
    ]


def summarize_scores(scores: Sequence[Score]) -> Dict[str, Any]:
    if not scores:
        return empty_summary()
    percentages = [score.percentage for score in scores]
    return {
        "count": len(scores),
        "average": round_half_up(_mean(percentages)),
        "highest": max(percentages),
        "lowest": min(percentages),
        "subject_stats": subject_stats(scores),
        "recent_trend": recent_trend(scores),
        "type_stats": type_stats(scores),
    }


def subject_averages(scores: Iterable[Score]) -> Dict[str, float]:
    """Unrounded mean percentage per subject."""
    return {
        subject: _mean(values)
        for subject, values in _group_percentages(scores, "subject").items()
    }


def subject_strengths(
    scores: Iterable[Score],
    threshold: float = STRENGTH_THRESHOLD,
    limit: int = MAX_RANKED_SUBJECTS,
) -> List[str]:
    averages = subject_averages(scores)
    ranked = sorted(
        (item for item in averages.items() if item[1] >= threshold),
        key=lambda item: item[1],
        reverse=True,
    )
    return [subject for subject, _ in ranked[:limit]]


def subject_weaknesses(
    scores: Iterable[Score],
    threshold: float = WEAKNESS_THRESHOLD,
    limit: int = MAX_RANKED_SUBJECTS,
) -> List[str]:
    averages = subject_averages(scores)
    ranked = sorted(
        (item for item in averages.items() if item[1] < threshold),
        key=lambda item: item[1],
    )
    return [subject for subject, _ in ranked[:limit]]


def _iso(value: datetime) -> str:
    return value.isoformat()
