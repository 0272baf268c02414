"""Engagement score for a patient journey, bounded to [0, 100]."""

from __future__ import annotations

from typing import Any, Iterable

MAX_TOUCHPOINT_POINTS = 30
MAX_PAGE_VIEW_POINTS = 20
MAX_INTERACTION_POINTS = 25
CONVERSION_BONUS = 25
MAX_SCORE = 100


def calculate_engagement_score(touchpoints: Iterable[Any], *, converted: bool) -> float:
    """Score journey richness from touchpoint volume, page views, interactions and conversion.

    Touchpoints may be ORM rows or dicts with ``page_views`` / ``interactions``.
    """
    tps = list(touchpoints)
    total_page_views = sum(_count(tp, "page_views") for tp in tps)
    total_interactions = sum(_count(tp, "interactions") for tp in tps)

    score = min(len(tps) * 5, MAX_TOUCHPOINT_POINTS)
    score += min(total_page_views * 2, MAX_PAGE_VIEW_POINTS)
    score += min(total_interactions * 5, MAX_INTERACTION_POINTS)
    if converted:
        score += CONVERSION_BONUS
    return float(min(score, MAX_SCORE))


def _count(tp: Any, key: str) -> int:
    value = tp.get(key) if isinstance(tp, dict) else getattr(tp, key, None)
    return int(value or 0)
