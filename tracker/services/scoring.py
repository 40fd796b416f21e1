from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ..constants import (
    FETCH_FAILED,
    FETCH_PARTIAL,
    FETCH_SUCCESS,
    FETCH_UNSUPPORTED,
    LEVEL_HIGH,
    LEVEL_LOW,
    LEVEL_MEDIUM,
    TREND_DOWN,
    TREND_STABLE,
    TREND_UP,
)
from .metrics import Metrics, PlatformOutcome

RATING_DIVISOR = 20
RATING_CAP = 40
PROBLEMS_DIVISOR = 5
PROBLEMS_CAP = 40
CONTEST_WEIGHT = 2
CONTEST_CAP = 20

HIGH_THRESHOLD = 80
MEDIUM_THRESHOLD = 50

# Overall score movement smaller than this counts as stable.
SCORE_CHANGE_BAND = 5

ZERO_CHANGES = {
    "rating": 0,
    "max_rating": 0,
    "problems_solved": 0,
    "contests_participated": 0,
    "rank": 0,
}


def platform_score(metrics: Metrics) -> float:
    return (
        min(metrics.rating / RATING_DIVISOR, RATING_CAP)
        + min(metrics.problems_solved / PROBLEMS_DIVISOR, PROBLEMS_CAP)
        + min(metrics.contests_participated * CONTEST_WEIGHT, CONTEST_CAP)
    )


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def overall_score(scores: Iterable[float]) -> int:
    """Mean of the given platform scores, rounded half up; 0 when empty."""
    scores = list(scores)
    if not scores:
        return 0
    return round_half_up(sum(scores) / len(scores))


def performance_level(score: float) -> str:
    if score >= HIGH_THRESHOLD:
        return LEVEL_HIGH
    if score >= MEDIUM_THRESHOLD:
        return LEVEL_MEDIUM
    return LEVEL_LOW


def trend(change: float) -> str:
    if change > 0:
        return TREND_UP
    if change < 0:
        return TREND_DOWN
    return TREND_STABLE


def classify_score_change(change: float) -> str:
    if change > SCORE_CHANGE_BAND:
        return "improved"
    if change < -SCORE_CHANGE_BAND:
        return "declined"
    return "stable"


@dataclass
class PlatformComparison:
    platform: str
    identifier: str
    status: str
    metrics: Metrics | None
    previous: Metrics | None
    changes: dict[str, int]
    trend: str
    score: float | None = None
    error: str | None = None
    error_kind: str | None = None

    def as_stats(self) -> dict[str, Any]:
        """Frozen form stored inside a history entry."""
        stats = (self.metrics or Metrics()).as_dict()
        stats.update({
            "platform": self.platform,
            "platformId": self.identifier,
            "fetchStatus": self.status,
            "changes": dict(self.changes),
            "trend": self.trend,
            "score": round(self.score, 2) if self.score is not None else None,
        })
        if self.error:
            stats["error"] = self.error
        if self.warnings:
            stats["warnings"] = self.warnings
        return stats

    @property
    def warnings(self) -> list[str]:
        return list(self.metrics.warnings) if self.metrics else []


@dataclass
class StudentComparison:
    platforms: list[PlatformComparison] = field(default_factory=list)
    overall_score: int = 0
    performance_level: str = LEVEL_LOW
    total_platforms: int = 0
    active_platforms: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def failed_platforms(self) -> int:
        return sum(1 for item in self.platforms if item.status == FETCH_FAILED)

    @property
    def successful(self) -> bool:
        return self.failed_platforms == 0

    def platform_stats(self) -> list[dict[str, Any]]:
        return [item.as_stats() for item in self.platforms]


def compare_platform(outcome: PlatformOutcome, previous: Metrics | None) -> PlatformComparison:
    if outcome.status != FETCH_SUCCESS:
        return PlatformComparison(
            platform=outcome.platform,
            identifier=outcome.identifier,
            status=outcome.status,
            metrics=outcome.metrics,
            previous=previous,
            changes=dict(ZERO_CHANGES),
            trend=TREND_STABLE,
            error=outcome.error,
            error_kind=outcome.error_kind,
        )

    changes = outcome.metrics.changes_from(previous)
    return PlatformComparison(
        platform=outcome.platform,
        identifier=outcome.identifier,
        status=outcome.status,
        metrics=outcome.metrics,
        previous=previous,
        changes=changes,
        trend=trend(changes["rating"]),
        score=platform_score(outcome.metrics),
    )


def compare_student(
    outcomes: Iterable[PlatformOutcome],
    previous: Mapping[str, Metrics] | None = None,
) -> StudentComparison:
    """
    Reconcile fetched platforms against the last stored metrics.

    Only successful platforms contribute to the score; unsupported platforms
    are left out of the platform counts as if no identifier was given.
    """
    previous = previous or {}
    comparison = StudentComparison()
    for outcome in outcomes:
        item = compare_platform(outcome, previous.get(outcome.platform))
        comparison.platforms.append(item)
        if item.status != FETCH_UNSUPPORTED:
            comparison.total_platforms += 1
        if item.status == FETCH_SUCCESS:
            comparison.active_platforms += 1
        if item.status == FETCH_FAILED:
            comparison.errors.append({
                "platform": item.platform,
                "platformId": item.identifier,
                "kind": item.error_kind,
                "error": item.error,
            })
        elif item.warnings:
            comparison.errors.append({
                "platform": item.platform,
                "platformId": item.identifier,
                "kind": "partial" if item.status == FETCH_PARTIAL else "selector",
                "error": "; ".join(item.warnings),
                "warnings": item.warnings,
            })

    comparison.overall_score = overall_score(
        item.score for item in comparison.platforms if item.status == FETCH_SUCCESS
    )
    comparison.performance_level = performance_level(comparison.overall_score)
    return comparison
