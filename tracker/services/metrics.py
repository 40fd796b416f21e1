from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Metrics:
    """Normalized per-platform numbers returned by every platform client."""

    rating: int = 0
    max_rating: int = 0
    problems_solved: int = 0
    contests_participated: int = 0
    rank: int | None = None
    additional_data: dict[str, Any] = field(default_factory=dict)
    # Soft extraction problems (scraped pages); never raised.
    warnings: list[str] = field(default_factory=list)
    partial: bool = False

    @classmethod
    def zero(cls, **additional_data) -> "Metrics":
        return cls(additional_data=dict(additional_data))

    def changes_from(self, previous: "Metrics | None") -> dict[str, int]:
        """
        Field-wise current minus previous. Rank delta is previous - current
        (positive means the rank number went down) and only when both are known.
        """
        if previous is None:
            previous = Metrics()
        if self.rank is not None and previous.rank is not None:
            rank_change = previous.rank - self.rank
        else:
            rank_change = 0
        return {
            "rating": self.rating - previous.rating,
            "max_rating": self.max_rating - previous.max_rating,
            "problems_solved": self.problems_solved - previous.problems_solved,
            "contests_participated": self.contests_participated - previous.contests_participated,
            "rank": rank_change,
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "rating": self.rating,
            "maxRating": self.max_rating,
            "problemsSolved": self.problems_solved,
            "contestsParticipated": self.contests_participated,
            "rank": self.rank,
            "additionalData": dict(self.additional_data),
        }


@dataclass
class PlatformOutcome:
    """Settled result of one platform fetch inside a student's fan-out."""

    platform: str
    identifier: str
    status: str
    metrics: Metrics | None = None
    error: str | None = None
    error_kind: str | None = None
    attempts: int = 0
    duration_ms: int = 0
