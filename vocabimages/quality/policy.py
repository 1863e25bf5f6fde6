"""Approval decisions and aggregate statistics over quality scores."""

from dataclasses import dataclass
from typing import Iterable, Optional

from vocabimages.catalog.models import CandidateStatus, QualityScore


@dataclass(frozen=True)
class ApprovalPolicy:
    """Maps an overall score to a candidate status.

    ``overall >= auto_approval_threshold`` approves, ``overall <
    min_quality_threshold`` rejects, anything in between goes to manual review.
    """
    auto_approval_threshold: float = 8.5
    min_quality_threshold: float = 5.0

    def __post_init__(self):
        if not 0 <= self.min_quality_threshold <= 10 or not 0 <= self.auto_approval_threshold <= 10:
            raise ValueError("Thresholds must lie in [0, 10]")
        if self.min_quality_threshold > self.auto_approval_threshold:
            raise ValueError(
                f"min_quality_threshold {self.min_quality_threshold} exceeds "
                f"auto_approval_threshold {self.auto_approval_threshold}"
            )

    def with_min_quality(self, min_quality: Optional[float]) -> "ApprovalPolicy":
        """Return a policy with a different rejection floor.

        A floor above the approval threshold lifts the approval threshold with it.
        """
        if min_quality is None:
            return self
        return ApprovalPolicy(
            auto_approval_threshold=max(self.auto_approval_threshold, min_quality),
            min_quality_threshold=min_quality,
        )

    def decide(self, score: Optional[QualityScore], manually_selected: bool = False) -> CandidateStatus:
        if manually_selected:
            return CandidateStatus.APPROVED
        if score is None:
            return CandidateStatus.MANUAL_REVIEW
        if score.overall >= self.auto_approval_threshold:
            return CandidateStatus.APPROVED
        if score.overall < self.min_quality_threshold:
            return CandidateStatus.REJECTED
        return CandidateStatus.MANUAL_REVIEW

    def rating(self, overall: float) -> str:
        """Human label for an overall score, using the decision thresholds."""
        if overall >= self.auto_approval_threshold:
            return "excellent"
        if overall < self.min_quality_threshold:
            return "poor"
        return "acceptable"


def quality_statistics(scores: Iterable[QualityScore], policy: Optional[ApprovalPolicy] = None) -> dict:
    """Summarize a batch of scores.

    Args:
        scores: Quality scores to aggregate
        policy: Thresholds used for the distribution buckets

    Returns:
        Dict with count, average overall, average breakdown and a distribution
        keyed by rating label
    """
    policy = policy or ApprovalPolicy()
    scores = list(scores)
    distribution = {"excellent": 0, "acceptable": 0, "poor": 0}

    if not scores:
        return {"count": 0, "average": None, "breakdown": {}, "distribution": distribution}

    for score in scores:
        distribution[policy.rating(score.overall)] += 1

    breakdown = {}
    for component in ("technical", "relevance", "aesthetic", "usability"):
        breakdown[component] = round(sum(getattr(s, component) for s in scores) / len(scores), 2)

    return {
        "count": len(scores),
        "average": round(sum(s.overall for s in scores) / len(scores), 2),
        "breakdown": breakdown,
        "distribution": distribution,
    }
