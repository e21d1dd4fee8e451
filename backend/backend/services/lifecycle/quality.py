"""Quality Score Aggregator.

The score on a feedback record is always recomputed from the full set of its
checks. Quality-issue events fire only when a check enters the failing class
(fail, needs_rework), never while it stays there.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from app.db.models.feedback import ProductionFeedback, QualityCheck
from services.lifecycle.events import QualityIssueDetected
from services.lifecycle.status import FAILING_RESULTS, PASSING_RESULTS, QualityResult


@dataclass
class QualitySummary:
    feedback_id: str
    total: int
    counts: dict[str, int]
    quality_score: float | None
    verdict: str | None

    def as_dict(self) -> dict:
        return {
            "feedback_id": self.feedback_id,
            "total": self.total,
            "counts": self.counts,
            "quality_score": self.quality_score,
            "verdict": self.verdict,
        }


def count_results(results: Iterable[QualityResult]) -> dict[str, int]:
    counts = Counter(results)
    return {r.value: counts.get(r, 0) for r in QualityResult}


def compute_quality_score(results: Iterable[QualityResult]) -> float | None:
    results = list(results)
    if not results:
        return None
    passed = sum(1 for r in results if r in PASSING_RESULTS)
    return 100.0 * passed / len(results)


def verdict_for(score: float | None, *, pass_threshold: float = 80.0, conditional_threshold: float = 60.0) -> str | None:
    if score is None:
        return None
    if score >= pass_threshold:
        return QualityResult.PASS.value
    if score >= conditional_threshold:
        return QualityResult.CONDITIONAL_PASS.value
    return QualityResult.NEEDS_REWORK.value


def summarize(feedback: ProductionFeedback, **thresholds) -> QualitySummary:
    results = [c.result for c in feedback.checks]
    score = compute_quality_score(results)
    return QualitySummary(
        feedback_id=feedback.id,
        total=len(results),
        counts=count_results(results),
        quality_score=score,
        verdict=verdict_for(score, **thresholds),
    )


def recompute_quality_score(db: Session, feedback: ProductionFeedback) -> float | None:
    """Write the derived score back onto the feedback record."""
    db.flush()
    rows = db.query(QualityCheck.result).filter(QualityCheck.feedback_id == feedback.id).all()
    feedback.quality_score = compute_quality_score(row.result for row in rows)
    return feedback.quality_score


def enters_failing_class(previous: QualityResult | None, current: QualityResult) -> bool:
    return current in FAILING_RESULTS and previous not in FAILING_RESULTS


def quality_issue_for(check: QualityCheck, previous: QualityResult | None) -> QualityIssueDetected | None:
    if not enters_failing_class(previous, check.result):
        return None
    if previous is None:
        title = "Quality Issue Detected"
        message = f'Quality check "{check.check_name}" returned {check.result.value}. Please follow up promptly.'
    else:
        title = "Quality Check Result Updated"
        message = f'Quality check "{check.check_name}" was updated to {check.result.value}. Please follow up promptly.'
    return QualityIssueDetected(feedback_id=check.feedback_id, check_id=check.id, title=title, message=message)
