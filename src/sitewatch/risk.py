from typing import Dict, Sequence
from .types import RiskAssessment, RiskLevel, Severity, Violation


SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.HIGH: 10,
    Severity.MEDIUM: 5,
    Severity.LOW: 2,
}


class RiskScorer:
    def __init__(self, high_at: int = 10, medium_at: int = 5):
        self.high_at = high_at
        self.medium_at = medium_at

    def score(self, violations: Sequence[Violation]) -> RiskAssessment:
        if not violations:
            return RiskAssessment(level=RiskLevel.LOW, score=0)
        total = sum(SEVERITY_WEIGHTS.get(v.severity, SEVERITY_WEIGHTS[Severity.LOW]) for v in violations)
        if total >= self.high_at:
            return RiskAssessment(level=RiskLevel.HIGH, score=total)
        if total >= self.medium_at:
            return RiskAssessment(level=RiskLevel.MEDIUM, score=total)
        return RiskAssessment(level=RiskLevel.LOW, score=total)
