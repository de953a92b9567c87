"""
Analysis service - robustness assessment and deployment recommendation
"""
import math
from typing import List

from backtest.domain.models import Recommendation, RobustnessAssessment, StrategyResult

DEPLOY_MIN_SHARPE = 1.5
DEPLOY_MIN_ROBUSTNESS = 0.7
DEPLOY_MAX_OVERFITTING = 0.3
OPTIMIZE_MIN_SHARPE = 0.5
OPTIMIZE_MIN_ROBUSTNESS = 0.4


class AnalysisService:
    """Combine backtest, walk-forward and Monte Carlo results into one verdict"""

    @staticmethod
    def assess(result: StrategyResult) -> RobustnessAssessment:
        """
        Score a strategy result.

        Missing analytics count as neutral: walk-forward consistency 0.5 with no
        degradation, Monte Carlo probability of loss 0.5.
        """
        sharpe = result.performance.sharpe_ratio
        if not math.isfinite(sharpe):
            sharpe = 0.0

        if result.walk_forward is not None:
            consistency = result.walk_forward.aggregate.consistency
            avg_degradation = result.walk_forward.aggregate.avg_degradation
        else:
            consistency = 0.5
            avg_degradation = 0.0

        if result.monte_carlo is not None:
            probability_of_loss = result.monte_carlo.probability_of_loss
        else:
            probability_of_loss = 0.5

        robustness = (
            0.5
            + consistency * 0.3
            + (1 - avg_degradation) * 0.2
            + (1 - probability_of_loss) * 0.2
        )
        robustness = min(max(robustness, 0.0), 1.0)
        overfitting = max(0.0, avg_degradation)

        recommendation, reasons = AnalysisService.recommend(sharpe, robustness, overfitting)
        return RobustnessAssessment(
            robustness_score=robustness,
            overfitting_score=overfitting,
            consistency_score=consistency,
            risk_adjusted_return=sharpe,
            recommendation=recommendation,
            reasons=tuple(reasons),
        )

    @staticmethod
    def recommend(sharpe: float, robustness: float, overfitting: float):
        reasons: List[str] = []

        if sharpe > DEPLOY_MIN_SHARPE and robustness > DEPLOY_MIN_ROBUSTNESS and overfitting < DEPLOY_MAX_OVERFITTING:
            reasons.append(f"Sharpe ratio {sharpe:.2f} above {DEPLOY_MIN_SHARPE}")
            reasons.append(f"Robustness {robustness:.2f} above {DEPLOY_MIN_ROBUSTNESS}")
            reasons.append(f"Overfitting {overfitting:.2f} below {DEPLOY_MAX_OVERFITTING}")
            return Recommendation.DEPLOY, reasons

        if sharpe > OPTIMIZE_MIN_SHARPE and robustness > OPTIMIZE_MIN_ROBUSTNESS:
            if sharpe <= DEPLOY_MIN_SHARPE:
                reasons.append(f"Sharpe ratio {sharpe:.2f} not above {DEPLOY_MIN_SHARPE}")
            if robustness <= DEPLOY_MIN_ROBUSTNESS:
                reasons.append(f"Robustness {robustness:.2f} not above {DEPLOY_MIN_ROBUSTNESS}")
            if overfitting >= DEPLOY_MAX_OVERFITTING:
                reasons.append(f"Overfitting {overfitting:.2f} not below {DEPLOY_MAX_OVERFITTING}")
            return Recommendation.OPTIMIZE, reasons

        if sharpe <= OPTIMIZE_MIN_SHARPE:
            reasons.append(f"Sharpe ratio {sharpe:.2f} not above {OPTIMIZE_MIN_SHARPE}")
        if robustness <= OPTIMIZE_MIN_ROBUSTNESS:
            reasons.append(f"Robustness {robustness:.2f} not above {OPTIMIZE_MIN_ROBUSTNESS}")
        return Recommendation.REJECT, reasons
