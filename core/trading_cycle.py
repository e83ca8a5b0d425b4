"""
Decision Pipeline - DECIDE phase of the OODA cycle

Flow:
1. Strategy evaluation (pure)
2. Confidence filter (drop actions below min_confidence_threshold)
3. Risk gate, one action at a time in priority order, stopping once
   max_actions_per_cycle approvals are reached. While the circuit breaker
   is active every candidate is still gated so each one carries its own
   "daily limit" rejection.

Execution is delegated to the caller.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import logging

from core.models import MarketCondition, PortfolioSnapshot, ProposedAction, RiskVerdict, YieldOpportunity
from core.risk import RiskEngine
from strategy.base_strategy import StrategyEvaluation
from strategy.evaluator import StrategyEvaluator

logger = logging.getLogger(__name__)


@dataclass
class DecisionResult:
    """Result of the DECIDE phase"""
    evaluation: Optional[StrategyEvaluation]
    proposed: List[ProposedAction] = field(default_factory=list)
    filtered: List[ProposedAction] = field(default_factory=list)      # below confidence threshold
    verdicts: List[RiskVerdict] = field(default_factory=list)
    approved: List[ProposedAction] = field(default_factory=list)
    rejected: List[ProposedAction] = field(default_factory=list)
    deferred: List[ProposedAction] = field(default_factory=list)      # never reached the risk gate
    halted: bool = False
    no_action_reason: Optional[str] = None
    error: Optional[str] = None


class DecisionPipeline:
    """
    Strategy evaluation plus risk gating.

    Args:
        evaluator: Strategy evaluator
        risk_engine: Risk gate (owns the circuit breaker)
        max_actions_per_cycle: Approvals after which the gate stops
        min_confidence_threshold: Actions below this confidence are dropped
    """

    def __init__(self,
                 evaluator: StrategyEvaluator,
                 risk_engine: RiskEngine,
                 max_actions_per_cycle: int = 5,
                 min_confidence_threshold: float = 40.0):
        self.evaluator = evaluator
        self.risk_engine = risk_engine
        self.max_actions_per_cycle = max(1, int(max_actions_per_cycle))
        self.min_confidence_threshold = float(min_confidence_threshold)

    def decide(self,
               snapshot: PortfolioSnapshot,
               condition: MarketCondition,
               opportunities: Sequence[YieldOpportunity] = ()) -> DecisionResult:
        try:
            evaluation = self.evaluator.evaluate(snapshot, condition, opportunities)
        except Exception as e:
            logger.error(f"Strategy evaluation failed: {e}", exc_info=True)
            return DecisionResult(evaluation=None, no_action_reason="evaluation_error", error=str(e))

        result = DecisionResult(evaluation=evaluation, proposed=list(evaluation.actions))
        if not result.proposed:
            result.no_action_reason = "no_proposals"
            logger.info(f"No actions proposed by {evaluation.strategy_id}: {evaluation.explanation}")
            return result

        candidates = []
        for action in result.proposed:
            if action.confidence < self.min_confidence_threshold:
                result.filtered.append(action)
            else:
                candidates.append(action)
        if result.filtered:
            logger.info(
                f"Dropped {len(result.filtered)} action(s) below confidence "
                f"{self.min_confidence_threshold:.0f}"
            )
        if not candidates:
            result.no_action_reason = "below_confidence_threshold"
            return result

        candidates.sort(key=lambda a: a.priority)
        for idx, action in enumerate(candidates):
            if not result.halted and len(result.approved) >= self.max_actions_per_cycle:
                result.deferred.extend(candidates[idx:])
                break

            verdict = self.risk_engine.validate(action)
            result.verdicts.append(verdict)

            if verdict.halted:
                # breaker is global: every remaining action gets its own rejection
                if not result.halted:
                    logger.warning(f"Trading paused: {verdict.summary}")
                result.halted = True
                result.rejected.append(action)
                continue

            if verdict.approved:
                result.approved.append(action)
                logger.info(
                    f"Approved {action.kind} {action.input_asset}->{action.output_asset} "
                    f"${action.value_usd:.2f} via {action.venue} (risk {verdict.risk_score:.0f})"
                )
            else:
                result.rejected.append(action)
                logger.info(f"Rejected {action.kind} via {action.venue}: {verdict.summary}")

        if not result.approved:
            result.no_action_reason = "circuit_breaker" if result.halted else "risk_rejected"
        return result
