"""
ooda-agent Core: Risk Engine

Hard constraints from policy.yaml. Every proposed action passes through
validate() before it can reach execution; no strategy or analyst output can
bypass it.

Checks (all evaluated and recorded, any failure rejects):
1. Position size   - action value as % of portfolio
2. Slippage        - requested max slippage in bps
3. Reserve         - base asset left after the action and fees
4. Venue exposure  - existing venue positions plus the action, % of portfolio
5. Daily loss      - today's losses plus the action's expected loss
"""

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Callable, Dict, Iterable, List, Optional
from datetime import datetime
import logging
import threading

from core.circuit_breaker import CircuitBreaker
from core.models import (
    ExecutionOutcome,
    PortfolioSnapshot,
    ProposedAction,
    RiskCheck,
    RiskVerdict,
    VenuePosition,
    from_base_units,
)

logger = logging.getLogger(__name__)

# Below this portfolio value the value-based checks pass with value 0 so a
# freshly funded wallet can act.
MIN_PORTFOLIO_VALUE_USD = 1.0

CHECK_POSITION_SIZE = "position_size"
CHECK_SLIPPAGE = "slippage"
CHECK_RESERVE = "reserve"
CHECK_VENUE_EXPOSURE = "venue_exposure"
CHECK_DAILY_LOSS = "daily_loss"


@dataclass(frozen=True)
class RiskLimits:
    """Numeric risk limits; validate() enforces the allowed ranges."""
    max_position_size_pct: float = 25.0
    max_slippage_bps: int = 100
    max_daily_loss_pct: float = 5.0
    min_reserve: float = 0.05                # base asset amount (SOL)
    max_protocol_exposure_pct: float = 50.0
    estimated_fee: float = 0.001             # base asset amount per transaction

    @classmethod
    def from_config(cls, risk_cfg: Optional[Dict[str, Any]]) -> "RiskLimits":
        risk_cfg = risk_cfg or {}
        known = {f.name for f in fields(cls)}
        limits = cls(**{k: v for k, v in risk_cfg.items() if k in known})
        limits.validate()
        return limits

    def validate(self) -> None:
        if not 1 <= self.max_position_size_pct <= 100:
            raise ValueError(f"max_position_size_pct must be within 1-100, got {self.max_position_size_pct}")
        if not 1 <= self.max_slippage_bps <= 5000:
            raise ValueError(f"max_slippage_bps must be within 1-5000, got {self.max_slippage_bps}")
        if not 0.1 <= self.max_daily_loss_pct <= 100:
            raise ValueError(f"max_daily_loss_pct must be within 0.1-100, got {self.max_daily_loss_pct}")
        if self.min_reserve < 0.001:
            raise ValueError(f"min_reserve must be at least 0.001, got {self.min_reserve}")
        if not 10 <= self.max_protocol_exposure_pct <= 100:
            raise ValueError(
                f"max_protocol_exposure_pct must be within 10-100, got {self.max_protocol_exposure_pct}"
            )
        if self.estimated_fee < 0:
            raise ValueError("estimated_fee must be non-negative")


class RiskEngine:
    """
    Validates proposed actions against RiskLimits and the circuit breaker.

    The engine owns the circuit breaker. Portfolio and venue positions are
    pushed in by the loop each cycle via update_portfolio() and
    update_positions().
    """

    def __init__(self,
                 policy: Dict[str, Any],
                 breaker: Optional[CircuitBreaker] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.policy = policy or {}
        risk_cfg = self.policy.get("risk", {}) or {}
        self.limits = RiskLimits.from_config(risk_cfg)

        assets_cfg = self.policy.get("assets", {}) or {}
        self.base_asset = assets_cfg.get("base", "SOL")
        self.base_decimals = int(assets_cfg.get("base_decimals", 9))

        self.breaker = breaker or CircuitBreaker.from_config(self.policy, clock=clock)
        self._snapshot: Optional[PortfolioSnapshot] = None
        self._positions: List[VenuePosition] = []
        self._lock = threading.Lock()

        logger.info(
            "RiskEngine initialized: position<=%.1f%%, slippage<=%dbps, daily_loss<=%.1f%%, "
            "reserve>=%.3f %s, venue_exposure<=%.1f%%",
            self.limits.max_position_size_pct,
            self.limits.max_slippage_bps,
            self.limits.max_daily_loss_pct,
            self.limits.min_reserve,
            self.base_asset,
            self.limits.max_protocol_exposure_pct,
        )

    # ----- state pushed in by the loop -----

    def update_portfolio(self, snapshot: PortfolioSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot
        self.breaker.update_baseline(snapshot.total_value_usd)

    def update_positions(self, positions: Iterable[VenuePosition]) -> None:
        with self._lock:
            self._positions = list(positions)

    @property
    def portfolio_value_usd(self) -> float:
        snapshot = self._snapshot
        return snapshot.total_value_usd if snapshot else 0.0

    # ----- validation -----

    def validate(self, action: ProposedAction) -> RiskVerdict:
        """Run every check against one action."""
        if self.breaker.is_active():
            state = self.breaker.state()
            return RiskVerdict(
                action_id=action.id,
                approved=False,
                risk_score=100.0,
                checks=[],
                summary=f"rejected: daily limit ({state.reason})",
                halted=True,
            )

        with self._lock:
            snapshot = self._snapshot
            positions = list(self._positions)

        value = snapshot.total_value_usd if snapshot else 0.0
        checks = [
            self._check_position_size(action, value),
            self._check_slippage(action),
            self._check_reserve(action, snapshot),
            self._check_venue_exposure(action, value, positions),
            self._check_daily_loss(action, value),
        ]
        failed = [c for c in checks if not c.passed]
        score = self._risk_score(action, checks, snapshot)

        if failed:
            summary = "rejected: " + "; ".join(c.message for c in failed)
        else:
            summary = f"approved: {len(checks)}/{len(checks)} checks passed"

        return RiskVerdict(
            action_id=action.id,
            approved=not failed,
            risk_score=score,
            checks=checks,
            summary=summary,
        )

    def _check_position_size(self, action: ProposedAction, value: float) -> RiskCheck:
        limit = self.limits.max_position_size_pct
        if value < MIN_PORTFOLIO_VALUE_USD:
            return RiskCheck(CHECK_POSITION_SIZE, True, 0.0, limit, "portfolio below $1, size check skipped")
        pct = round(action.value_usd / value * 100.0, 2)
        passed = pct <= limit
        message = f"position size {pct:.2f}% {'<=' if passed else 'exceeds'} {limit:.2f}%"
        return RiskCheck(CHECK_POSITION_SIZE, passed, pct, limit, message)

    def _check_slippage(self, action: ProposedAction) -> RiskCheck:
        limit = self.limits.max_slippage_bps
        bps = action.max_slippage_bps
        passed = bps <= limit
        message = f"slippage {bps}bps {'<=' if passed else 'exceeds'} {limit}bps"
        return RiskCheck(CHECK_SLIPPAGE, passed, float(bps), float(limit), message)

    def _check_reserve(self, action: ProposedAction, snapshot: Optional[PortfolioSnapshot]) -> RiskCheck:
        limit = self.limits.min_reserve
        balance = from_base_units(snapshot.quantity_of(self.base_asset), self.base_decimals) if snapshot else 0.0
        spend = 0.0
        if action.input_asset == self.base_asset:
            spend = from_base_units(action.quantity, self.base_decimals)
        remaining = round(balance - spend - self.limits.estimated_fee, 4)
        passed = remaining >= limit
        message = (
            f"{self.base_asset} reserve after action {remaining:.4f} "
            f"{'>=' if passed else 'below'} {limit:.4f}"
        )
        return RiskCheck(CHECK_RESERVE, passed, remaining, limit, message)

    def _check_venue_exposure(self, action: ProposedAction, value: float,
                              positions: List[VenuePosition]) -> RiskCheck:
        limit = self.limits.max_protocol_exposure_pct
        if value < MIN_PORTFOLIO_VALUE_USD:
            return RiskCheck(CHECK_VENUE_EXPOSURE, True, 0.0, limit, "portfolio below $1, exposure check skipped")
        existing = sum(p.value_usd for p in positions if p.venue == action.venue)
        pct = round((existing + action.value_usd) / value * 100.0, 2)
        passed = pct <= limit
        message = f"{action.venue} exposure {pct:.2f}% {'<=' if passed else 'exceeds'} {limit:.2f}%"
        return RiskCheck(CHECK_VENUE_EXPOSURE, passed, pct, limit, message)

    def _check_daily_loss(self, action: ProposedAction, value: float) -> RiskCheck:
        limit = self.limits.max_daily_loss_pct
        state = self.breaker.state()
        baseline = state.start_of_day_value_usd or value
        if baseline < MIN_PORTFOLIO_VALUE_USD:
            return RiskCheck(CHECK_DAILY_LOSS, True, 0.0, limit, "portfolio below $1, daily loss check skipped")
        projected = state.daily_loss_usd + max(0.0, -action.expected_value_change_usd)
        pct = round(projected / baseline * 100.0, 2)
        passed = pct <= limit
        message = f"projected daily loss {pct:.2f}% {'<=' if passed else 'exceeds'} {limit:.2f}%"
        return RiskCheck(CHECK_DAILY_LOSS, passed, pct, limit, message)

    def _base_equivalent(self, action: ProposedAction, snapshot: Optional[PortfolioSnapshot]) -> float:
        if action.input_asset == self.base_asset:
            return from_base_units(action.quantity, self.base_decimals)
        price = snapshot.price_of(self.base_asset) if snapshot else None
        if price:
            return action.value_usd / price
        return 0.0

    def _risk_score(self, action: ProposedAction, checks: List[RiskCheck],
                    snapshot: Optional[PortfolioSnapshot]) -> float:
        score = 0.0
        for check in checks:
            if not check.passed:
                score += 25
                continue
            # reserve is a floor, the others are ceilings
            if check.name == CHECK_RESERVE or check.limit <= 0:
                continue
            utilization = check.value / check.limit
            if utilization > 0.8:
                score += 10
            elif utilization > 0.5:
                score += 5

        if action.max_slippage_bps > 200:
            score += 10

        size = self._base_equivalent(action, snapshot)
        if size > 100:
            score += 15
        elif size > 10:
            score += 5

        return float(max(0.0, min(100.0, score)))

    # ----- breaker and limits management -----

    def record_cycle_outcomes(self,
                              outcomes: Iterable[ExecutionOutcome],
                              pre_value_usd: Optional[float] = None,
                              post_value_usd: Optional[float] = None) -> bool:
        """Fold a cycle's execution outcomes into the breaker; True if it is now active."""
        was_active = self.breaker.is_active()
        active = self.breaker.record_outcomes(outcomes, pre_value_usd, post_value_usd)
        if active and not was_active:
            logger.warning("Trading paused by circuit breaker: %s", self.breaker.state().reason)
        return active

    def record_loss(self, loss_usd: float) -> bool:
        return self.breaker.record_loss(loss_usd)

    def reset_circuit_breaker(self, new_baseline_usd: Optional[float] = None) -> None:
        if new_baseline_usd is None and self._snapshot is not None:
            new_baseline_usd = self._snapshot.total_value_usd
        self.breaker.reset(new_baseline_usd)

    def update_limits(self, **changes: Any) -> RiskLimits:
        """Apply new limit values; raises ValueError and keeps the old limits if any is invalid."""
        known = {f.name for f in fields(RiskLimits)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"unknown risk limit(s): {', '.join(sorted(unknown))}")
        candidate = replace(self.limits, **changes)
        candidate.validate()
        self.limits = candidate
        if "max_daily_loss_pct" in changes:
            self.breaker.max_daily_loss_pct = float(candidate.max_daily_loss_pct)
        logger.info("Risk limits updated: %s", changes)
        return candidate

    def circuit_snapshot(self) -> Dict[str, Any]:
        snapshot = self.breaker.state().to_dict()
        snapshot["max_daily_loss_pct"] = self.breaker.max_daily_loss_pct
        snapshot["max_consecutive_failures"] = self.breaker.max_consecutive_failures
        return snapshot

    def risk_snapshot(self) -> Dict[str, Any]:
        return {
            "limits": asdict(self.limits),
            "portfolio_value_usd": round(self.portfolio_value_usd, 2),
            "circuit": self.circuit_snapshot(),
        }
