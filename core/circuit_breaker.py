"""
ooda-agent Core: Circuit Breaker

Halts all new actions once the day's losses reach the configured share of
the start-of-day portfolio value, or after too many consecutive execution
failures. Clears on the next UTC calendar day or by explicit reset; never
mid-day on its own.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from core.models import CircuitBreakerState, ExecutionOutcome

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreaker:
    """
    Daily-loss and failure-streak breaker.

    All mutation happens under a lock; state() hands out copies.

    Args:
        max_daily_loss_pct: Loss (percent of start-of-day value) that trips the breaker
        max_consecutive_failures: Failed executions in a row that trip the breaker
        clock: Callable returning the current UTC datetime (tests inject one)
    """

    def __init__(self,
                 max_daily_loss_pct: float = 5.0,
                 max_consecutive_failures: int = 5,
                 clock: Optional[Callable[[], datetime]] = None):
        self.max_daily_loss_pct = float(max_daily_loss_pct)
        self.max_consecutive_failures = int(max_consecutive_failures)
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._state = CircuitBreakerState(day=self._today())

    @classmethod
    def from_config(cls, policy: dict, clock: Optional[Callable[[], datetime]] = None) -> "CircuitBreaker":
        risk_cfg = policy.get("risk", {}) or {}
        cb_cfg = policy.get("circuit_breaker", {}) or {}
        return cls(
            max_daily_loss_pct=risk_cfg.get("max_daily_loss_pct", 5.0),
            max_consecutive_failures=cb_cfg.get("max_consecutive_failures", 5),
            clock=clock,
        )

    def _today(self) -> str:
        return self._clock().date().isoformat()

    def _roll_day_locked(self) -> None:
        today = self._today()
        state = self._state
        if state.day == today:
            return
        if state.active:
            logger.info(
                "Circuit breaker cleared on new UTC day %s (was active since %s: %s)",
                today, state.activation_date, state.reason,
            )
        # baseline is re-captured by the first update_baseline() of the new day
        self._state = CircuitBreakerState(day=today)

    def state(self) -> CircuitBreakerState:
        with self._lock:
            self._roll_day_locked()
            return replace(self._state)

    def is_active(self) -> bool:
        with self._lock:
            self._roll_day_locked()
            return self._state.active

    def update_baseline(self, portfolio_value_usd: float) -> None:
        """Record the start-of-day value the first time we see the portfolio each day."""
        with self._lock:
            self._roll_day_locked()
            if self._state.start_of_day_value_usd <= 0 and portfolio_value_usd > 0:
                self._state.start_of_day_value_usd = float(portfolio_value_usd)
                logger.info("Start-of-day portfolio baseline set to $%.2f", portfolio_value_usd)

    def _loss_limit_usd_locked(self) -> float:
        return self._state.start_of_day_value_usd * self.max_daily_loss_pct / 100.0

    def _trip_locked(self, reason: str) -> None:
        if self._state.active:
            return
        now = self._clock()
        self._state.active = True
        self._state.reason = reason
        self._state.activated_at = now
        self._state.activation_date = now.date().isoformat()
        logger.warning("CIRCUIT BREAKER TRIPPED: %s", reason)

    def _check_loss_locked(self) -> None:
        limit = self._loss_limit_usd_locked()
        if limit > 0 and self._state.daily_loss_usd >= limit:
            self._trip_locked(
                f"daily loss ${self._state.daily_loss_usd:.2f} reached "
                f"{self.max_daily_loss_pct:.1f}% of start-of-day value"
            )

    def record_loss(self, loss_usd: float) -> bool:
        """Add an (estimated) loss; returns True when the breaker is active afterwards."""
        if loss_usd <= 0:
            return self.is_active()
        with self._lock:
            self._roll_day_locked()
            self._state.daily_loss_usd += float(loss_usd)
            self._check_loss_locked()
            return self._state.active

    def record_outcomes(self,
                        outcomes: Iterable[ExecutionOutcome],
                        pre_value_usd: Optional[float] = None,
                        post_value_usd: Optional[float] = None) -> bool:
        """
        Fold one cycle's execution outcomes into the breaker.

        Returns:
            True when the breaker is active after folding
        """
        with self._lock:
            self._roll_day_locked()
            for outcome in outcomes:
                if outcome.success:
                    self._state.consecutive_failures = 0
                    continue
                self._state.failed_executions += 1
                self._state.consecutive_failures += 1
                if self._state.consecutive_failures >= self.max_consecutive_failures:
                    self._trip_locked(
                        f"{self._state.consecutive_failures} consecutive execution failures"
                    )

            if pre_value_usd is not None and post_value_usd is not None:
                drop = float(pre_value_usd) - float(post_value_usd)
                if drop > 0:
                    self._state.daily_loss_usd += drop
            self._check_loss_locked()
            return self._state.active

    def reset(self, new_baseline_usd: Optional[float] = None) -> None:
        """Manual reset: clears the breaker and the day's counters."""
        with self._lock:
            baseline = self._state.start_of_day_value_usd
            if new_baseline_usd is not None:
                baseline = float(new_baseline_usd)
            self._state = CircuitBreakerState(day=self._today(), start_of_day_value_usd=baseline)
        logger.warning("Circuit breaker manually reset (baseline $%.2f)", baseline)
