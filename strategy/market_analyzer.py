"""
Heuristic market analyzer.

Maps raw MarketSignals onto a MarketCondition. This is also the fallback
whenever external analysis is missing or fails, so analyze() never raises.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from core.models import MarketCondition, MarketSignals

logger = logging.getLogger(__name__)


class MarketAnalyzer:
    """
    Classify volatility regime and trend, and score confidence.

    Thresholds (overridable via policy.yaml market section):
        volatility index <=20 low, <=45 moderate, <=70 high, else extreme
        24h change > +3% bullish, < -3% bearish
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        cfg = config or {}
        self.low_max = float(cfg.get("low_volatility_max", 20))
        self.moderate_max = float(cfg.get("moderate_volatility_max", 45))
        self.high_max = float(cfg.get("high_volatility_max", 70))
        self.trend_threshold_pct = float(cfg.get("trend_threshold_pct", 3.0))
        self.stale_after_s = float(cfg.get("stale_after_s", 60))
        self.very_stale_after_s = float(cfg.get("very_stale_after_s", 300))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def volatility_regime(self, index: float) -> str:
        if index <= self.low_max:
            return "low"
        if index <= self.moderate_max:
            return "moderate"
        if index <= self.high_max:
            return "high"
        return "extreme"

    def trend_direction(self, change_pct: float) -> str:
        if change_pct > self.trend_threshold_pct:
            return "bullish"
        if change_pct < -self.trend_threshold_pct:
            return "bearish"
        return "neutral"

    @staticmethod
    def recommended_category(regime: str, trend: str) -> str:
        if regime in ("high", "extreme") or trend == "bearish":
            return "yield"
        if regime == "low":
            return "liquidity"
        return "rebalance"

    def confidence(self, signals: MarketSignals) -> float:
        score = 60.0
        observed = signals.observed_at
        if observed.tzinfo is None:
            observed = observed.replace(tzinfo=timezone.utc)
        age_s = (self._clock() - observed).total_seconds()
        if age_s > self.stale_after_s:
            score -= 15
        if age_s > self.very_stale_after_s:
            score -= 25

        vol = signals.volatility_index
        # clear regimes are easy to call, borders are not
        if vol < 10 or vol > 80:
            score += 15
        if abs(vol - self.low_max) < 3 or abs(vol - self.moderate_max) < 3:
            score -= 10

        change = abs(signals.price_change_24h_pct)
        if change > 8:
            score += 10
        elif change < 1:
            score += 5

        return max(0.0, min(100.0, score))

    def analyze(self, signals: Optional[MarketSignals]) -> MarketCondition:
        if signals is None:
            signals = MarketSignals.neutral()
        try:
            regime = self.volatility_regime(signals.volatility_index)
            trend = self.trend_direction(signals.price_change_24h_pct)
            confidence = self.confidence(signals)
        except Exception as e:
            logger.warning(f"Market analysis failed on signals {signals}: {e}; using neutral view")
            regime, trend, confidence = "moderate", "neutral", 30.0

        summary = (
            f"{regime} volatility (index {signals.volatility_index:.0f}), "
            f"{trend} trend ({signals.price_change_24h_pct:+.2f}% 24h)"
        )
        return MarketCondition(
            volatility_regime=regime,
            trend_direction=trend,
            confidence=confidence,
            recommended_category=self.recommended_category(regime, trend),
            volatility_index=signals.volatility_index,
            price_change_24h_pct=signals.price_change_24h_pct,
            summary=summary,
            source="heuristic",
        )
