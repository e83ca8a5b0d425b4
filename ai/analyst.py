"""
Market Analyst - optional ORIENT collaborator.

Calls an LLM through a ModelClient, parses the response into a MarketAnalysis
and maps it onto a MarketCondition. Any failure raises AnalysisUnavailable;
the control loop then falls back to the heuristic MarketAnalyzer.
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional

from core.exceptions import AnalysisUnavailable
from core.models import MarketCondition, MarketSignals, PortfolioSnapshot
from strategy.market_analyzer import MarketAnalyzer

from .model_client import ModelClient, create_model_client
from .schemas import AllocationHint, MarketAnalysis, MarketAnalysisInput

log = logging.getLogger(__name__)

MAX_ALLOCATION_LINES = 5
SENTIMENT_TO_TREND = {"bullish": "bullish", "neutral": "neutral", "bearish": "bearish"}


def _clamp(value: Any, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, float(value)))


class MarketAnalyst:
    """
    LLM-backed market assessment.

    The analyst never proposes actions: its allocation hints are recorded in
    the analysis commitment for the operator, and only the derived
    MarketCondition reaches strategy selection.
    """

    def __init__(self, client: ModelClient, timeout_s: float = 10.0,
                 analyzer: Optional[MarketAnalyzer] = None):
        self.client = client
        self.timeout_s = timeout_s
        self.analyzer = analyzer or MarketAnalyzer()

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]],
                    analyzer: Optional[MarketAnalyzer] = None) -> Optional["MarketAnalyst"]:
        """
        Build an analyst from the app.yaml `analysis` section.

        Returns None when analysis is disabled.
        """
        cfg = cfg or {}
        if not cfg.get("enabled", False):
            return None
        client = create_model_client(
            cfg.get("provider", "mock"),
            api_key=cfg.get("api_key") or os.environ.get(cfg.get("api_key_env", ""), ""),
            model=cfg.get("model"),
        )
        return cls(client, timeout_s=float(cfg.get("timeout_s", 10.0)), analyzer=analyzer)

    @staticmethod
    def build_input(snapshot: PortfolioSnapshot, signals: MarketSignals) -> MarketAnalysisInput:
        return MarketAnalysisInput(
            portfolio_value_usd=snapshot.total_value_usd,
            allocation_pct=snapshot.allocation_pct(),
            volatility_index=signals.volatility_index,
            price_change_24h_pct=signals.price_change_24h_pct,
            tvl_usd=signals.tvl_usd,
            volume_24h_usd=signals.volume_24h_usd,
        )

    @staticmethod
    def _to_model_request(payload: MarketAnalysisInput) -> Dict[str, Any]:
        return {
            "market": {
                "volatility_index": payload.volatility_index,
                "price_change_24h_pct": payload.price_change_24h_pct,
                "tvl_usd": payload.tvl_usd,
                "volume_24h_usd": payload.volume_24h_usd,
            },
            "portfolio": {
                "value_usd": payload.portfolio_value_usd,
                "allocation_pct": dict(payload.allocation_pct),
            },
        }

    def analyze(self, snapshot: PortfolioSnapshot, signals: MarketSignals) -> MarketAnalysis:
        """
        Run one market analysis.

        Raises:
            AnalysisUnavailable: on any client error or malformed response
        """
        start = time.perf_counter()
        try:
            resp = self.client.call(
                self._to_model_request(self.build_input(snapshot, signals)),
                timeout=self.timeout_s,
            )
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            log.warning(f"Market analysis call failed after {elapsed:.1f}ms: {e}")
            raise AnalysisUnavailable(f"analyst call failed: {e}") from e

        analysis = self.parse_response(resp)
        analysis.latency_ms = (time.perf_counter() - start) * 1000
        analysis.model_used = getattr(self.client, "model", "unknown")
        log.info(
            f"Market analysis completed in {analysis.latency_ms:.1f}ms: "
            f"sentiment={analysis.sentiment} confidence={analysis.confidence:.0f} "
            f"risk={analysis.overall_risk:.0f}"
        )
        return analysis

    @staticmethod
    def parse_response(resp: Any) -> MarketAnalysis:
        """
        Parse and sanitize a raw model response.

        Raises:
            AnalysisUnavailable: if required fields are missing or invalid
        """
        if not isinstance(resp, dict):
            raise AnalysisUnavailable(f"analysis response is not an object: {type(resp).__name__}")

        assessment = resp.get("marketAssessment")
        if not isinstance(assessment, dict):
            raise AnalysisUnavailable("analysis response missing marketAssessment")

        sentiment = str(assessment.get("sentiment", "")).lower()
        if sentiment not in SENTIMENT_TO_TREND:
            raise AnalysisUnavailable(f"invalid sentiment: {assessment.get('sentiment')!r}")

        try:
            confidence = _clamp(assessment.get("confidence", 0))
            risk_section = resp.get("riskAssessment") or {}
            overall_risk = _clamp(risk_section.get("overallRisk", 50))
        except (TypeError, ValueError) as e:
            raise AnalysisUnavailable(f"non-numeric analysis field: {e}") from e

        hints: List[AllocationHint] = []
        for line in (resp.get("allocation") or [])[:MAX_ALLOCATION_LINES]:
            if not isinstance(line, dict):
                continue
            try:
                pct = _clamp(line.get("percentOfPortfolio", 0))
            except (TypeError, ValueError):
                log.warning(f"Ignoring allocation hint with bad percent: {line}")
                continue
            hints.append(AllocationHint(
                protocol=str(line.get("protocol", "")),
                action=str(line.get("action", "")),
                token=str(line.get("token", "")),
                percent_of_portfolio=pct,
                rationale=str(line.get("rationale", "")),
            ))

        return MarketAnalysis(
            sentiment=sentiment,
            confidence=confidence,
            reasoning=str(assessment.get("reasoning", "")),
            key_factors=[str(f) for f in assessment.get("keyFactors") or []],
            allocation=hints,
            overall_risk=overall_risk,
            warnings=[str(w) for w in risk_section.get("warnings") or []],
            explanation=str(resp.get("explanation", "")),
        )

    def to_condition(self, analysis: MarketAnalysis, signals: MarketSignals) -> MarketCondition:
        """Map an analysis onto the MarketCondition used by strategy selection."""
        if analysis.overall_risk > 70:
            regime = "high"
        elif analysis.overall_risk > 40:
            regime = "moderate"
        else:
            regime = "low"
        trend = SENTIMENT_TO_TREND[analysis.sentiment]

        return MarketCondition(
            volatility_regime=regime,
            trend_direction=trend,
            confidence=analysis.confidence,
            recommended_category=self.analyzer.recommended_category(regime, trend),
            volatility_index=signals.volatility_index,
            price_change_24h_pct=signals.price_change_24h_pct,
            summary=analysis.explanation or analysis.reasoning[:200],
            source="analysis",
        )
