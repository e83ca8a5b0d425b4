"""
Market analysis schemas.

Contract between the ORIENT phase and the external LLM analyst. The analyst
informs strategy selection only; it never proposes actions that bypass the
risk gate.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

Sentiment = Literal["bullish", "neutral", "bearish"]


@dataclass
class AllocationHint:
    """One suggested allocation line (advisory only)."""
    protocol: str
    action: str
    token: str
    percent_of_portfolio: float   # 0-100
    rationale: str = ""


@dataclass
class MarketAnalysisInput:
    portfolio_value_usd: float
    allocation_pct: Dict[str, float]       # asset -> % of portfolio
    volatility_index: float
    price_change_24h_pct: float
    tvl_usd: float = 0.0
    volume_24h_usd: float = 0.0


@dataclass
class MarketAnalysis:
    sentiment: Sentiment
    confidence: float                      # 0-100
    reasoning: str = ""
    key_factors: List[str] = field(default_factory=list)
    allocation: List[AllocationHint] = field(default_factory=list)   # at most 5
    overall_risk: float = 50.0             # 0-100
    warnings: List[str] = field(default_factory=list)
    explanation: str = ""

    # Metadata for observability
    latency_ms: Optional[float] = None
    model_used: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sentiment": self.sentiment,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "key_factors": list(self.key_factors),
            "allocation": [
                {
                    "protocol": a.protocol,
                    "action": a.action,
                    "token": a.token,
                    "percent_of_portfolio": a.percent_of_portfolio,
                    "rationale": a.rationale,
                }
                for a in self.allocation
            ],
            "overall_risk": self.overall_risk,
            "warnings": list(self.warnings),
            "explanation": self.explanation,
            "model_used": self.model_used,
        }
