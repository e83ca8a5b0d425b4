"""
ooda-agent Core: Data Model

Entities that flow through one OODA cycle. Quantities are integer base
units (lamports for SOL, 10**decimals for SPL tokens); USD values are floats.

Ownership:
- Snapshots, conditions, proposals, verdicts and outcomes belong to the cycle
  that produced them and are discarded after the commitment is written.
- CircuitBreakerState is owned by the circuit breaker; callers only ever see
  copies.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

VOLATILITY_REGIMES = ("low", "moderate", "high", "extreme")
TREND_DIRECTIONS = ("bullish", "neutral", "bearish")
ACTION_KINDS = (
    "swap",
    "stake",
    "unstake",
    "lend",
    "withdraw",
    "provide_liquidity",
    "remove_liquidity",
    "deposit",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_base_units(amount: float, decimals: int) -> int:
    """Convert a UI amount to integer base units, rounding down."""
    if amount <= 0:
        return 0
    return int(amount * (10 ** decimals))


def from_base_units(quantity: int, decimals: int) -> float:
    return quantity / float(10 ** decimals)


@dataclass(frozen=True)
class AssetHolding:
    """Single wallet balance with its USD valuation."""
    asset: str
    quantity: int          # base units
    decimals: int
    price_usd: float
    mint: str = ""

    @property
    def amount(self) -> float:
        return from_base_units(self.quantity, self.decimals)

    @property
    def value_usd(self) -> float:
        return self.amount * self.price_usd


@dataclass(frozen=True)
class PortfolioSnapshot:
    """
    Point-in-time view of the managed wallet.

    Attributes:
        owner: Wallet public key the holdings belong to
        holdings: Balances, one per asset
        taken_at: UTC timestamp of the observation
    """
    owner: str
    holdings: Tuple[AssetHolding, ...] = ()
    taken_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not isinstance(self.holdings, tuple):
            object.__setattr__(self, "holdings", tuple(self.holdings))
        if self.taken_at.tzinfo is None:
            object.__setattr__(self, "taken_at", self.taken_at.replace(tzinfo=timezone.utc))

    @property
    def total_value_usd(self) -> float:
        return sum(h.value_usd for h in self.holdings)

    def holding(self, asset: str) -> Optional[AssetHolding]:
        for h in self.holdings:
            if h.asset == asset:
                return h
        return None

    def quantity_of(self, asset: str) -> int:
        h = self.holding(asset)
        return h.quantity if h else 0

    def value_of(self, asset: str) -> float:
        h = self.holding(asset)
        return h.value_usd if h else 0.0

    def price_of(self, asset: str) -> Optional[float]:
        h = self.holding(asset)
        return h.price_usd if h else None

    def allocation_pct(self) -> Dict[str, float]:
        """Asset -> percent of total portfolio value."""
        total = self.total_value_usd
        if total <= 0:
            return {h.asset: 0.0 for h in self.holdings}
        return {h.asset: h.value_usd / total * 100.0 for h in self.holdings}


@dataclass(frozen=True)
class MarketSignals:
    """Raw market readings as delivered by the data source."""
    volatility_index: float             # 0-100
    price_change_24h_pct: float
    tvl_usd: float = 0.0
    volume_24h_usd: float = 0.0
    observed_at: datetime = field(default_factory=utcnow)
    prices: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def neutral(cls) -> "MarketSignals":
        """Signals used when the data source cannot provide any."""
        return cls(volatility_index=30.0, price_change_24h_pct=0.0)


@dataclass(frozen=True)
class MarketCondition:
    """Oriented view of the market used by strategy selection."""
    volatility_regime: str      # low / moderate / high / extreme
    trend_direction: str        # bullish / neutral / bearish
    confidence: float           # 0-100
    recommended_category: str   # yield / rebalance / liquidity
    volatility_index: float = 0.0
    price_change_24h_pct: float = 0.0
    summary: str = ""
    source: str = "heuristic"   # heuristic / analysis
    assessed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.volatility_regime not in VOLATILITY_REGIMES:
            raise ValueError(f"unknown volatility regime: {self.volatility_regime}")
        if self.trend_direction not in TREND_DIRECTIONS:
            raise ValueError(f"unknown trend direction: {self.trend_direction}")


@dataclass(frozen=True)
class YieldOpportunity:
    venue: str
    kind: str               # staking / lending / lp / vault
    input_asset: str
    output_asset: str
    apy: float              # percent
    risk_score: float       # 0-100
    tvl_usd: float = 0.0
    description: str = ""


@dataclass(frozen=True)
class ProposedAction:
    """
    A value-moving action proposed by a strategy.

    Immutable once created; downstream stages wrap it with a verdict or an
    outcome instead of editing it.
    """
    kind: str
    venue: str
    input_asset: str
    output_asset: str
    quantity: int                     # base units of input_asset
    value_usd: float                  # USD moved by the action
    max_slippage_bps: int
    priority: int = 1                 # 1 = first
    rationale: str = ""
    description: str = ""
    expected_value_change_usd: float = 0.0
    confidence: float = 0.0           # evaluator confidence stamped on the action
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.kind not in ACTION_KINDS:
            raise ValueError(f"unknown action kind: {self.kind}")
        if not isinstance(self.quantity, int) or isinstance(self.quantity, bool):
            raise TypeError(f"quantity must be int base units, got {type(self.quantity).__name__}")
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive, got {self.quantity}")
        if self.max_slippage_bps < 0:
            raise ValueError("max_slippage_bps must be non-negative")

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "kind": self.kind,
            "venue": self.venue,
            "input_asset": self.input_asset,
            "output_asset": self.output_asset,
            "quantity": self.quantity,
            "value_usd": round(self.value_usd, 2),
            "max_slippage_bps": self.max_slippage_bps,
            "priority": self.priority,
            "rationale": self.rationale,
            "expected_value_change_usd": round(self.expected_value_change_usd, 4),
            "confidence": self.confidence,
        }


@dataclass
class RiskCheck:
    name: str
    passed: bool
    value: float
    limit: float
    message: str = ""


@dataclass
class RiskVerdict:
    """Outcome of running every risk check against one action."""
    action_id: str
    approved: bool
    risk_score: float
    checks: List[RiskCheck] = field(default_factory=list)
    summary: str = ""
    halted: bool = False   # circuit breaker short-circuited the checks

    @property
    def failed_checks(self) -> List[RiskCheck]:
        return [c for c in self.checks if not c.passed]

    def to_dict(self) -> Dict[str, object]:
        return {
            "action_id": self.action_id,
            "approved": self.approved,
            "risk_score": self.risk_score,
            "summary": self.summary,
            "halted": self.halted,
            "checks": [
                {
                    "name": c.name,
                    "passed": c.passed,
                    "value": c.value,
                    "limit": c.limit,
                    "message": c.message,
                }
                for c in self.checks
            ],
        }


@dataclass
class CircuitBreakerState:
    active: bool = False
    reason: Optional[str] = None
    activated_at: Optional[datetime] = None
    activation_date: Optional[str] = None   # YYYY-MM-DD (UTC)
    day: Optional[str] = None               # trading day the counters belong to
    daily_loss_usd: float = 0.0
    failed_executions: int = 0
    consecutive_failures: int = 0
    start_of_day_value_usd: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "active": self.active,
            "reason": self.reason,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "activation_date": self.activation_date,
            "day": self.day,
            "daily_loss_usd": round(self.daily_loss_usd, 2),
            "failed_executions": self.failed_executions,
            "consecutive_failures": self.consecutive_failures,
            "start_of_day_value_usd": round(self.start_of_day_value_usd, 2),
        }


STATUS_CONFIRMED = "CONFIRMED"
STATUS_FAILED = "FAILED"
STATUS_SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class ExecutionOutcome:
    action_id: str
    success: bool
    status: str                     # CONFIRMED / FAILED / SKIPPED
    signature: Optional[str] = None
    compute_units: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0
    completed_at: datetime = field(default_factory=utcnow)

    @classmethod
    def failed(cls, action_id: str, error: str, retry_count: int = 0,
               signature: Optional[str] = None) -> "ExecutionOutcome":
        return cls(
            action_id=action_id,
            success=False,
            status=STATUS_FAILED,
            signature=signature,
            error=error,
            retry_count=retry_count,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "action_id": self.action_id,
            "success": self.success,
            "status": self.status,
            "signature": self.signature,
            "compute_units": self.compute_units,
            "error": self.error,
            "retry_count": self.retry_count,
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(frozen=True)
class VenuePosition:
    """Value the wallet already has deployed at a venue."""
    venue: str
    asset: str
    quantity: int
    value_usd: float
