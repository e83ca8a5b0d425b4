"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before the agent loop starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class AssetsConfig(BaseModel):
    """Base asset and token decimals"""
    base: str = Field(default="SOL", min_length=1, description="Asset that funds and receives every trade")
    base_decimals: int = Field(default=9, ge=0, le=18, description="Decimals of the base asset")
    decimals: Dict[str, int] = Field(default_factory=dict, description="Decimals per SPL token symbol")

    @field_validator("decimals")
    @classmethod
    def decimals_in_range(cls, v: Dict[str, int]) -> Dict[str, int]:
        for symbol, d in v.items():
            if not 0 <= d <= 18:
                raise ValueError(f"decimals for {symbol} must be within 0-18, got {d}")
        return v


class RiskConfig(BaseModel):
    """Risk gate limits"""
    max_position_size_pct: float = Field(default=25.0, ge=1, le=100, description="Max value of one action as % of portfolio")
    max_slippage_bps: int = Field(default=100, ge=1, le=5000, description="Max accepted slippage")
    max_daily_loss_pct: float = Field(default=5.0, ge=0.1, le=100, description="Daily loss that trips the circuit breaker")
    min_reserve: float = Field(default=0.05, ge=0.001, description="Base asset kept for fees (whole units)")
    max_protocol_exposure_pct: float = Field(default=50.0, ge=10, le=100, description="Max exposure to one venue %")
    estimated_fee: float = Field(default=0.001, ge=0, description="Fee assumed per action (whole base units)")


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker parameters"""
    max_consecutive_failures: int = Field(default=5, gt=0, description="Failed executions in a row before tripping")


class ExecutionSettings(BaseModel):
    """Execution engine parameters"""
    max_compute_units: int = Field(default=400_000, ge=1, le=1_400_000, description="SetComputeUnitLimit value")
    priority_fee_micro_lamports: int = Field(default=50_000, ge=0, description="SetComputeUnitPrice value")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per action")
    retry_backoff_ms: int = Field(default=1000, ge=0, description="Backoff unit; sleep is backoff x attempt")
    confirmation_timeout_ms: int = Field(default=30_000, gt=0, description="Confirmation window")
    simulate_before_send: bool = Field(default=True, description="Simulate before every send")


class RouteConfig(BaseModel):
    kind: Literal["swap", "stake", "lend", "deposit", "provide_liquidity"] = "swap"
    venue: str = Field(min_length=1)


class StrategyToggle(BaseModel):
    """Fields shared by every strategy section"""
    type: Optional[Literal["conservative", "balanced"]] = None
    enabled: bool = True
    description: str = ""


class ConservativeStrategyConfig(StrategyToggle):
    max_opportunity_risk: float = Field(default=30, gt=0, le=100, description="Only opportunities below this risk")
    idle_threshold_pct: float = Field(default=20, ge=0, le=100, description="Idle base share that triggers a stake")
    min_idle_units: int = Field(default=100_000_000, ge=0, description="Minimum idle base (base units)")
    max_trade_pct: float = Field(default=20, gt=0, le=100, description="Cap per action as % of portfolio")
    slippage_bps: int = Field(default=10, ge=0, le=5000)
    stake_fraction: float = Field(default=0.5, gt=0, le=1, description="Share of idle base to stake")


class BalancedStrategyConfig(StrategyToggle):
    target_allocation: Dict[str, float] = Field(
        default_factory=lambda: {"SOL": 50.0, "mSOL": 30.0, "USDC": 20.0},
        description="Asset -> target %",
    )
    tolerance_pct: float = Field(default=5.0, gt=0, le=50, description="Drift allowed before rebalancing")
    min_trade_usd: float = Field(default=5.0, ge=0)
    max_trade_pct: float = Field(default=20.0, gt=0, le=100)
    swap_slippage_bps: int = Field(default=50, ge=0, le=5000)
    stake_slippage_bps: int = Field(default=10, ge=0, le=5000)
    default_swap_venue: str = Field(default="jupiter", min_length=1)
    routes: Dict[str, RouteConfig] = Field(default_factory=dict, description="Asset -> how to acquire it")

    @field_validator("target_allocation")
    @classmethod
    def targets_sum_to_100(cls, v: Dict[str, float]) -> Dict[str, float]:
        if any(pct < 0 for pct in v.values()):
            raise ValueError("target percentages must be non-negative")
        total = sum(v.values())
        if abs(total - 100.0) > 0.01:
            raise ValueError(f"target allocation must sum to 100, got {total}")
        return v


class StrategiesConfig(BaseModel):
    conservative: ConservativeStrategyConfig = Field(default_factory=ConservativeStrategyConfig)
    balanced: BalancedStrategyConfig = Field(default_factory=BalancedStrategyConfig)


class YieldSourceConfig(BaseModel):
    venue: str = Field(min_length=1)
    kind: Literal["staking", "lending", "lp", "vault"]
    input_asset: str = Field(min_length=1)
    output_asset: str = Field(min_length=1)
    apy: float = Field(ge=0, le=1000, description="Base APY %")
    risk_multiplier: float = Field(default=1.0, gt=0, le=5)
    tvl_usd: float = Field(default=0.0, ge=0)
    min_tvl_usd: float = Field(default=0.0, ge=0)
    description: str = ""


class MarketConfig(BaseModel):
    """Heuristic market analyzer thresholds"""
    low_volatility_max: float = Field(default=20, ge=0, le=100)
    moderate_volatility_max: float = Field(default=45, ge=0, le=100)
    high_volatility_max: float = Field(default=70, ge=0, le=100)
    trend_threshold_pct: float = Field(default=3.0, gt=0)
    stale_after_s: float = Field(default=60, gt=0)
    very_stale_after_s: float = Field(default=300, gt=0)

    @model_validator(mode="after")
    def thresholds_ordered(self) -> "MarketConfig":
        if not self.low_volatility_max < self.moderate_volatility_max < self.high_volatility_max:
            raise ValueError("volatility thresholds must be increasing: low < moderate < high")
        if self.very_stale_after_s < self.stale_after_s:
            raise ValueError("very_stale_after_s must be >= stale_after_s")
        return self


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    assets: AssetsConfig = Field(default_factory=AssetsConfig)
    risk: RiskConfig
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    strategies: StrategiesConfig = Field(default_factory=StrategiesConfig)
    yield_sources: List[YieldSourceConfig] = Field(default_factory=list)
    market: MarketConfig = Field(default_factory=MarketConfig)


# ===== App Schema =====
class PhaseTimeoutsConfig(BaseModel):
    observe_s: float = Field(default=10.0, gt=0)
    orient_s: float = Field(default=15.0, gt=0)
    act_s: float = Field(default=60.0, gt=0)


class AgentConfig(BaseModel):
    """Control loop parameters"""
    interval_s: float = Field(default=60, ge=1, description="Seconds between cycle starts")
    mode: Literal["advisory", "auto"] = Field(default="advisory", description="auto executes approved actions")
    jitter_pct: float = Field(default=10, ge=0, le=20)
    max_actions_per_cycle: int = Field(default=5, ge=1, le=50)
    min_confidence_threshold: float = Field(default=40, ge=0, le=100)
    max_concurrent_executions: int = Field(default=3, ge=1, le=32)
    phase_timeouts: PhaseTimeoutsConfig = Field(default_factory=PhaseTimeoutsConfig)
    cycle_timeout_s: Optional[float] = Field(default=None, gt=0, description="Hard ceiling for a whole cycle")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str = "logs/ooda-agent.log"

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    healthcheck_enabled: bool = False
    healthcheck_port: int = Field(default=8080, gt=0, lt=65536)


class ChainConfig(BaseModel):
    rpc_url: str = Field(default="https://api.mainnet-beta.solana.com", pattern=r"^https?://")
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    request_timeout_s: float = Field(default=10.0, gt=0)
    http_max_retries: int = Field(default=3, ge=0, le=10)
    poll_interval_s: float = Field(default=0.5, gt=0)


class AnalysisConfig(BaseModel):
    enabled: bool = False
    provider: Literal["openai", "anthropic", "mock"] = "mock"
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    timeout_s: float = Field(default=10.0, gt=0)


class DecisionLogConfig(BaseModel):
    max_commitments: int = Field(default=1000, ge=1)
    audit_enabled: bool = True
    audit_file: str = "logs/audit.jsonl"


class EventsConfig(BaseModel):
    max_queue: int = Field(default=1000, ge=1)


def _check_factory(spec: str) -> str:
    module, sep, attr = spec.partition(":")
    if not sep or not module or not attr:
        raise ValueError(f"factory must look like 'module:callable', got {spec!r}")
    return spec


class CollaboratorsConfig(BaseModel):
    """Factories loaded at startup, as 'package.module:callable'"""
    data_source: str
    signer: str
    chain_client: Optional[str] = None
    venue_adapters: List[str] = Field(default_factory=list)

    @field_validator("data_source", "signer", "chain_client")
    @classmethod
    def factory_format(cls, v: Optional[str]) -> Optional[str]:
        return _check_factory(v) if v is not None else v

    @field_validator("venue_adapters")
    @classmethod
    def adapter_formats(cls, v: List[str]) -> List[str]:
        return [_check_factory(s) for s in v]


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    agent: AgentConfig = Field(default_factory=AgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    decision_log: DecisionLogConfig = Field(default_factory=DecisionLogConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    collaborators: CollaboratorsConfig
    venues: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="Per-venue adapter config")


# ===== Loading =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n" + "\n".join(snippet_lines)
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks that span sections or files.

    Detects:
    - Balanced targets that omit the base asset
    - Routes for assets that have no target
    - An ACT timeout shorter than the confirmation window
    - A cycle ceiling shorter than the observe and orient budgets
    """
    errors = []
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))

    base = policy.assets.base
    balanced = policy.strategies.balanced
    if base not in balanced.target_allocation:
        errors.append(
            f"CONTRADICTION: strategies.balanced.target_allocation has no entry for base asset {base}"
        )
    for asset in balanced.routes:
        if asset not in balanced.target_allocation:
            errors.append(
                f"CONTRADICTION: strategies.balanced.routes.{asset} has no target allocation"
            )
    for asset in balanced.target_allocation:
        if asset != base and asset not in policy.assets.decimals:
            logger.warning(f"⚠️  No decimals configured for {asset}; rebalancer falls back to holding decimals")

    if not policy.strategies.conservative.enabled and not balanced.enabled:
        errors.append("UNSAFE: every strategy is disabled; the agent can never propose actions")

    timeouts = app.agent.phase_timeouts
    if timeouts.act_s * 1000 < policy.execution.confirmation_timeout_ms:
        errors.append(
            f"CONTRADICTION: agent.phase_timeouts.act_s={timeouts.act_s} is shorter than "
            f"execution.confirmation_timeout_ms={policy.execution.confirmation_timeout_ms}"
        )
    if app.agent.cycle_timeout_s is not None and app.agent.cycle_timeout_s < timeouts.observe_s + timeouts.orient_s:
        errors.append(
            f"CONTRADICTION: agent.cycle_timeout_s={app.agent.cycle_timeout_s} is shorter than "
            f"observe_s + orient_s ({timeouts.observe_s + timeouts.orient_s})"
        )
    if app.agent.cycle_timeout_s is not None and app.agent.cycle_timeout_s > app.agent.interval_s:
        logger.warning("⚠️  agent.cycle_timeout_s exceeds interval_s; cycles may run back to back")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
