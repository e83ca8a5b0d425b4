"""
ooda-agent Runner: Main Loop

Orchestrates the Observe-Orient-Decide-Act cycle.

Flow:
1. OBSERVE  - portfolio snapshot, market signals, venue positions
2. ORIENT   - market condition (LLM analyst, heuristic fallback), ranked yield
3. DECIDE   - strategy evaluation, confidence filter, risk gate
4. ACT      - execute approved actions (auto mode only), fold outcomes into
              the circuit breaker, seal one decision commitment

A failing cycle is logged and reported; the loop keeps running. Only
FatalInitError at startup aborts the process.
"""

import copy
import hashlib
import importlib
import logging
import random
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from ai.analyst import MarketAnalyst
from core.audit_log import AuditLogger
from core.decision_log import CommitmentLog, build_analysis_trace, build_cycle_trace
from core.exceptions import CriticalDataUnavailable, FatalInitError
from core.execution import ExecutionConfig, ExecutionEngine
from core.models import (
    ExecutionOutcome,
    MarketCondition,
    MarketSignals,
    PortfolioSnapshot,
    ProposedAction,
)
from core.registry import CapabilityRegistry
from core.risk import RiskEngine
from core.solana_rpc import SolanaRpcClient
from core.trading_cycle import DecisionPipeline, DecisionResult
from infra import events as ev
from infra.events import EventBus
from infra.healthcheck import HealthServer, build_health_payload
from infra.metrics import CycleStats, MetricsRecorder
from strategy.evaluator import StrategyEvaluator
from strategy.market_analyzer import MarketAnalyzer
from strategy.yield_optimizer import YieldOptimizer

logger = logging.getLogger(__name__)

MODES = ("advisory", "auto")
BREAKER_NAME = "daily_loss"


class LoopPhase(str, Enum):
    IDLE = "IDLE"
    OBSERVING = "OBSERVING"
    ORIENTING = "ORIENTING"
    DECIDING = "DECIDING"
    ACTING = "ACTING"


class DataSource(ABC):
    """Portfolio and market data provider consumed by the OBSERVE phase."""

    @abstractmethod
    def fetch_snapshot(self) -> PortfolioSnapshot:
        """Current holdings with prices. Raising fails the cycle."""

    @abstractmethod
    def fetch_signals(self) -> Optional[MarketSignals]:
        """Market signals. Raising or returning None degrades to neutral signals."""


@dataclass(frozen=True)
class PhaseTimeouts:
    observe_s: float = 10.0
    orient_s: float = 15.0
    act_s: float = 60.0

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "PhaseTimeouts":
        cfg = cfg or {}
        defaults = cls()
        return cls(
            observe_s=float(cfg.get("observe_s", defaults.observe_s)),
            orient_s=float(cfg.get("orient_s", defaults.orient_s)),
            act_s=float(cfg.get("act_s", defaults.act_s)),
        )


@dataclass
class CycleReport:
    """What one cycle did; returned by run_cycle()."""
    cycle: int
    status: str
    mode: str
    started_at: datetime
    duration_s: float = 0.0
    snapshot: Optional[PortfolioSnapshot] = None
    condition: Optional[MarketCondition] = None
    decision: Optional[DecisionResult] = None
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    commitment_hash: Optional[str] = None
    error: Optional[str] = None


class AgentLoop:
    """
    OODA control loop orchestrator.

    Responsibilities:
    - Run periodic cycles, never overlapping
    - Bound every I/O call with a phase timeout
    - Enforce the advisory/auto mode gate at ACTING entry
    - Execute approved actions with bounded, per-target serialized concurrency
    - Publish events, metrics, health and audit records
    """

    def __init__(self,
                 *,
                 data_source: DataSource,
                 registry: CapabilityRegistry,
                 risk_engine: RiskEngine,
                 pipeline: DecisionPipeline,
                 execution_engine: ExecutionEngine,
                 commitment_log: CommitmentLog,
                 owner: str = "",
                 analyzer: Optional[MarketAnalyzer] = None,
                 optimizer: Optional[YieldOptimizer] = None,
                 analyst: Optional[MarketAnalyst] = None,
                 mode: str = "advisory",
                 events: Optional[EventBus] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None,
                 interval_s: float = 60.0,
                 jitter_pct: float = 10.0,
                 max_concurrent_executions: int = 3,
                 phase_timeouts: Optional[PhaseTimeouts] = None,
                 cycle_timeout_s: Optional[float] = None,
                 monitoring_config: Optional[Dict[str, Any]] = None,
                 config_hash: Optional[str] = None):
        if mode not in MODES:
            raise ValueError(f"Invalid mode: {mode} (expected one of {', '.join(MODES)})")

        self.data_source = data_source
        self.registry = registry
        self.risk_engine = risk_engine
        self.pipeline = pipeline
        self.execution_engine = execution_engine
        self.commitment_log = commitment_log
        self.owner = owner
        self.analyzer = analyzer or MarketAnalyzer()
        self.optimizer = optimizer or YieldOptimizer()
        self.analyst = analyst
        self.events = events
        self.metrics = metrics
        self.audit = audit
        self.config_hash = config_hash
        self.monitoring_config = monitoring_config or {}

        self.loop_interval_seconds = max(float(interval_s), 1.0)
        # Jitter prevents lockstep behaviour across instances
        self.loop_jitter_pct = max(0.0, min(float(jitter_pct), 20.0))
        self.phase_timeouts = phase_timeouts or PhaseTimeouts()
        self.cycle_timeout_s = float(cycle_timeout_s) if cycle_timeout_s else None

        self._mode = mode
        self._phase = LoopPhase.IDLE
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._running = False
        self._cycle_count = 0
        self._last_cycle_at: Optional[datetime] = None
        self._last_status: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_cycle_failed = False
        self._stage_timings: Dict[str, float] = {}

        self._io_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="observe")
        self._exec_pool = ThreadPoolExecutor(
            max_workers=max(1, int(max_concurrent_executions)), thread_name_prefix="execute"
        )
        self._target_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._target_locks_guard = threading.Lock()
        self.health_server: Optional[HealthServer] = None

        logger.info(
            f"Initialized AgentLoop in {self._mode} mode "
            f"(interval={self.loop_interval_seconds:.0f}s, venues={len(self.registry)})"
        )

    # ----- mode / status -----

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def phase(self) -> LoopPhase:
        return self._phase

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def set_mode(self, mode: str) -> None:
        if mode not in MODES:
            raise ValueError(f"Invalid mode: {mode} (expected one of {', '.join(MODES)})")
        with self._state_lock:
            previous, self._mode = self._mode, mode
        if previous != mode:
            logger.warning(f"Agent mode changed: {previous} -> {mode}")
            self._publish(ev.MODE_CHANGED, previous=previous, mode=mode)

    def status_snapshot(self) -> Dict[str, Any]:
        with self._state_lock:
            status = {
                "phase": self._phase.value,
                "mode": self._mode,
                "running": self._running,
                "cycle_count": self._cycle_count,
                "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
                "last_status": self._last_status,
                "last_error": self._last_error,
                "last_cycle_failed": self._last_cycle_failed,
            }
        status["circuit_breaker"] = self.risk_engine.circuit_snapshot()
        status["commitments"] = self.commitment_log.get_stats()
        status["venues"] = self.registry.registered_venues()
        return copy.deepcopy(status)

    # ----- lifecycle -----

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def _handle_stop(self, signum=None, *_):
        logger.warning("=" * 80)
        logger.warning(f"SHUTDOWN SIGNAL RECEIVED ({signum}) - finishing in-flight cycle")
        logger.warning("=" * 80)
        self.stop()

    def stop(self) -> None:
        with self._state_lock:
            self._running = False
        self._stop_event.set()

    def shutdown(self) -> None:
        """Release threads and servers. Every submitted execution still yields an outcome."""
        self.stop()
        self._stop_health_server()
        self._exec_pool.shutdown(wait=True)
        self._io_pool.shutdown(wait=True)
        if self.events:
            self.events.stop()
        logger.info("Agent loop shut down")

    def _stop_health_server(self) -> None:
        server = self.health_server
        if not server:
            return
        try:
            server.stop()
        except OSError as exc:  # pragma: no cover - best-effort shutdown
            logger.warning("Health server stop failed: %s", exc)
        finally:
            self.health_server = None

    def start_health_server(self) -> None:
        cfg = self.monitoring_config
        if not cfg.get("healthcheck_enabled", False):
            return
        port_value = cfg.get("healthcheck_port", 0)
        try:
            port = int(port_value)
        except (TypeError, ValueError):
            logger.warning("Invalid healthcheck_port=%s; disabling health server", port_value)
            return
        if port <= 0:
            logger.warning("Health server port must be > 0; got %s", port)
            return
        if self.health_server:
            return

        server = HealthServer(port, self._health_status_snapshot)
        try:
            server.start()
        except OSError as exc:
            logger.error("Failed to start health server on port %s: %s", port, exc)
            return
        self.health_server = server

    def _health_status_snapshot(self) -> Dict[str, Any]:
        payload = build_health_payload(self.status_snapshot())
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        if self.metrics:
            payload["stage_durations"] = self.metrics.stage_snapshot()
            payload["metrics_enabled"] = self.metrics.is_enabled()
        return payload

    # ----- helpers -----

    def _publish(self, event_type: str, **data: Any) -> None:
        if self.events:
            self.events.publish(event_type, **data)

    def _set_phase(self, phase: LoopPhase) -> None:
        with self._state_lock:
            previous, self._phase = self._phase, phase
            cycle = self._cycle_count
        if previous != phase:
            self._publish(ev.PHASE_CHANGED, previous=previous.value, phase=phase.value, cycle=cycle)

    def _bounded(self, timeout_s: float, deadline: Optional[float]) -> float:
        if deadline is None:
            return timeout_s
        return max(0.0, min(timeout_s, deadline - time.monotonic()))

    def _call(self, fn: Callable, timeout_s: float, *args: Any) -> Any:
        future = self._io_pool.submit(fn, *args)
        return future.result(timeout=timeout_s)

    def _target_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._target_locks_guard:
            lock = self._target_locks.get(key)
            if lock is None:
                lock = self._target_locks[key] = threading.Lock()
            return lock

    @contextmanager
    def _stage_timer(self, stage: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            duration = max(time.perf_counter() - start, 0.0)
            self._stage_timings[stage] = duration
            if self.metrics:
                self.metrics.record_stage_duration(stage, duration)

    # ----- cycle -----

    def run_cycle(self) -> CycleReport:
        """Run one OODA cycle. Never raises for in-cycle failures."""
        with self._cycle_lock:
            started_at = datetime.now(timezone.utc)
            t0 = time.monotonic()
            deadline = t0 + self.cycle_timeout_s if self.cycle_timeout_s else None
            self._stage_timings = {}
            with self._state_lock:
                self._cycle_count += 1
                cycle = self._cycle_count
                mode = self._mode

            try:
                report = self._run_cycle(cycle, started_at, deadline)
                failed = False
            except Exception as e:
                logger.error(f"Cycle {cycle} failed: {e}", exc_info=True)
                report = CycleReport(cycle=cycle, status="failed", mode=mode,
                                     started_at=started_at, error=str(e))
                failed = True
                self._publish(ev.CYCLE_FAILED, cycle=cycle, error=str(e))
            finally:
                self._set_phase(LoopPhase.IDLE)

            report.duration_s = time.monotonic() - t0
            with self._state_lock:
                self._last_cycle_at = datetime.now(timezone.utc)
                self._last_status = report.status
                self._last_error = report.error if failed else None
                self._last_cycle_failed = failed

            if not failed:
                self._publish(
                    ev.CYCLE_COMPLETED,
                    cycle=cycle,
                    status=report.status,
                    duration_s=round(report.duration_s, 3),
                    commitment_hash=report.commitment_hash,
                )
            self._record_cycle_metrics(report)
            self._audit_cycle(report)
            return report

    def _run_cycle(self, cycle: int, started_at: datetime, deadline: Optional[float]) -> CycleReport:
        # OBSERVE
        self._set_phase(LoopPhase.OBSERVING)
        with self._stage_timer("observe"):
            snapshot, signals = self._observe(deadline)

        # ORIENT
        self._set_phase(LoopPhase.ORIENTING)
        with self._stage_timer("orient"):
            condition, opportunities = self._orient(cycle, snapshot, signals, deadline)

        # DECIDE
        self._set_phase(LoopPhase.DECIDING)
        with self._stage_timer("decide"):
            decision = self.pipeline.decide(snapshot, condition, opportunities)
        self._publish_decision(cycle, decision)

        # ACT
        self._set_phase(LoopPhase.ACTING)
        mode = self.mode
        with self._stage_timer("act"):
            outcomes = self._act(mode, snapshot, decision, deadline)

        status = self._cycle_status(mode, decision, outcomes)
        commitment = self._commit_decision(cycle, mode, snapshot, condition, decision, outcomes)

        return CycleReport(
            cycle=cycle,
            status=status,
            mode=mode,
            started_at=started_at,
            snapshot=snapshot,
            condition=condition,
            decision=decision,
            outcomes=outcomes,
            commitment_hash=commitment.hash,
        )

    def _observe(self, deadline: Optional[float]) -> Tuple[PortfolioSnapshot, MarketSignals]:
        timeout = self._bounded(self.phase_timeouts.observe_s, deadline)
        try:
            snapshot = self._call(self.data_source.fetch_snapshot, timeout)
        except FuturesTimeout as e:
            raise CriticalDataUnavailable(f"portfolio snapshot timed out after {timeout:.1f}s", e) from e
        except Exception as e:
            raise CriticalDataUnavailable(f"portfolio snapshot: {e}", e) from e
        if snapshot is None:
            raise CriticalDataUnavailable("portfolio snapshot: data source returned nothing")

        signals: Optional[MarketSignals] = None
        try:
            signals = self._call(self.data_source.fetch_signals, self._bounded(self.phase_timeouts.observe_s, deadline))
        except Exception as e:
            logger.warning(f"Market signals unavailable ({e!r}); using neutral defaults")
        if signals is None:
            signals = MarketSignals.neutral()

        owner = snapshot.owner or self.owner
        try:
            positions = self._call(self.registry.positions, self._bounded(self.phase_timeouts.observe_s, deadline), owner)
        except Exception as e:
            logger.warning(f"Venue positions unavailable ({e!r}); exposure check sees none")
            positions = []

        self.risk_engine.update_portfolio(snapshot)
        self.risk_engine.update_positions(positions)
        if self.metrics:
            self.metrics.record_portfolio_value(snapshot.total_value_usd)

        logger.info(
            f"Observed portfolio ${snapshot.total_value_usd:,.2f} across {len(snapshot.holdings)} holdings, "
            f"{len(positions)} venue positions"
        )
        return snapshot, signals

    def _orient(self, cycle: int, snapshot: PortfolioSnapshot, signals: MarketSignals,
                deadline: Optional[float]):
        condition: Optional[MarketCondition] = None
        analysis = None
        if self.analyst is not None:
            timeout = self._bounded(self.phase_timeouts.orient_s, deadline)
            try:
                analysis = self._call(self.analyst.analyze, timeout, snapshot, signals)
                condition = self.analyst.to_condition(analysis, signals)
            except Exception as e:
                logger.warning(f"Market analysis unavailable ({e!r}); falling back to heuristic")
                analysis = None
                if self.metrics:
                    self.metrics.record_analysis_fallback()

        if condition is None:
            condition = self.analyzer.analyze(signals)

        opportunities = self.optimizer.rank(condition)
        logger.info(
            f"Market: {condition.summary} [source={condition.source}, "
            f"confidence={condition.confidence:.0f}]; {len(opportunities)} yield opportunities"
        )

        if analysis is not None:
            self._commit(build_analysis_trace(cycle=cycle, analysis=analysis.to_dict(), condition=condition))
        return condition, opportunities

    def _publish_decision(self, cycle: int, decision: DecisionResult) -> None:
        approved_ids = {a.id for a in decision.approved}
        for action in decision.proposed:
            self._publish(ev.ACTION_PROPOSED, cycle=cycle, action=action.to_dict())
        for verdict in decision.verdicts:
            if verdict.action_id in approved_ids:
                self._publish(ev.ACTION_APPROVED, cycle=cycle, verdict=verdict.to_dict())
            else:
                self._publish(ev.ACTION_REJECTED, cycle=cycle, verdict=verdict.to_dict())
                if self.metrics:
                    for check in verdict.failed_checks:
                        self.metrics.record_risk_rejection(check.name)
                    if verdict.halted:
                        self.metrics.record_risk_rejection("circuit_breaker")

    def _act(self, mode: str, snapshot: PortfolioSnapshot, decision: DecisionResult,
             deadline: Optional[float]) -> List[ExecutionOutcome]:
        if not decision.approved:
            return []
        if mode != "auto":
            logger.info(
                f"Advisory mode: {len(decision.approved)} approved action(s) recorded, not executed"
            )
            return []

        outcomes = self._execute_approved(decision.approved, deadline)

        post_value = self._post_trade_value(deadline)
        was_active = self.risk_engine.breaker.is_active()
        active = self.risk_engine.record_cycle_outcomes(outcomes, snapshot.total_value_usd, post_value)
        if self.metrics:
            self.metrics.record_circuit_breaker_state(BREAKER_NAME, active)
        if active and not was_active:
            breaker = self.risk_engine.circuit_snapshot()
            if self.metrics:
                self.metrics.record_circuit_breaker_trip(BREAKER_NAME)
            self._publish(ev.CIRCUIT_BREAKER_TRIPPED, reason=breaker.get("reason"), breaker=breaker)
        return outcomes

    def _execute_locked(self, action: ProposedAction) -> ExecutionOutcome:
        with self._target_lock((action.venue, action.input_asset)):
            return self.execution_engine.execute(action)

    def _execute_approved(self, actions: List[ProposedAction],
                          deadline: Optional[float]) -> List[ExecutionOutcome]:
        submitted = [(action, self._exec_pool.submit(self._execute_locked, action)) for action in actions]

        outcomes: List[ExecutionOutcome] = []
        for action, future in submitted:
            timeout = self._bounded(self.phase_timeouts.act_s, deadline)
            try:
                outcome = future.result(timeout=timeout)
            except FuturesTimeout:
                # the worker may still land it; the outcome is recorded as FAILED either way
                outcome = ExecutionOutcome.failed(action.id, f"execution timed out after {timeout:.1f}s")
                logger.error(f"Execution of {action.id} timed out after {timeout:.1f}s")
            except Exception as e:
                outcome = ExecutionOutcome.failed(action.id, f"execution error: {e}")
                logger.error(f"Execution of {action.id} raised: {e}", exc_info=True)
            outcomes.append(outcome)
            self._publish(ev.ACTION_EXECUTED, outcome=outcome.to_dict())
        return outcomes

    def _post_trade_value(self, deadline: Optional[float]) -> Optional[float]:
        try:
            snapshot = self._call(self.data_source.fetch_snapshot, self._bounded(self.phase_timeouts.observe_s, deadline))
        except Exception as e:
            logger.warning(f"Post-trade snapshot unavailable ({e!r}); loss tracking skipped this cycle")
            return None
        return snapshot.total_value_usd if snapshot is not None else None

    @staticmethod
    def _cycle_status(mode: str, decision: DecisionResult, outcomes: List[ExecutionOutcome]) -> str:
        if outcomes:
            return "executed" if any(o.success for o in outcomes) else "execution_failed"
        if decision.approved and mode != "auto":
            return "advisory"
        return decision.no_action_reason or "no_action"

    def _commit(self, trace: Dict[str, Any]):
        commitment = self.commitment_log.commit(trace)
        self._publish(ev.COMMITMENT_ADDED, sequence=commitment.sequence, hash=commitment.hash, kind=commitment.kind)
        if self.metrics:
            self.metrics.record_commitments(len(self.commitment_log))
        return commitment

    def _commit_decision(self, cycle: int, mode: str, snapshot: PortfolioSnapshot,
                         condition: MarketCondition, decision: DecisionResult,
                         outcomes: List[ExecutionOutcome]):
        evaluation = decision.evaluation
        trace = build_cycle_trace(
            cycle=cycle,
            mode=mode,
            snapshot=snapshot,
            condition=condition,
            strategy_id=evaluation.strategy_id if evaluation else None,
            explanation=evaluation.explanation if evaluation else (decision.error or ""),
            confidence=evaluation.confidence if evaluation else 0.0,
            proposed=decision.proposed,
            verdicts=decision.verdicts,
            deferred=decision.deferred,
            filtered=decision.filtered,
            outcomes=outcomes,
            halted=decision.halted,
        )
        return self._commit(trace)

    # ----- metrics / audit -----

    def _record_cycle_metrics(self, report: CycleReport) -> None:
        if self.metrics is None:
            return

        decision = report.decision
        stats = CycleStats(
            status=report.status,
            proposals=len(decision.proposed) if decision else 0,
            approved=len(decision.approved) if decision else 0,
            executed=sum(1 for o in report.outcomes if o.success),
            duration_seconds=report.duration_s,
        )
        self.metrics.observe_cycle(stats)
        if report.status != "executed":
            self.metrics.record_no_trade_reason(report.status)
        self._log_cycle_latency_summary(status=report.status, total_duration=report.duration_s)

    def _log_cycle_latency_summary(self, *, status: str, total_duration: float) -> None:
        snapshot = dict(self._stage_timings)
        if not snapshot:
            return
        ordered = ", ".join(f"{stage}={snapshot[stage]:.3f}s" for stage in sorted(snapshot.keys()))
        logger.info("Latency summary [%s]: total=%.3fs | %s", status, total_duration, ordered)

    def _audit_cycle(self, report: CycleReport) -> None:
        if not self.audit:
            return
        decision = report.decision
        self.audit.log_cycle(
            ts=report.started_at,
            cycle=report.cycle,
            mode=report.mode,
            status=report.status,
            proposed=len(decision.proposed) if decision else 0,
            approved=len(decision.approved) if decision else 0,
            executed=sum(1 for o in report.outcomes if o.success),
            error=report.error,
            stage_latencies=dict(self._stage_timings),
            config_hash=self.config_hash,
            commitment_hash=report.commitment_hash,
        )

    # ----- scheduling -----

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """
        Run cycles until stop() is called.

        Args:
            interval_seconds: Seconds between cycle starts
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        configured_interval = max(configured_interval, 1.0)

        with self._state_lock:
            self._running = True
        self._stop_event.clear()
        logger.info(f"Starting continuous loop (interval={configured_interval}s, jitter={self.loop_jitter_pct:.1f}%)")

        while not self._stop_event.is_set():
            start = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - start

            jitter = random.uniform(0, self.loop_jitter_pct / 100.0) * configured_interval
            sleep_for = max(1.0, configured_interval - elapsed + jitter)

            utilization = elapsed / configured_interval
            if utilization > 0.7:
                logger.warning(f"High cycle utilization ({utilization:.1%}) of {configured_interval:.0f}s interval")

            logger.info(
                f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s "
                f"(util: {utilization:.1%}, jitter: +{jitter / configured_interval * 100.0:.1f}%)"
            )
            # wait() returns early when stop() sets the event
            self._stop_event.wait(sleep_for)

        with self._state_lock:
            self._running = False
        logger.info("Agent loop stopped cleanly.")


# ----- construction from config -----

def _load_yaml(config_dir: Path, filename: str) -> dict:
    """Load YAML config file"""
    with open(config_dir / filename) as f:
        return yaml.safe_load(f) or {}


def _compute_config_hash(config_dir: Path) -> str:
    """
    SHA256 of the config files, first 16 hex chars.

    Recorded with every cycle audit for configuration drift detection.
    """
    hasher = hashlib.sha256()
    for filename in ("app.yaml", "policy.yaml"):
        try:
            with open(config_dir / filename, "rb") as f:
                hasher.update(f.read())
        except OSError as e:
            logger.warning(f"Failed to read {filename} for config hash: {e}")
            hasher.update(b"ERROR")
    return hasher.hexdigest()[:16]


def _configure_logging(log_cfg: Optional[Dict[str, Any]]) -> None:
    log_cfg = log_cfg or {}
    log_file = log_cfg.get("file", "logs/ooda-agent.log")
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )


def load_factory(spec: str) -> Callable[..., Any]:
    """Resolve a 'package.module:callable' string."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"factory must look like 'module:callable', got {spec!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from e


def _build_collaborator(collaborators: Dict[str, Any], key: str, app_config: Dict[str, Any]) -> Any:
    spec = collaborators.get(key)
    if not spec:
        raise FatalInitError(f"collaborators.{key} is not configured")
    try:
        return load_factory(spec)(app_config)
    except Exception as e:
        raise FatalInitError(f"cannot construct {key} from {spec}: {e}") from e


def build_loop_from_config(config_dir: str = "config",
                           mode: Optional[str] = None) -> AgentLoop:
    """
    Build a fully wired AgentLoop from config/app.yaml and config/policy.yaml.

    Raises:
        FatalInitError: invalid config, or the signer, data source or chain
            client cannot be constructed, or the chain is unreachable
    """
    from tools.config_validator import validate_all_configs

    config_path = Path(config_dir)
    validation_errors = validate_all_configs(config_dir)
    if validation_errors:
        logger.error("=" * 80)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 80)
        for idx, error in enumerate(validation_errors, start=1):
            lines = str(error).splitlines()
            if lines:
                logger.error(f"{idx:>2}. {lines[0]}")
        logger.error("=" * 80)
        raise FatalInitError(f"Invalid configuration: {len(validation_errors)} error(s) found")

    app_config = _load_yaml(config_path, "app.yaml")
    policy_config = _load_yaml(config_path, "policy.yaml")
    config_hash = _compute_config_hash(config_path)

    _configure_logging(app_config.get("logging"))
    logger.info(f"Configuration hash: {config_hash} (app+policy)")

    agent_cfg = app_config.get("agent", {}) or {}
    monitoring_cfg = app_config.get("monitoring", {}) or {}
    collaborators = app_config.get("collaborators", {}) or {}

    data_source = _build_collaborator(collaborators, "data_source", app_config)
    signer = _build_collaborator(collaborators, "signer", app_config)
    if collaborators.get("chain_client"):
        chain = _build_collaborator(collaborators, "chain_client", app_config)
    else:
        chain = SolanaRpcClient.from_config(app_config.get("chain"))

    try:
        chain_ok = chain.is_healthy()
    except Exception as e:
        raise FatalInitError(f"chain health check failed: {e}") from e
    if not chain_ok:
        raise FatalInitError("chain endpoint is unreachable or unhealthy")

    registry = CapabilityRegistry()
    for spec in collaborators.get("venue_adapters", []) or []:
        try:
            registry.register(load_factory(spec)(app_config))
        except Exception as e:
            logger.error(f"Venue adapter {spec} could not be loaded: {e}")
    registry.initialize_all(app_config.get("venues"))

    metrics = MetricsRecorder(
        enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
        port=int(monitoring_cfg.get("metrics_port", 9100)),
    )
    metrics.start()

    risk_engine = RiskEngine(policy_config)
    pipeline = DecisionPipeline(
        StrategyEvaluator.from_policy(policy_config),
        risk_engine,
        max_actions_per_cycle=int(agent_cfg.get("max_actions_per_cycle", 5)),
        min_confidence_threshold=float(agent_cfg.get("min_confidence_threshold", 40)),
    )
    execution_engine = ExecutionEngine(
        registry,
        chain,
        signer,
        ExecutionConfig.from_config(policy_config.get("execution")),
        metrics=metrics,
    )

    log_cfg = app_config.get("decision_log", {}) or {}
    audit = AuditLogger(log_cfg.get("audit_file")) if log_cfg.get("audit_enabled", True) else None
    commitment_log = CommitmentLog(int(log_cfg.get("max_commitments", 1000)), sink=audit)

    analyzer = MarketAnalyzer(policy_config.get("market"))
    try:
        analyst = MarketAnalyst.from_config(app_config.get("analysis"), analyzer)
    except ValueError as e:
        logger.warning(f"Market analyst disabled: {e}")
        analyst = None

    events_cfg = app_config.get("events", {}) or {}
    return AgentLoop(
        data_source=data_source,
        registry=registry,
        risk_engine=risk_engine,
        pipeline=pipeline,
        execution_engine=execution_engine,
        commitment_log=commitment_log,
        owner=getattr(signer, "public_key", ""),
        analyzer=analyzer,
        optimizer=YieldOptimizer(policy_config.get("yield_sources")),
        analyst=analyst,
        mode=mode or agent_cfg.get("mode", "advisory"),
        events=EventBus(max_queue=int(events_cfg.get("max_queue", 1000))),
        metrics=metrics,
        audit=audit,
        interval_s=float(agent_cfg.get("interval_s", 60)),
        jitter_pct=float(agent_cfg.get("jitter_pct", 10)),
        max_concurrent_executions=int(agent_cfg.get("max_concurrent_executions", 3)),
        phase_timeouts=PhaseTimeouts.from_config(agent_cfg.get("phase_timeouts")),
        cycle_timeout_s=agent_cfg.get("cycle_timeout_s"),
        monitoring_config=monitoring_cfg,
        config_hash=config_hash,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="ooda-agent: autonomous DeFi portfolio agent")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: agent.interval_s)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--mode", choices=MODES, default=None, help="Override agent.mode")

    args = parser.parse_args(argv)

    try:
        loop = build_loop_from_config(config_dir=args.config_dir, mode=args.mode)
    except FatalInitError as e:
        logger.critical(f"Startup aborted: {e}")
        print(f"Startup aborted: {e}", file=sys.stderr)
        return 1

    loop.install_signal_handlers()
    loop.start_health_server()
    try:
        if args.once:
            report = loop.run_cycle()
            return 0 if report.status != "failed" else 2
        loop.run_forever(interval_seconds=args.interval)
        return 0
    finally:
        loop.shutdown()


if __name__ == "__main__":
    sys.exit(main())
