"""Prometheus-backed metrics hooks for the agent loop and execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

try:
    from prometheus_client import Counter, Gauge, Summary, start_http_server
except ImportError:  # pragma: no cover - optional dependency
    Counter = Gauge = Summary = None  # type: ignore
    start_http_server = None  # type: ignore

logger = logging.getLogger(__name__)

METRIC_PREFIX = "agent_"


@dataclass
class CycleStats:
    status: str
    proposals: int
    approved: int
    executed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose agent loop stats via Prometheus if available.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._prom_available = Counter is not None
        self._enabled = bool(enabled) and self._prom_available
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_stage_durations: Dict[str, float] = {}
        self._last_no_trade_reason: Optional[str] = None
        self._execution_counts: Dict[str, int] = {}
        self._analysis_fallbacks = 0

        if not self._prom_available and enabled:
            logger.warning(
                "Prometheus client not installed; metrics exporter disabled. "
                "Install `prometheus-client` to enable metrics."
            )

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._cycle_gauge = None
            self._stage_summary = None
            self._no_trade_counter = None
            self._risk_rejections_counter = None
            self._circuit_breaker_gauge = None
            self._circuit_breaker_trips_counter = None
            self._executions_counter = None
            self._execution_retries_counter = None
            self._commitments_gauge = None
            self._analysis_fallback_counter = None
            self._portfolio_value_gauge = None
            return

        self._cycle_summary = Summary(  # type: ignore[assignment]
            "agent_cycle_duration_seconds",
            "Duration of a full OODA cycle",
        )
        self._cycle_counter = Counter(  # type: ignore[assignment]
            "agent_cycle_total",
            "Total agent cycles by status",
            labelnames=("status",),
        )
        self._cycle_gauge = Gauge(  # type: ignore[assignment]
            "agent_cycle_stage_count",
            "Per-cycle counts (proposals, approvals, executions)",
            labelnames=("stage",),
        )
        self._stage_summary = Summary(  # type: ignore[assignment]
            "agent_phase_duration_seconds",
            "Duration of OODA phases",
            labelnames=("stage",),
        )
        self._no_trade_counter = Counter(  # type: ignore[assignment]
            "agent_no_action_total",
            "Number of cycles that ended without approved actions, grouped by reason",
            labelnames=("reason",),
        )
        self._risk_rejections_counter = Counter(  # type: ignore[assignment]
            "agent_risk_rejections_total",
            "Failed risk checks by check name",
            labelnames=("check",),
        )
        self._circuit_breaker_gauge = Gauge(  # type: ignore[assignment]
            "agent_circuit_breaker_state",
            "Circuit breaker state (0=closed/safe, 1=open/tripped)",
            labelnames=("breaker",),
        )
        self._circuit_breaker_trips_counter = Counter(  # type: ignore[assignment]
            "agent_circuit_breaker_trips_total",
            "Total number of circuit breaker trips",
            labelnames=("breaker",),
        )
        self._executions_counter = Counter(  # type: ignore[assignment]
            "agent_executions_total",
            "Execution outcomes by status",
            labelnames=("status",),
        )
        self._execution_retries_counter = Counter(  # type: ignore[assignment]
            "agent_execution_retries_total",
            "Total execution retries (stale reference or transient errors)",
        )
        self._commitments_gauge = Gauge(  # type: ignore[assignment]
            "agent_commitments",
            "Commitments currently held in the commitment log",
        )
        self._analysis_fallback_counter = Counter(  # type: ignore[assignment]
            "agent_analysis_fallbacks_total",
            "Cycles where external analysis failed and the heuristic was used",
        )
        self._portfolio_value_gauge = Gauge(  # type: ignore[assignment]
            "agent_portfolio_value_usd",
            "Portfolio value observed at the start of the last cycle",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._prom_available:
            from prometheus_client import REGISTRY
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    logger.debug("Collector already unregistered: %s", collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        if start_http_server is None:  # pragma: no cover - guarded above
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            assert self._cycle_summary and self._cycle_counter and self._cycle_gauge
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status).inc()
            self._cycle_gauge.labels(stage="proposals").set(stats.proposals)
            self._cycle_gauge.labels(stage="approved").set(stats.approved)
            self._cycle_gauge.labels(stage="executed").set(stats.executed)

        self._last_cycle_stats = stats

    def is_enabled(self) -> bool:
        return self._enabled

    def record_stage_duration(self, stage: str, duration: float) -> None:
        self._last_stage_durations[stage] = duration
        if self._enabled and self._stage_summary:
            self._stage_summary.labels(stage=stage).observe(duration)

    def record_no_trade_reason(self, reason: str) -> None:
        self._last_no_trade_reason = reason
        if self._enabled and self._no_trade_counter:
            self._no_trade_counter.labels(reason=reason).inc()

    def record_risk_rejection(self, check: str) -> None:
        """Record one failed risk check"""
        if self._enabled and self._risk_rejections_counter:
            self._risk_rejections_counter.labels(check=check).inc()

    def record_circuit_breaker_state(self, breaker_name: str, is_open: bool) -> None:
        """Record circuit breaker state (0=closed/safe, 1=open/tripped)"""
        if self._enabled and self._circuit_breaker_gauge:
            self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1 if is_open else 0)

    def record_circuit_breaker_trip(self, breaker_name: str) -> None:
        """Record a circuit breaker trip event"""
        if self._enabled:
            if self._circuit_breaker_gauge:
                self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1)
            if self._circuit_breaker_trips_counter:
                self._circuit_breaker_trips_counter.labels(breaker=breaker_name).inc()

    def record_execution(self, status: str, retry_count: int = 0) -> None:
        """Record an execution outcome and the retries it took"""
        self._execution_counts[status] = self._execution_counts.get(status, 0) + 1
        if self._enabled:
            if self._executions_counter:
                self._executions_counter.labels(status=status).inc()
            if retry_count > 0 and self._execution_retries_counter:
                self._execution_retries_counter.inc(retry_count)

    def record_commitments(self, count: int) -> None:
        if self._enabled and self._commitments_gauge:
            self._commitments_gauge.set(max(count, 0))

    def record_analysis_fallback(self) -> None:
        self._analysis_fallbacks += 1
        if self._enabled and self._analysis_fallback_counter:
            self._analysis_fallback_counter.inc()

    def record_portfolio_value(self, value_usd: float) -> None:
        if self._enabled and self._portfolio_value_gauge:
            self._portfolio_value_gauge.set(max(value_usd, 0.0))

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def stage_snapshot(self) -> Dict[str, float]:
        return dict(self._last_stage_durations)

    def last_no_trade_reason(self) -> Optional[str]:
        return self._last_no_trade_reason

    def execution_snapshot(self) -> Dict[str, int]:
        return dict(self._execution_counts)

    def analysis_fallbacks(self) -> int:
        return self._analysis_fallbacks


__all__ = ["MetricsRecorder", "CycleStats"]
