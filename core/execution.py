"""
ooda-agent Core: Execution Engine

Turns an approved ProposedAction into a confirmed on-chain transaction.

Per attempt:
    BUILDING -> SIMULATING -> SENDING -> CONFIRMING -> CONFIRMED | FAILED

- Simulation failure fails the action immediately (no retry).
- A stale blockhash or a transient node error rebuilds with a fresh
  blockhash and retries, up to max_retries attempts in total.
- Confirmation timeouts and on-chain failures are not resent.
- Before any retry the previous signature is looked up so an attempt that
  actually landed is never submitted twice.

execute() never raises for per-action faults; it always returns an
ExecutionOutcome.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import (
    AdapterNotFound,
    ConfirmationTimeout,
    SimulationError,
    StaleReferenceError,
    TransactionFailed,
    TransientChainError,
)
from core.instructions import (
    ChainReference,
    SignedTransaction,
    Transaction,
    compute_budget_instructions,
)
from core.models import (
    STATUS_CONFIRMED,
    ExecutionOutcome,
    ProposedAction,
)
from core.registry import CapabilityRegistry, VenueAdapter

logger = logging.getLogger(__name__)

# Error text that marks a send/confirm failure as worth another attempt
RETRYABLE_ERROR_PATTERNS = (
    "block height exceeded",
    "blockhash not found",
    "blockhash",
    "nodebehind",
    "too many requests",
    "429",
    "econnreset",
    "etimedout",
    "socket hang up",
    "timed out",
    "connection",
)

_STALE_PATTERNS = ("blockhash", "block height exceeded")


def is_retryable_error(error: Any) -> bool:
    if isinstance(error, (StaleReferenceError, TransientChainError)):
        return True
    text = str(error).lower()
    return any(pattern in text for pattern in RETRYABLE_ERROR_PATTERNS)


def is_stale_reference_error(error: Any) -> bool:
    if isinstance(error, StaleReferenceError):
        return True
    text = str(error).lower()
    return any(pattern in text for pattern in _STALE_PATTERNS)


class ExecutionPhase(str, Enum):
    BUILDING = "BUILDING"
    SIMULATING = "SIMULATING"
    SENDING = "SENDING"
    CONFIRMING = "CONFIRMING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


@dataclass
class SimulationResult:
    ok: bool
    error: Optional[str] = None
    units_consumed: Optional[int] = None
    logs: List[str] = field(default_factory=list)


class ChainClient(ABC):
    """Ledger access used by the engine. SolanaRpcClient is the production implementation."""

    @abstractmethod
    def latest_reference(self) -> ChainReference:
        """Fresh blockhash plus its last valid block height."""

    @abstractmethod
    def simulate(self, tx: SignedTransaction) -> SimulationResult:
        ...

    @abstractmethod
    def send(self, tx: SignedTransaction) -> str:
        """Submit and return the signature. Raises StaleReferenceError / TransientChainError."""

    @abstractmethod
    def confirm(self, signature: str, reference: ChainReference, timeout_s: float) -> None:
        """
        Block until the signature is confirmed.

        Raises:
            ConfirmationTimeout: not confirmed within timeout_s
            TransactionFailed: landed with an execution error
            StaleReferenceError: block height passed the reference's validity
        """

    @abstractmethod
    def signature_status(self, signature: str) -> Optional[str]:
        """'processed' / 'confirmed' / 'finalized' / 'failed', or None if unknown."""

    def is_healthy(self) -> bool:
        return True


class Signer(ABC):
    """Holds the wallet key; serializes and signs transactions."""

    @property
    @abstractmethod
    def public_key(self) -> str:
        ...

    @abstractmethod
    def sign(self, tx: Transaction) -> SignedTransaction:
        ...


@dataclass
class ExecutionConfig:
    max_compute_units: int = 400_000
    priority_fee_micro_lamports: int = 50_000
    max_retries: int = 3
    retry_backoff_ms: int = 1000
    confirmation_timeout_ms: int = 30_000
    simulate_before_send: bool = True

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "ExecutionConfig":
        cfg = cfg or {}
        defaults = cls()
        config = cls(
            max_compute_units=int(cfg.get("max_compute_units", defaults.max_compute_units)),
            priority_fee_micro_lamports=int(
                cfg.get("priority_fee_micro_lamports", defaults.priority_fee_micro_lamports)
            ),
            max_retries=int(cfg.get("max_retries", defaults.max_retries)),
            retry_backoff_ms=int(cfg.get("retry_backoff_ms", defaults.retry_backoff_ms)),
            confirmation_timeout_ms=int(cfg.get("confirmation_timeout_ms", defaults.confirmation_timeout_ms)),
            simulate_before_send=bool(cfg.get("simulate_before_send", defaults.simulate_before_send)),
        )
        if config.max_retries < 1:
            raise ValueError("execution.max_retries must be >= 1")
        return config


class _Retry(Exception):
    """Internal: the current attempt failed in a retryable way."""

    def __init__(self, error: str, signature: Optional[str] = None):
        super().__init__(error)
        self.error = error
        self.signature = signature


class _Failed(Exception):
    """Internal: the action failed terminally."""

    def __init__(self, error: str, signature: Optional[str] = None):
        super().__init__(error)
        self.error = error
        self.signature = signature


class ExecutionEngine:
    """
    Builds, simulates, submits and confirms one action at a time.

    Thread-safe: the loop calls execute() from a worker pool; the engine holds
    no per-action state between calls.
    """

    def __init__(self,
                 registry: CapabilityRegistry,
                 chain: ChainClient,
                 signer: Signer,
                 config: Optional[ExecutionConfig] = None,
                 on_phase: Optional[Callable[[str, ExecutionPhase], None]] = None,
                 metrics: Optional[Any] = None):
        self.registry = registry
        self.chain = chain
        self.signer = signer
        self.config = config or ExecutionConfig()
        self.on_phase = on_phase
        self.metrics = metrics
        self._phases: Dict[str, ExecutionPhase] = {}
        self._phase_lock = threading.Lock()

        logger.info(
            "ExecutionEngine ready: cu_limit=%d, cu_price=%d, max_retries=%d, confirm_timeout=%dms",
            self.config.max_compute_units,
            self.config.priority_fee_micro_lamports,
            self.config.max_retries,
            self.config.confirmation_timeout_ms,
        )

    # ----- public -----

    def execute(self, action: ProposedAction) -> ExecutionOutcome:
        start = time.perf_counter()
        outcome = self._execute(action)
        self._set_phase(action.id, ExecutionPhase.CONFIRMED if outcome.success else ExecutionPhase.FAILED)
        elapsed_ms = (time.perf_counter() - start) * 1000

        if outcome.success:
            logger.info(
                f"✅ {action.kind} {action.input_asset}->{action.output_asset} via {action.venue} "
                f"confirmed {outcome.signature} in {elapsed_ms:.0f}ms (retries={outcome.retry_count})"
            )
        else:
            logger.warning(
                f"❌ {action.kind} via {action.venue} failed after {elapsed_ms:.0f}ms "
                f"(retries={outcome.retry_count}): {outcome.error}"
            )
        if self.metrics:
            self.metrics.record_execution(outcome.status, outcome.retry_count)
        return outcome

    def phase_of(self, action_id: str) -> Optional[ExecutionPhase]:
        with self._phase_lock:
            return self._phases.get(action_id)

    # ----- internals -----

    def _set_phase(self, action_id: str, phase: ExecutionPhase) -> None:
        with self._phase_lock:
            self._phases[action_id] = phase
            # keep the map from growing without bound
            if len(self._phases) > 1000:
                for key in list(self._phases)[:500]:
                    self._phases.pop(key, None)
        if self.on_phase:
            try:
                self.on_phase(action_id, phase)
            except Exception as e:
                logger.debug(f"Phase callback failed: {e}")

    def _resolve_adapter(self, action: ProposedAction) -> Optional[VenueAdapter]:
        try:
            adapter = self.registry.get(action.venue)
        except AdapterNotFound:
            adapter = self.registry.find_by_action(action.kind)
            if adapter is not None:
                logger.info(f"Venue {action.venue} not registered; routing {action.kind} via {adapter.venue_id}")
            return adapter
        if not adapter.supports_action(action.kind):
            return None
        return adapter

    def _build(self, action: ProposedAction, adapter: VenueAdapter) -> SignedTransaction:
        self._set_phase(action.id, ExecutionPhase.BUILDING)
        owner = self.signer.public_key
        venue_ixs = adapter.build_instructions(action, owner)
        if not venue_ixs:
            raise ValueError(f"{adapter.venue_id} produced no instructions for {action.kind}")
        tx = Transaction(
            fee_payer=owner,
            instructions=compute_budget_instructions(
                self.config.max_compute_units,
                self.config.priority_fee_micro_lamports,
            ) + list(venue_ixs),
            reference=self.chain.latest_reference(),
            action_id=action.id,
        )
        return self.signer.sign(tx)

    def _already_landed(self, signature: Optional[str]) -> bool:
        if not signature:
            return False
        try:
            status = self.chain.signature_status(signature)
        except Exception as e:
            logger.debug(f"Signature status lookup for {signature} failed: {e}")
            return False
        return status in ("confirmed", "finalized")

    def _execute(self, action: ProposedAction) -> ExecutionOutcome:
        adapter = self._resolve_adapter(action)
        if adapter is None:
            return ExecutionOutcome.failed(action.id, f"no adapter for {action.kind} on venue {action.venue}")

        max_attempts = self.config.max_retries
        last_error: Optional[str] = None
        last_signature: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1 and self._already_landed(last_signature):
                logger.info(f"Previous attempt {last_signature} landed; not resubmitting")
                return ExecutionOutcome(
                    action_id=action.id,
                    success=True,
                    status=STATUS_CONFIRMED,
                    signature=last_signature,
                    retry_count=attempt - 1,
                )
            try:
                return self._attempt(action, adapter, attempt)
            except _Retry as retry:
                last_error = retry.error
                last_signature = retry.signature or last_signature
                logger.warning(f"Attempt {attempt}/{max_attempts} for {action.id} failed: {retry.error}")
                if attempt < max_attempts:
                    backoff_s = self.config.retry_backoff_ms * attempt / 1000.0
                    time.sleep(backoff_s)
            except _Failed as failed:
                return ExecutionOutcome.failed(
                    action.id, failed.error, retry_count=attempt - 1, signature=failed.signature
                )

        return ExecutionOutcome.failed(
            action.id,
            last_error or "retries exhausted",
            retry_count=max_attempts,
            signature=last_signature,
        )

    def _attempt(self, action: ProposedAction, adapter: VenueAdapter, attempt: int) -> ExecutionOutcome:
        # BUILDING
        try:
            signed = self._build(action, adapter)
        except NotImplementedError as e:
            raise _Failed(f"no adapter support: {e}")
        except Exception as e:
            if is_retryable_error(e):
                raise _Retry(f"build: {e}")
            raise _Failed(f"build failed: {e}")

        # SIMULATING
        units = None
        if self.config.simulate_before_send:
            self._set_phase(action.id, ExecutionPhase.SIMULATING)
            try:
                sim = self.chain.simulate(signed)
            except Exception as e:
                if is_stale_reference_error(e) or isinstance(e, TransientChainError):
                    raise _Retry(f"simulate: {e}")
                raise _Failed(f"simulation error: {e}")
            if not sim.ok:
                if sim.error and is_stale_reference_error(sim.error):
                    raise _Retry(f"simulate: {sim.error}")
                raise _Failed(f"simulation failed: {sim.error}")
            units = sim.units_consumed

        # SENDING
        self._set_phase(action.id, ExecutionPhase.SENDING)
        try:
            signature = self.chain.send(signed)
        except SimulationError as e:
            raise _Failed(f"preflight rejected: {e}")
        except Exception as e:
            if is_retryable_error(e):
                raise _Retry(str(e))
            raise _Failed(f"send failed: {e}")

        # CONFIRMING
        self._set_phase(action.id, ExecutionPhase.CONFIRMING)
        timeout_s = self.config.confirmation_timeout_ms / 1000.0
        try:
            self.chain.confirm(signature, signed.reference, timeout_s)
        except ConfirmationTimeout as e:
            raise _Failed(str(e), signature)
        except TransactionFailed as e:
            raise _Failed(str(e), signature)
        except Exception as e:
            if is_retryable_error(e):
                raise _Retry(str(e), signature)
            raise _Failed(f"confirmation error: {e}", signature)

        return ExecutionOutcome(
            action_id=action.id,
            success=True,
            status=STATUS_CONFIRMED,
            signature=signature,
            compute_units=units,
            retry_count=attempt - 1,
        )
