"""
Execution engine tests: phase sequencing, stale-blockhash retries,
non-retryable failures and the compute-budget prefix.

Backoff sleeps are patched out so the retry tests run instantly.
"""

import struct
from unittest.mock import MagicMock, patch

import pytest

from core.exceptions import (
    ConfirmationTimeout,
    SimulationError,
    StaleReferenceError,
    TransactionFailed,
    TransientChainError,
)
from core.execution import (
    ExecutionConfig,
    ExecutionEngine,
    ExecutionPhase,
    SimulationResult,
    is_retryable_error,
    is_stale_reference_error,
)
from core.instructions import (
    COMPUTE_BUDGET_PROGRAM_ID,
    MAX_COMPUTE_UNITS,
    set_compute_unit_limit,
    set_compute_unit_price,
)
from core.models import STATUS_CONFIRMED, STATUS_FAILED
from core.registry import CapabilityRegistry
from tests.helpers import OWNER, FakeAdapter, FakeChain, FakeSigner, make_action, stale


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("core.execution.time.sleep") as sleep:
        yield sleep


def _engine(chain=None, adapters=None, config=None, **kwargs):
    registry = CapabilityRegistry()
    for adapter in adapters if adapters is not None else [FakeAdapter("marinade", ["stake", "unstake"])]:
        registry.register(adapter)
    registry.initialize_all()
    signer = FakeSigner()
    engine = ExecutionEngine(registry, chain or FakeChain(), signer,
                             config or ExecutionConfig(max_retries=3, retry_backoff_ms=1000), **kwargs)
    return engine, signer


class TestHappyPath:
    def test_confirmed_outcome(self):
        chain = FakeChain()
        engine, signer = _engine(chain)
        action = make_action()

        outcome = engine.execute(action)

        assert outcome.success is True
        assert outcome.status == STATUS_CONFIRMED
        assert outcome.signature == "sig-1"
        assert outcome.retry_count == 0
        assert outcome.compute_units == 42_000
        assert chain.confirmed == ["sig-1"]
        assert engine.phase_of(action.id) == ExecutionPhase.CONFIRMED

    def test_compute_budget_prefixes_venue_instructions(self):
        engine, signer = _engine(config=ExecutionConfig(max_compute_units=300_000,
                                                        priority_fee_micro_lamports=25_000))
        engine.execute(make_action())

        tx = signer.signed[0]
        limit_ix, price_ix, venue_ix = tx.instructions
        assert limit_ix.program_id == COMPUTE_BUDGET_PROGRAM_ID
        assert limit_ix.data == struct.pack("<BI", 2, 300_000)
        assert price_ix.program_id == COMPUTE_BUDGET_PROGRAM_ID
        assert price_ix.data == struct.pack("<BQ", 3, 25_000)
        assert venue_ix.program_id == "marinadeProgram"
        assert tx.fee_payer == OWNER
        assert tx.reference.blockhash == "hash-1"

    def test_phases_in_order(self):
        seen = []
        engine, _ = _engine(on_phase=lambda action_id, phase: seen.append(phase))

        engine.execute(make_action())

        assert seen == [
            ExecutionPhase.BUILDING,
            ExecutionPhase.SIMULATING,
            ExecutionPhase.SENDING,
            ExecutionPhase.CONFIRMING,
            ExecutionPhase.CONFIRMED,
        ]

    def test_simulation_can_be_disabled(self):
        chain = FakeChain()
        engine, _ = _engine(chain, config=ExecutionConfig(simulate_before_send=False))

        outcome = engine.execute(make_action())

        assert outcome.success is True
        assert chain.simulated == []
        assert outcome.compute_units is None

    def test_metrics_hook_receives_status_and_retries(self):
        metrics = MagicMock()
        engine, _ = _engine(FakeChain(send_errors=stale(1)), metrics=metrics)

        engine.execute(make_action())

        metrics.record_execution.assert_called_once_with(STATUS_CONFIRMED, 1)

    def test_failing_phase_callback_is_ignored(self):
        def explode(action_id, phase):
            raise RuntimeError("listener down")

        engine, _ = _engine(on_phase=explode)
        assert engine.execute(make_action()).success is True


class TestStaleReferenceRetry:
    @pytest.mark.parametrize("stale_count", [1, 2])
    def test_recovers_within_budget(self, stale_count, no_sleep):
        chain = FakeChain(send_errors=stale(stale_count))
        engine, signer = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.status == STATUS_CONFIRMED
        assert outcome.retry_count == stale_count
        # every attempt is rebuilt on a fresh blockhash
        assert [tx.reference.blockhash for tx in signer.signed] == [
            f"hash-{n}" for n in range(1, stale_count + 2)
        ]
        assert no_sleep.call_count == stale_count

    def test_exhausted_retries_fail(self, no_sleep):
        chain = FakeChain(send_errors=stale(3))
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.status == STATUS_FAILED
        assert outcome.success is False
        assert outcome.retry_count == 3
        assert "Blockhash not found" in outcome.error
        assert len(chain.sent) == 3
        # linear backoff between attempts, none after the last
        assert [c.args[0] for c in no_sleep.call_args_list] == [1.0, 2.0]

    def test_transient_send_error_is_retried(self):
        chain = FakeChain(send_errors=[TransientChainError("sendTransaction: HTTP 503")])
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.success is True
        assert outcome.retry_count == 1

    def test_stale_simulation_is_retried(self):
        class OnceStaleChain(FakeChain):
            def simulate(self, tx):
                self.simulated.append(tx)
                if len(self.simulated) == 1:
                    return SimulationResult(ok=False, error="BlockhashNotFound")
                return SimulationResult(ok=True, units_consumed=10)

        chain = OnceStaleChain()
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.success is True
        assert outcome.retry_count == 1
        assert len(chain.sent) == 1

    def test_block_height_exceeded_during_confirmation_is_retried(self):
        chain = FakeChain(confirm_errors=[StaleReferenceError("block height exceeded for sig-1")])
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.success is True
        assert outcome.signature == "sig-2"
        assert outcome.retry_count == 1


class TestNonRetryableFailures:
    def test_simulation_failure_is_not_retried(self, no_sleep):
        chain = FakeChain(simulation=SimulationResult(ok=False, error="custom program error: 0x1"))
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.status == STATUS_FAILED
        assert outcome.retry_count == 0
        assert "simulation failed" in outcome.error
        assert chain.sent == []
        no_sleep.assert_not_called()

    def test_confirmation_timeout_is_not_resent(self):
        chain = FakeChain(confirm_errors=[ConfirmationTimeout("sig-1", 30.0)])
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.status == STATUS_FAILED
        assert outcome.signature == "sig-1"
        assert len(chain.sent) == 1
        assert "timed out" in outcome.error

    def test_on_chain_failure_is_not_resent(self):
        chain = FakeChain(confirm_errors=[TransactionFailed("sig-1", {"InstructionError": [2, "Custom"]})])
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.success is False
        assert len(chain.sent) == 1

    def test_preflight_rejection_is_not_resent(self):
        chain = FakeChain(send_errors=[SimulationError("sendTransaction: insufficient funds")])
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.success is False
        assert "preflight rejected" in outcome.error
        assert len(chain.sent) == 1


class TestDoubleSubmissionGuard:
    def test_landed_attempt_is_not_resubmitted(self):
        # confirmation poll drops mid-flight, but the first send actually landed
        chain = FakeChain(
            confirm_errors=[TransientChainError("connection reset")],
            statuses={"sig-1": "confirmed"},
        )
        engine, signer = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.success is True
        assert outcome.signature == "sig-1"
        assert outcome.retry_count == 1
        assert len(chain.sent) == 1
        assert len(signer.signed) == 1

    def test_unlanded_attempt_is_rebuilt(self):
        chain = FakeChain(confirm_errors=[TransientChainError("connection reset")])
        engine, _ = _engine(chain)

        outcome = engine.execute(make_action())

        assert outcome.success is True
        assert outcome.signature == "sig-2"
        assert len(chain.sent) == 2


class TestAdapterResolution:
    def test_no_adapter_for_kind(self):
        engine, _ = _engine(adapters=[])

        outcome = engine.execute(make_action())

        assert outcome.status == STATUS_FAILED
        assert "no adapter" in outcome.error

    def test_registered_venue_without_capability(self):
        engine, _ = _engine(adapters=[FakeAdapter("marinade", ["unstake"])])
        assert engine.execute(make_action()).success is False

    def test_unknown_venue_routes_by_action_kind(self):
        jupiter = FakeAdapter("jupiter", ["swap"])
        engine, _ = _engine(adapters=[jupiter])

        outcome = engine.execute(make_action(kind="swap", venue="orca", output_asset="USDC"))

        assert outcome.success is True
        assert len(jupiter.built) == 1

    def test_adapter_not_implementing_hook(self):
        class HalfAdapter(FakeAdapter):
            def build_stake_ix(self, action, owner):
                raise NotImplementedError("stake not wired yet")

        engine, _ = _engine(adapters=[HalfAdapter("marinade", ["stake"])])
        outcome = engine.execute(make_action())

        assert outcome.success is False
        assert "no adapter support" in outcome.error


class TestHelpers:
    def test_error_classification(self):
        assert is_stale_reference_error(StaleReferenceError("x"))
        assert is_stale_reference_error("Transaction simulation failed: Blockhash not found")
        assert is_retryable_error("429 Too Many Requests")
        assert not is_retryable_error("custom program error: 0x1771")

    def test_config_requires_one_attempt(self):
        with pytest.raises(ValueError):
            ExecutionConfig.from_config({"max_retries": 0})

    def test_config_from_policy(self, policy):
        config = ExecutionConfig.from_config(policy["execution"])
        assert config.max_compute_units == 400_000
        assert config.confirmation_timeout_ms == 30_000

    def test_compute_budget_bounds(self):
        with pytest.raises(ValueError):
            set_compute_unit_limit(MAX_COMPUTE_UNITS + 1)
        with pytest.raises(ValueError):
            set_compute_unit_limit(0)
        with pytest.raises(ValueError):
            set_compute_unit_price(-1)
