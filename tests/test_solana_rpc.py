"""
Tests for the Solana JSON-RPC client: retry policy, error mapping and the
confirmation loop. The HTTP session is mocked; no network access.
"""

import base64
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from core.exceptions import (
    ConfirmationTimeout,
    RpcRequestRejected,
    SimulationError,
    StaleReferenceError,
    TransactionFailed,
    TransientChainError,
)
from core.execution import is_retryable_error
from core.instructions import ChainReference, SignedTransaction
from core.solana_rpc import SolanaRpcClient

REFERENCE = ChainReference(blockhash="hash-1", last_valid_block_height=1_000)


def ok(result):
    response = Mock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"jsonrpc": "2.0", "id": 1, "result": result}
    return response


def rpc_error(message, data=None):
    response = Mock()
    response.raise_for_status.return_value = None
    error = {"code": -32002, "message": message}
    if data is not None:
        error["data"] = data
    response.json.return_value = {"jsonrpc": "2.0", "id": 1, "error": error}
    return response


def http_error(status_code):
    response = Mock()
    response.status_code = status_code
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    return SolanaRpcClient(url="http://rpc.test", max_retries=3, poll_interval_s=0.01, session=session)


@pytest.fixture
def no_sleep():
    with patch("core.solana_rpc.time.sleep") as sleep:
        yield sleep


def signed(payload=b"tx-bytes"):
    return SignedTransaction(payload=payload, signature="sig-1", reference=REFERENCE)


class FakeClock:
    """Monotonic clock that only advances when slept on."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    fake = FakeClock()
    with patch("core.solana_rpc.time.monotonic", fake.monotonic), \
            patch("core.solana_rpc.time.sleep", fake.sleep):
        yield fake


class TestTransport:
    def test_latest_reference(self, client, session):
        session.post.return_value = ok({"value": {"blockhash": "abc", "lastValidBlockHeight": 250}})

        reference = client.latest_reference()

        assert reference == ChainReference(blockhash="abc", last_valid_block_height=250)
        payload = session.post.call_args.kwargs["json"]
        assert payload["method"] == "getLatestBlockhash"
        assert payload["params"] == [{"commitment": "confirmed"}]

    def test_request_ids_increase(self, client, session):
        session.post.return_value = ok(10)
        client.block_height()
        client.block_height()
        ids = [c.kwargs["json"]["id"] for c in session.post.call_args_list]
        assert ids == [1, 2]

    @pytest.mark.parametrize("failure", [
        http_error(429),
        http_error(503),
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("reset"),
    ])
    def test_retries_transient_http_failures(self, client, session, no_sleep, failure):
        session.post.side_effect = [failure, ok(42)]

        assert client.block_height() == 42
        assert session.post.call_count == 2
        assert no_sleep.call_count == 1

    def test_client_error_not_retried(self, client, session, no_sleep):
        session.post.return_value = http_error(400)

        with pytest.raises(RpcRequestRejected, match="HTTP 400") as excinfo:
            client.block_height()
        assert session.post.call_count == 1
        no_sleep.assert_not_called()
        assert not isinstance(excinfo.value, TransientChainError)
        assert is_retryable_error(excinfo.value) is False

    def test_exhausted_retries(self, client, session, no_sleep):
        session.post.return_value = http_error(502)

        with pytest.raises(TransientChainError, match="HTTP 502"):
            client.block_height()
        assert session.post.call_count == 3
        # backoff between attempts only
        assert no_sleep.call_count == 2

    def test_from_config(self):
        client = SolanaRpcClient.from_config({
            "rpc_url": "http://localhost:8899",
            "commitment": "finalized",
            "http_max_retries": 5,
        })
        assert client.url == "http://localhost:8899"
        assert client.commitment == "finalized"
        assert client.max_retries == 5


class TestErrorMapping:
    def test_expired_blockhash_is_stale(self, client, session):
        session.post.return_value = rpc_error("Blockhash not found")
        with pytest.raises(StaleReferenceError):
            client.send(signed())

    def test_send_program_error_is_simulation_error(self, client, session):
        session.post.return_value = rpc_error("Transaction simulation failed",
                                              data={"err": {"InstructionError": [2, {"Custom": 1}]}})
        with pytest.raises(SimulationError, match="InstructionError"):
            client.send(signed())

    def test_node_behind_is_transient(self, client, session):
        session.post.return_value = rpc_error("Node is behind by 42 slots (NodeBehind)")
        with pytest.raises(TransientChainError):
            client.send(signed())

    def test_rpc_errors_are_not_retried(self, client, session, no_sleep):
        session.post.return_value = rpc_error("Blockhash not found")
        with pytest.raises(StaleReferenceError):
            client.send(signed())
        assert session.post.call_count == 1


class TestTransactions:
    def test_send_encodes_payload(self, client, session):
        session.post.return_value = ok("5sig")

        assert client.send(signed(b"\x01\x02")) == "5sig"

        params = session.post.call_args.kwargs["json"]["params"]
        assert params[0] == base64.b64encode(b"\x01\x02").decode("ascii")
        assert params[1]["skipPreflight"] is True

    def test_simulation_success(self, client, session):
        session.post.return_value = ok({"value": {"err": None, "unitsConsumed": 1234, "logs": ["ok"]}})
        result = client.simulate(signed())
        assert result.ok is True
        assert result.units_consumed == 1234
        assert result.logs == ["ok"]

    def test_simulation_failure(self, client, session):
        session.post.return_value = ok({"value": {"err": {"InstructionError": [0, "InvalidAccountData"]}}})
        result = client.simulate(signed())
        assert result.ok is False
        assert "InvalidAccountData" in result.error

    @pytest.mark.parametrize("entry,expected", [
        (None, None),
        ({"confirmationStatus": "finalized", "err": None}, "finalized"),
        ({"confirmationStatus": None, "err": None}, "processed"),
        ({"confirmationStatus": "confirmed", "err": {"InstructionError": []}}, "failed"),
    ])
    def test_signature_status(self, client, session, entry, expected):
        session.post.return_value = ok({"value": [entry]})
        assert client.signature_status("sig-1") == expected


class TestConfirm:
    def test_confirmed_on_first_poll(self, client, session, no_sleep):
        session.post.return_value = ok({"value": [{"confirmationStatus": "confirmed", "err": None}]})
        client.confirm("sig-1", REFERENCE, timeout_s=5)
        assert session.post.call_count == 1

    def test_polls_until_confirmed(self, client, session, no_sleep):
        session.post.side_effect = [
            ok({"value": [None]}),
            ok(900),
            ok({"value": [{"confirmationStatus": "confirmed", "err": None}]}),
        ]
        client.confirm("sig-1", REFERENCE, timeout_s=5)
        no_sleep.assert_called_once_with(0.01)

    def test_landed_but_failed(self, client, session, no_sleep):
        session.post.return_value = ok({"value": [{"confirmationStatus": "confirmed",
                                                   "err": {"InstructionError": [1, "Custom"]}}]})
        with pytest.raises(TransactionFailed):
            client.confirm("sig-1", REFERENCE, timeout_s=5)

    def test_block_height_exceeded(self, client, session, no_sleep):
        session.post.side_effect = [ok({"value": [None]}), ok(1_001)]
        with pytest.raises(StaleReferenceError, match="block height exceeded"):
            client.confirm("sig-1", REFERENCE, timeout_s=5)

    def test_timeout(self, client, session, clock):
        session.post.side_effect = lambda *a, **kw: (
            ok(900) if kw["json"]["method"] == "getBlockHeight" else ok({"value": [None]})
        )

        with pytest.raises(ConfirmationTimeout):
            client.confirm("sig-1", REFERENCE, timeout_s=0.05)

        assert clock.now == pytest.approx(0.05)

    def test_failing_polls_stay_within_window(self, session, clock):
        client = SolanaRpcClient(url="http://rpc.test", request_timeout_s=10.0, max_retries=3,
                                 poll_interval_s=0.5, session=session)
        session.post.return_value = http_error(503)

        with pytest.raises(ConfirmationTimeout):
            client.confirm("sig-1", REFERENCE, timeout_s=2)

        # one attempt per poll, no backoff sleeps, never past the deadline
        assert clock.now == pytest.approx(2.0)
        assert all(s <= 0.5 for s in clock.sleeps)
        assert session.post.call_count == 2 * len(clock.sleeps)
        timeouts = [c.kwargs["timeout"] for c in session.post.call_args_list]
        assert all(t <= 2 for t in timeouts)


class TestHealth:
    def test_healthy(self, client, session):
        session.post.return_value = ok("ok")
        assert client.is_healthy() is True

    def test_unhealthy_on_error(self, client, session, no_sleep):
        session.post.side_effect = requests.exceptions.ConnectionError("refused")
        assert client.is_healthy() is False
