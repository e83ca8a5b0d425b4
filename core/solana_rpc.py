"""
ooda-agent Core: Solana JSON-RPC chain client

Implements ChainClient over plain JSON-RPC with requests. HTTP-level
failures (429, 5xx, timeouts, connection errors) are retried with
exponential backoff and jitter; RPC errors are mapped onto the chain
exception taxonomy so the execution engine can decide whether to rebuild.
Confirmation polls are single attempts bounded by the remaining window.
"""

import base64
import itertools
import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import (
    ConfirmationTimeout,
    RpcRequestRejected,
    SimulationError,
    StaleReferenceError,
    TransactionFailed,
    TransientChainError,
)
from core.execution import ChainClient, SimulationResult, is_retryable_error, is_stale_reference_error
from core.instructions import ChainReference, SignedTransaction

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


class SolanaRpcClient(ChainClient):
    """
    Minimal Solana RPC client for the execution path.

    Args:
        url: RPC endpoint
        commitment: Commitment level for reads and confirmation
        request_timeout_s: Per-HTTP-request timeout
        max_retries: HTTP attempts per RPC call
        poll_interval_s: Delay between confirmation polls
    """

    def __init__(self,
                 url: str = DEFAULT_RPC_URL,
                 commitment: str = "confirmed",
                 request_timeout_s: float = 10.0,
                 max_retries: int = 3,
                 poll_interval_s: float = 0.5,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.commitment = commitment
        self.request_timeout_s = request_timeout_s
        self.max_retries = max(1, int(max_retries))
        self.poll_interval_s = poll_interval_s
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SolanaRpcClient":
        cfg = cfg or {}
        return cls(
            url=cfg.get("rpc_url", DEFAULT_RPC_URL),
            commitment=cfg.get("commitment", "confirmed"),
            request_timeout_s=float(cfg.get("request_timeout_s", 10.0)),
            max_retries=int(cfg.get("http_max_retries", 3)),
            poll_interval_s=float(cfg.get("poll_interval_s", 0.5)),
        )

    # ----- transport -----

    def _rpc(self, method: str, params: Optional[List[Any]] = None,
             attempts: Optional[int] = None, timeout_s: Optional[float] = None) -> Any:
        """
        Make a JSON-RPC call with exponential backoff.

        Retries on 429, 5xx and network errors. Does NOT retry on other 4xx
        or on JSON-RPC error objects (those are mapped and raised).
        attempts and timeout_s override max_retries and request_timeout_s.
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        max_attempts = max(1, int(attempts)) if attempts is not None else self.max_retries
        timeout = timeout_s if timeout_s is not None else self.request_timeout_s
        last_exception: Optional[Exception] = None

        for attempt in range(max_attempts):
            try:
                response = self._session.post(self.url, json=payload, timeout=timeout)
                response.raise_for_status()
                body = response.json()
                if "error" in body and body["error"]:
                    raise self._map_rpc_error(method, body["error"])
                return body.get("result")

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Solana RPC client error on {method}: {status_code}")
                    raise RpcRequestRejected(f"{method} rejected with HTTP {status_code}") from e
                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {method}, attempt {attempt + 1}/{max_attempts}")
                else:
                    logger.warning(f"Server error ({status_code}) on {method}, attempt {attempt + 1}/{max_attempts}")
                last_exception = TransientChainError(f"{method}: HTTP {status_code}")

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {method}: {e}, attempt {attempt + 1}/{max_attempts}")
                last_exception = TransientChainError(f"{method}: connection error: {e}")

            if attempt < max_attempts - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying {method} in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {max_attempts} attempts exhausted for {method}")
        raise last_exception or TransientChainError(f"{method} failed after {max_attempts} attempts")

    @staticmethod
    def _map_rpc_error(method: str, error: Dict[str, Any]) -> Exception:
        message = str(error.get("message", error))
        data = error.get("data") or {}
        if isinstance(data, dict) and data.get("err"):
            message = f"{message} ({data.get('err')})"
        text = f"{method}: {message}"
        if is_stale_reference_error(message):
            return StaleReferenceError(text)
        if is_retryable_error(message):
            return TransientChainError(text)
        if method == "sendTransaction":
            return SimulationError(text)
        return TransientChainError(text)

    # ----- ChainClient -----

    def latest_reference(self) -> ChainReference:
        result = self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        return ChainReference(
            blockhash=value["blockhash"],
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )

    def simulate(self, tx: SignedTransaction) -> SimulationResult:
        result = self._rpc(
            "simulateTransaction",
            [
                base64.b64encode(tx.payload).decode("ascii"),
                {"encoding": "base64", "sigVerify": False, "commitment": self.commitment},
            ],
        )
        value = result.get("value") or {}
        err = value.get("err")
        return SimulationResult(
            ok=err is None,
            error=str(err) if err is not None else None,
            units_consumed=value.get("unitsConsumed"),
            logs=list(value.get("logs") or []),
        )

    def send(self, tx: SignedTransaction) -> str:
        # preflight already ran via simulate(); the engine owns retries
        return self._rpc(
            "sendTransaction",
            [
                base64.b64encode(tx.payload).decode("ascii"),
                {"encoding": "base64", "skipPreflight": True, "maxRetries": 0},
            ],
        )

    def block_height(self) -> int:
        return int(self._rpc("getBlockHeight", [{"commitment": self.commitment}]))

    def _poll(self, method: str, params: List[Any], deadline: float) -> Any:
        """Single attempt bounded by what is left of the confirmation window."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransientChainError(f"{method}: confirmation window closed")
        return self._rpc(method, params, attempts=1, timeout_s=min(self.request_timeout_s, remaining))

    def _status_entry(self, signature: str, deadline: Optional[float] = None) -> Optional[Dict[str, Any]]:
        params = [[signature], {"searchTransactionHistory": True}]
        if deadline is None:
            result = self._rpc("getSignatureStatuses", params)
        else:
            result = self._poll("getSignatureStatuses", params, deadline)
        values = (result or {}).get("value") or [None]
        return values[0]

    def signature_status(self, signature: str) -> Optional[str]:
        entry = self._status_entry(signature)
        if not entry:
            return None
        if entry.get("err"):
            return "failed"
        return entry.get("confirmationStatus") or "processed"

    def confirm(self, signature: str, reference: ChainReference, timeout_s: float) -> None:
        deadline = time.monotonic() + timeout_s
        wanted = ("confirmed", "finalized") if self.commitment != "finalized" else ("finalized",)

        while time.monotonic() < deadline:
            try:
                entry = self._status_entry(signature, deadline)
            except TransientChainError as e:
                logger.debug(f"Confirmation poll for {signature} failed: {e}")
                entry = None

            if entry:
                if entry.get("err"):
                    raise TransactionFailed(signature, entry["err"])
                if entry.get("confirmationStatus") in wanted:
                    return

            try:
                height = int(self._poll("getBlockHeight", [{"commitment": self.commitment}], deadline))
                if height > reference.last_valid_block_height:
                    raise StaleReferenceError(f"block height exceeded for {signature}")
            except TransientChainError as e:
                logger.debug(f"Block height poll failed: {e}")

            time.sleep(min(self.poll_interval_s, max(0.0, deadline - time.monotonic())))

        raise ConfirmationTimeout(signature, timeout_s)

    def is_healthy(self) -> bool:
        try:
            return self._rpc("getHealth") == "ok"
        except Exception as e:
            logger.warning(f"Solana RPC health check failed: {e}")
            return False
