"""Shared exception types for the agent core."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when the portfolio snapshot cannot be fetched; fails the cycle."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class FatalInitError(RuntimeError):
    """Startup cannot proceed (signer, data source or chain missing). Aborts the process."""


class RegistryError(RuntimeError):
    """Invalid use of the capability registry."""


class RegistrySealedError(RegistryError):
    """Registration attempted after the registry was initialized."""


class AdapterNotFound(RegistryError):
    def __init__(self, venue: str, available: Optional[list] = None):
        self.venue = venue
        self.available = list(available or [])
        listing = ", ".join(self.available) or "none"
        super().__init__(f"no adapter registered for venue '{venue}' (available: {listing})")


class ChainError(RuntimeError):
    """Base class for chain interaction failures."""


class StaleReferenceError(ChainError):
    """The transaction's recent blockhash expired before it landed."""


class TransientChainError(ChainError):
    """Network or node hiccup; the same transaction may be retried."""


class RpcRequestRejected(ChainError):
    """The RPC node refused the request outright (HTTP 4xx other than 429)."""


class SimulationError(ChainError):
    """Pre-flight simulation rejected the transaction."""


class ConfirmationTimeout(ChainError):
    """Transaction not confirmed within the confirmation window."""

    def __init__(self, signature: str, timeout_s: float):
        super().__init__(f"confirmation of {signature} timed out after {timeout_s:.1f}s")
        self.signature = signature
        self.timeout_s = timeout_s


class TransactionFailed(ChainError):
    """Transaction landed on chain but its execution failed."""

    def __init__(self, signature: str, error: object):
        super().__init__(f"transaction {signature} failed on chain: {error}")
        self.signature = signature
        self.error = error


class AnalysisUnavailable(RuntimeError):
    """External market analysis could not be produced or parsed."""
