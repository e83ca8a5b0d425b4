"""
ooda-agent Core: Capability Registry

Venue adapters advertise the actions they can build. The execution engine
looks adapters up here by venue id or by action kind; the loop uses it for
health checks and to read existing venue positions.

Lifecycle: register adapters, then initialize_all() once. After that the
registry is sealed and further registrations are rejected.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.exceptions import AdapterNotFound, RegistryError, RegistrySealedError
from core.instructions import Instruction
from core.models import ProposedAction, VenuePosition, utcnow

logger = logging.getLogger(__name__)


@dataclass
class VenueHealth:
    venue: str
    healthy: bool
    latency_ms: float = 0.0
    checked_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "healthy": self.healthy,
            "latency_ms": round(self.latency_ms, 1),
            "checked_at": self.checked_at.isoformat(),
            "error": self.error,
        }


@dataclass(frozen=True)
class Quote:
    venue: str
    input_asset: str
    output_asset: str
    in_quantity: int
    out_quantity: int
    price_impact_pct: float = 0.0
    fee_usd: float = 0.0


class VenueAdapter(ABC):
    """
    Interface every venue integration implements.

    build_instructions() dispatches on the action kind to the build_*_ix
    hooks. Hooks a venue does not support keep the default, which raises
    NotImplementedError.
    """

    venue_id: str = ""
    name: str = ""
    version: str = "0.0.0"

    def initialize(self, config: Dict[str, Any]) -> None:
        """Prepare connections; called once by CapabilityRegistry.initialize_all()."""

    @abstractmethod
    def capabilities(self) -> List[str]:
        """Action kinds (and optional feature tags) this venue supports."""

    def supports_action(self, kind: str) -> bool:
        return kind in self.capabilities()

    def health_check(self) -> VenueHealth:
        return VenueHealth(venue=self.venue_id, healthy=True)

    def get_positions(self, owner: str) -> List[VenuePosition]:
        return []

    def get_quote(self, params: Dict[str, Any]) -> Quote:
        raise NotImplementedError(f"{self.venue_id} does not provide quotes")

    def build_instructions(self, action: ProposedAction, owner: str) -> List[Instruction]:
        builders = {
            "swap": self.build_swap_ix,
            "stake": self.build_stake_ix,
            "unstake": self.build_unstake_ix,
            "lend": self.build_deposit_ix,
            "deposit": self.build_deposit_ix,
            "provide_liquidity": self.build_deposit_ix,
            "withdraw": self.build_withdraw_ix,
            "remove_liquidity": self.build_withdraw_ix,
        }
        builder = builders.get(action.kind)
        if builder is None:
            raise NotImplementedError(f"{self.venue_id} cannot build '{action.kind}'")
        return builder(action, owner)

    def build_swap_ix(self, action: ProposedAction, owner: str) -> List[Instruction]:
        raise NotImplementedError(f"{self.venue_id} does not support swap")

    def build_stake_ix(self, action: ProposedAction, owner: str) -> List[Instruction]:
        raise NotImplementedError(f"{self.venue_id} does not support stake")

    def build_unstake_ix(self, action: ProposedAction, owner: str) -> List[Instruction]:
        raise NotImplementedError(f"{self.venue_id} does not support unstake")

    def build_deposit_ix(self, action: ProposedAction, owner: str) -> List[Instruction]:
        raise NotImplementedError(f"{self.venue_id} does not support deposit")

    def build_withdraw_ix(self, action: ProposedAction, owner: str) -> List[Instruction]:
        raise NotImplementedError(f"{self.venue_id} does not support withdraw")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(venue_id='{self.venue_id}', version='{self.version}')"


class CapabilityRegistry:
    """
    Ordered collection of venue adapters.

    Lookups by action kind and by capability return adapters in registration
    order, so the first registered venue wins ties.
    """

    def __init__(self):
        self._adapters: Dict[str, VenueAdapter] = {}
        self._by_capability: Dict[str, List[str]] = {}
        self._initialized = False
        self._init_errors: Dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def register(self, adapter: VenueAdapter) -> None:
        with self._lock:
            if self._initialized:
                raise RegistrySealedError(
                    f"cannot register '{adapter.venue_id}': registry already initialized"
                )
            venue = adapter.venue_id
            if not venue:
                raise RegistryError(f"{adapter!r} has no venue_id")
            if venue in self._adapters:
                raise RegistryError(f"venue '{venue}' is already registered")

            self._adapters[venue] = adapter
            for capability in adapter.capabilities():
                self._by_capability.setdefault(capability, []).append(venue)

        logger.info(f"Registered venue adapter {venue} ({', '.join(adapter.capabilities())})")

    def initialize_all(self, config: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """
        Initialize every adapter once and seal the registry.

        A failing adapter is logged and reported in the returned map
        (venue -> error); it stays registered so health checks expose it.
        """
        config = config or {}
        with self._lock:
            if self._initialized:
                return dict(self._init_errors)
            adapters = list(self._adapters.values())
            self._initialized = True

        for adapter in adapters:
            try:
                adapter.initialize(config.get(adapter.venue_id, {}) or {})
            except Exception as exc:
                self._init_errors[adapter.venue_id] = str(exc)
                logger.error(f"Venue adapter {adapter.venue_id} failed to initialize: {exc}")

        ok = len(adapters) - len(self._init_errors)
        logger.info(f"Capability registry initialized: {ok}/{len(adapters)} adapters ready")
        return dict(self._init_errors)

    def get(self, venue: str) -> VenueAdapter:
        adapter = self._adapters.get(venue)
        if adapter is None:
            raise AdapterNotFound(venue, self.registered_venues())
        return adapter

    def find_by_action(self, kind: str) -> Optional[VenueAdapter]:
        for adapter in self._adapters.values():
            if adapter.supports_action(kind):
                return adapter
        return None

    def find_all_by_action(self, kind: str) -> List[VenueAdapter]:
        return [a for a in self._adapters.values() if a.supports_action(kind)]

    def find_by_capability(self, capability: str) -> List[VenueAdapter]:
        return [self._adapters[v] for v in self._by_capability.get(capability, [])]

    def health_check_all(self) -> List[VenueHealth]:
        """Probe every adapter; a raising probe becomes an unhealthy entry."""
        results = []
        for adapter in self._adapters.values():
            start = time.perf_counter()
            try:
                health = adapter.health_check()
            except Exception as exc:
                health = VenueHealth(
                    venue=adapter.venue_id,
                    healthy=False,
                    latency_ms=(time.perf_counter() - start) * 1000,
                    error=str(exc),
                )
                logger.warning(f"Health check for {adapter.venue_id} raised: {exc}")
            results.append(health)
        return results

    def positions(self, owner: str) -> List[VenuePosition]:
        """Aggregate positions across venues, skipping adapters that fail."""
        aggregated: List[VenuePosition] = []
        for adapter in self._adapters.values():
            try:
                aggregated.extend(adapter.get_positions(owner))
            except Exception as exc:
                logger.warning(f"Could not read positions from {adapter.venue_id}: {exc}")
        return aggregated

    def registered_venues(self) -> List[str]:
        return list(self._adapters.keys())

    def summary(self) -> Dict[str, Any]:
        return {
            "initialized": self._initialized,
            "venues": [
                {
                    "venue": a.venue_id,
                    "name": a.name or a.venue_id,
                    "version": a.version,
                    "capabilities": list(a.capabilities()),
                    "init_error": self._init_errors.get(a.venue_id),
                }
                for a in self._adapters.values()
            ],
            "capabilities": {k: list(v) for k, v in self._by_capability.items()},
        }

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, venue: str) -> bool:
        return venue in self._adapters
