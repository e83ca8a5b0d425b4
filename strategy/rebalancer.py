"""
Target-allocation rebalancer used by the balanced strategy.

Rules:
- Only assets listed in the target allocation are managed.
- The base asset (SOL) funds every buy and receives every sell. When only
  the base is outside tolerance, the most underweight (base over target) or
  most overweight (base under target) other asset is traded against it.
- Buys are funded only from the base asset's surplus over its own target,
  never below the reserve.
- Every trade is capped at max_trade_pct of the portfolio and skipped when
  smaller than min_trade_usd.
- A plan that would not strictly reduce the maximum drift is discarded.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

from core.models import (
    PortfolioSnapshot,
    ProposedAction,
    YieldOpportunity,
    from_base_units,
)
from strategy.base_strategy import OPPORTUNITY_ACTIONS, AssetSettings

logger = logging.getLogger(__name__)

DEFAULT_TARGETS = {"SOL": 50.0, "mSOL": 30.0, "USDC": 20.0}


@dataclass(frozen=True)
class Route:
    kind: str        # action kind used to acquire the asset from the base
    venue: str


class Rebalancer:
    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 assets: Optional[AssetSettings] = None):
        cfg = config or {}
        self.assets = assets or AssetSettings()
        self.targets: Dict[str, float] = {
            k: float(v) for k, v in (cfg.get("target_allocation") or DEFAULT_TARGETS).items()
        }
        self.tolerance_pct = float(cfg.get("tolerance_pct", 5.0))
        self.min_trade_usd = float(cfg.get("min_trade_usd", 5.0))
        self.max_trade_pct = float(cfg.get("max_trade_pct", 20.0))
        self.swap_slippage_bps = int(cfg.get("swap_slippage_bps", 50))
        self.stake_slippage_bps = int(cfg.get("stake_slippage_bps", 10))
        self.default_swap_venue = cfg.get("default_swap_venue", "jupiter")
        self.routes: Dict[str, Route] = {
            asset: Route(kind=r.get("kind", "swap"), venue=r.get("venue", self.default_swap_venue))
            for asset, r in (cfg.get("routes") or {}).items()
        }

        total = sum(self.targets.values())
        if abs(total - 100.0) > 0.01:
            raise ValueError(f"target allocation must sum to 100, got {total}")
        if self.assets.base_asset not in self.targets:
            raise ValueError(f"target allocation must include base asset {self.assets.base_asset}")

    # ----- drift helpers -----

    def drift(self, values: Dict[str, float], total: float) -> Dict[str, float]:
        """Asset -> current pct minus target pct, for managed assets."""
        if total <= 0:
            return {a: -t for a, t in self.targets.items()}
        return {a: values.get(a, 0.0) / total * 100.0 - t for a, t in self.targets.items()}

    def max_drift(self, values: Dict[str, float], total: float) -> float:
        drifts = self.drift(values, total)
        return max((abs(d) for d in drifts.values()), default=0.0)

    @staticmethod
    def _values(snapshot: PortfolioSnapshot) -> Dict[str, float]:
        return {h.asset: h.value_usd for h in snapshot.holdings}

    def needs_rebalance(self, snapshot: PortfolioSnapshot) -> bool:
        total = snapshot.total_value_usd
        return any(abs(d) > self.tolerance_pct for d in self.drift(self._values(snapshot), total).values())

    # ----- routing -----

    def _acquire_route(self, asset: str, opportunities: Sequence[YieldOpportunity]) -> Route:
        base = self.assets.base_asset
        for opp in opportunities:
            if opp.kind == "staking" and opp.output_asset == asset and opp.input_asset == base:
                return Route(kind="stake", venue=opp.venue)
        if asset in self.routes:
            return self.routes[asset]
        return Route(kind="swap", venue=self.default_swap_venue)

    def _release_route(self, asset: str, opportunities: Sequence[YieldOpportunity]) -> Route:
        acquire = self._acquire_route(asset, opportunities)
        if acquire.kind == "stake":
            return Route(kind="unstake", venue=acquire.venue)
        return Route(kind="swap", venue=self.default_swap_venue)

    def _slippage(self, kind: str) -> int:
        return self.stake_slippage_bps if kind in ("stake", "unstake") else self.swap_slippage_bps

    # ----- sizing -----

    def _base_price(self, snapshot: PortfolioSnapshot) -> Optional[float]:
        return snapshot.price_of(self.assets.base_asset)

    def _base_spendable_usd(self, snapshot: PortfolioSnapshot) -> float:
        price = self._base_price(snapshot) or 0.0
        base_qty = snapshot.quantity_of(self.assets.base_asset)
        spendable_units = base_qty - self.assets.reserve_units - self.assets.fee_units
        return max(0.0, from_base_units(spendable_units, self.assets.base_decimals) * price)

    def _units_for(self, snapshot: PortfolioSnapshot, asset: str, usd: float) -> int:
        holding = snapshot.holding(asset)
        if holding is None or holding.price_usd <= 0:
            return 0
        units = int(usd / holding.price_usd * (10 ** holding.decimals))
        return min(units, holding.quantity)

    def _action(self, snapshot: PortfolioSnapshot, kind: str, venue: str, input_asset: str,
                output_asset: str, usd: float, priority: int, rationale: str,
                expected_change: float) -> Optional[ProposedAction]:
        units = self._units_for(snapshot, input_asset, usd)
        if units <= 0:
            return None
        holding = snapshot.holding(input_asset)
        value = from_base_units(units, holding.decimals) * holding.price_usd
        if value < self.min_trade_usd:
            return None
        return ProposedAction(
            kind=kind,
            venue=venue,
            input_asset=input_asset,
            output_asset=output_asset,
            quantity=units,
            value_usd=value,
            max_slippage_bps=self._slippage(kind),
            priority=priority,
            rationale=rationale,
            description=f"{kind} {from_base_units(units, holding.decimals):.6f} {input_asset} -> {output_asset}",
            expected_value_change_usd=expected_change,
        )

    # ----- planning -----

    def plan(self, snapshot: PortfolioSnapshot,
             opportunities: Sequence[YieldOpportunity] = ()) -> List[ProposedAction]:
        """Corrective actions for assets outside tolerance, largest drift first."""
        total = snapshot.total_value_usd
        base = self.assets.base_asset
        if total <= 0 or not self._base_price(snapshot):
            return []

        values = self._values(snapshot)
        drifts = self.drift(values, total)
        max_trade_usd = total * self.max_trade_pct / 100.0

        base_target_usd = self.targets[base] / 100.0 * total
        budget = min(values.get(base, 0.0) - base_target_usd, self._base_spendable_usd(snapshot))

        candidates = []   # (abs drift, action)
        projected = dict(values)
        ordered = sorted(
            ((a, d) for a, d in drifts.items() if a != base and abs(d) > self.tolerance_pct),
            key=lambda item: abs(item[1]),
            reverse=True,
        )
        if not ordered and abs(drifts[base]) > self.tolerance_pct:
            ordered = self._base_counterpart(drifts)

        for asset, drift in ordered:
            if drift > 0:
                route = self._release_route(asset, opportunities)
                usd = min(drift / 100.0 * total, max_trade_usd, values.get(asset, 0.0))
                action = self._action(
                    snapshot, route.kind, route.venue, asset, base, usd, 0,
                    f"{asset} {drift:+.1f}pp over target {self.targets[asset]:.0f}%",
                    -usd * self._slippage(route.kind) / 10_000.0,
                )
                if action:
                    projected[asset] = projected.get(asset, 0.0) - action.value_usd
                    projected[base] = projected.get(base, 0.0) + action.value_usd
                    candidates.append((abs(drift), action))
            else:
                if budget < self.min_trade_usd:
                    logger.debug(f"No base surplus to buy {asset} (budget ${budget:.2f})")
                    continue
                route = self._acquire_route(asset, opportunities)
                usd = min(-drift / 100.0 * total, max_trade_usd, budget)
                apy = self._apy_for(asset, opportunities)
                action = self._action(
                    snapshot, route.kind, route.venue, base, asset, usd, 0,
                    f"{asset} {drift:+.1f}pp under target {self.targets[asset]:.0f}%",
                    usd * apy / 100.0 / 365.0 if route.kind == "stake"
                    else -usd * self._slippage(route.kind) / 10_000.0,
                )
                if action:
                    budget -= action.value_usd
                    projected[base] = projected.get(base, 0.0) - action.value_usd
                    projected[asset] = projected.get(asset, 0.0) + action.value_usd
                    candidates.append((abs(drift), action))

        if not candidates:
            return []

        before = self.max_drift(values, total)
        after = self.max_drift(projected, total)
        if not after < before:
            logger.warning(
                f"Discarding rebalance plan: max drift {before:.2f}pp would become {after:.2f}pp"
            )
            return []

        candidates.sort(key=lambda c: c[0], reverse=True)
        return [replace(action, priority=i) for i, (_, action) in enumerate(candidates, start=1)]

    def _base_counterpart(self, drifts: Dict[str, float]) -> List[tuple]:
        """The other asset to trade when only the base asset is beyond tolerance."""
        base = self.assets.base_asset
        others = [(a, d) for a, d in drifts.items() if a != base]
        if drifts[base] > 0:
            under = [(a, d) for a, d in others if d < 0]
            return [min(under, key=lambda item: item[1])] if under else []
        over = [(a, d) for a, d in others if d > 0]
        return [max(over, key=lambda item: item[1])] if over else []

    @staticmethod
    def _apy_for(asset: str, opportunities: Sequence[YieldOpportunity]) -> float:
        for opp in opportunities:
            if opp.output_asset == asset:
                return opp.apy
        return 0.0

    def improve_yield(self, snapshot: PortfolioSnapshot,
                      opportunities: Sequence[YieldOpportunity]) -> Optional[ProposedAction]:
        """
        One yield-improving action from the best ranked opportunity, sized so no
        managed asset ends outside tolerance.
        """
        total = snapshot.total_value_usd
        if total <= 0:
            return None
        values = self._values(snapshot)
        drifts = self.drift(values, total)
        max_trade_usd = total * self.max_trade_pct / 100.0

        for opp in opportunities:
            kind = OPPORTUNITY_ACTIONS.get(opp.kind)
            holding = snapshot.holding(opp.input_asset)
            if kind is None or holding is None or holding.value_usd <= 0:
                continue

            # room before the input asset drops below -tolerance
            in_drift = drifts.get(opp.input_asset, values.get(opp.input_asset, 0.0) / total * 100.0)
            room_in = in_drift + self.tolerance_pct
            # room before the output asset rises above +tolerance (unmanaged outputs target 0)
            out_drift = drifts.get(opp.output_asset, values.get(opp.output_asset, 0.0) / total * 100.0)
            room_out = self.tolerance_pct - out_drift

            usd = min(room_in, room_out) / 100.0 * total
            usd = min(usd, max_trade_usd, holding.value_usd)
            if opp.input_asset == self.assets.base_asset:
                usd = min(usd, self._base_spendable_usd(snapshot))
            if usd < self.min_trade_usd:
                continue

            action = self._action(
                snapshot, kind, opp.venue, opp.input_asset, opp.output_asset, usd, 1,
                f"idle {opp.input_asset} into {opp.venue} {opp.kind} at {opp.apy:.2f}% APY",
                usd * opp.apy / 100.0 / 365.0,
            )
            if action:
                return action
        return None
