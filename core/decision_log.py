"""
ooda-agent Core: Commitment Log

Append-only, hash-sealed record of what the agent decided and why. Each
trace is canonicalized (sorted keys, compact separators) and sealed with
SHA-256 so anyone holding the trace can recompute and verify the hash.

The log is a bounded ring: once max_commitments is reached the oldest
commitment is dropped.
"""

import copy
import hashlib
import hmac
import json
import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Sequence

from core.models import (
    ExecutionOutcome,
    MarketCondition,
    PortfolioSnapshot,
    ProposedAction,
    RiskVerdict,
    utcnow,
)

logger = logging.getLogger(__name__)

KIND_DECISION = "decision"
KIND_ANALYSIS = "analysis"

DEFAULT_MAX_COMMITMENTS = 1000


def canonical_json(trace: Dict[str, Any]) -> str:
    return json.dumps(trace, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(trace: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(trace).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Commitment:
    sequence: int
    hash: str
    kind: str
    trace: Dict[str, Any]
    committed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "hash": self.hash,
            "kind": self.kind,
            "trace": copy.deepcopy(self.trace),
            "committed_at": self.committed_at.isoformat(),
        }


class CommitmentLog:
    """
    Bounded, thread-safe commitment ring.

    Args:
        max_commitments: Ring size (oldest entries are dropped beyond it)
        sink: Optional object with log_commitment(commitment) for JSONL export
    """

    def __init__(self, max_commitments: int = DEFAULT_MAX_COMMITMENTS, sink: Optional[Any] = None):
        if max_commitments <= 0:
            raise ValueError("max_commitments must be positive")
        self.max_commitments = int(max_commitments)
        self._entries: Deque[Commitment] = deque(maxlen=self.max_commitments)
        self._sequence = 0
        self._dropped = 0
        self._sink = sink
        self._lock = threading.Lock()

    def commit(self, trace: Dict[str, Any], kind: Optional[str] = None) -> Commitment:
        """Seal a trace. The trace is deep-copied so later edits by the caller cannot alter it."""
        frozen = copy.deepcopy(trace)
        kind = kind or str(frozen.get("type", KIND_DECISION))
        digest = compute_hash(frozen)

        with self._lock:
            self._sequence += 1
            if len(self._entries) == self.max_commitments:
                self._dropped += 1
            commitment = Commitment(sequence=self._sequence, hash=digest, kind=kind, trace=frozen)
            self._entries.append(commitment)

        logger.debug("Committed %s #%d %s", kind, commitment.sequence, digest[:16])
        if self._sink is not None:
            try:
                self._sink.log_commitment(commitment)
            except Exception as e:
                logger.warning(f"Commitment sink failed: {e}")
        return commitment

    @staticmethod
    def verify(expected_hash: str, trace: Dict[str, Any]) -> bool:
        return hmac.compare_digest(compute_hash(trace), expected_hash)

    def find(self, digest: str) -> Optional[Commitment]:
        with self._lock:
            for entry in self._entries:
                if entry.hash == digest:
                    return entry
        return None

    def get_recent(self, n: int = 20) -> List[Commitment]:
        """Newest first."""
        with self._lock:
            entries = list(self._entries)
        if n <= 0:
            return []
        return list(reversed(entries[-n:]))

    def get_by_type(self, kind: str) -> List[Commitment]:
        with self._lock:
            return [e for e in self._entries if e.kind == kind]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries)
            dropped = self._dropped
        return {
            "total_commitments": len(entries),
            "by_type": dict(Counter(e.kind for e in entries)),
            "oldest": entries[0].committed_at.isoformat() if entries else None,
            "newest": entries[-1].committed_at.isoformat() if entries else None,
            "dropped": dropped,
        }

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._entries]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._dropped = 0
        logger.info("Commitment log cleared")

    def __len__(self) -> int:
        return len(self._entries)


def _condition_dict(condition: Optional[MarketCondition]) -> Optional[Dict[str, Any]]:
    if condition is None:
        return None
    return {
        "volatility_regime": condition.volatility_regime,
        "trend_direction": condition.trend_direction,
        "confidence": condition.confidence,
        "recommended_category": condition.recommended_category,
        "source": condition.source,
        "summary": condition.summary,
    }


def build_cycle_trace(*,
                      cycle: int,
                      mode: str,
                      snapshot: Optional[PortfolioSnapshot],
                      condition: Optional[MarketCondition],
                      strategy_id: Optional[str],
                      explanation: str,
                      confidence: float,
                      proposed: Sequence[ProposedAction],
                      verdicts: Sequence[RiskVerdict],
                      deferred: Sequence[ProposedAction] = (),
                      filtered: Sequence[ProposedAction] = (),
                      outcomes: Sequence[ExecutionOutcome] = (),
                      halted: bool = False) -> Dict[str, Any]:
    """One decision trace per cycle: what was proposed, approved, rejected and executed."""
    approved_ids = {v.action_id for v in verdicts if v.approved}
    return {
        "type": KIND_DECISION,
        "cycle": cycle,
        "mode": mode,
        "timestamp": utcnow().isoformat(),
        "portfolio_value_usd": round(snapshot.total_value_usd, 2) if snapshot else None,
        "market": _condition_dict(condition),
        "strategy": strategy_id,
        "explanation": explanation,
        "confidence": confidence,
        "halted": halted,
        "proposed": [a.to_dict() for a in proposed],
        "filtered_low_confidence": [a.id for a in filtered],
        "approved": [a.id for a in proposed if a.id in approved_ids],
        "verdicts": [v.to_dict() for v in verdicts],
        "deferred": [a.id for a in deferred],
        "outcomes": [
            {k: v for k, v in o.to_dict().items() if k != "completed_at"}
            for o in outcomes
        ],
    }


def build_analysis_trace(*, cycle: int, analysis: Dict[str, Any],
                         condition: MarketCondition) -> Dict[str, Any]:
    """Trace for cycles where an external market analysis shaped the decision."""
    return {
        "type": KIND_ANALYSIS,
        "cycle": cycle,
        "timestamp": utcnow().isoformat(),
        "analysis": copy.deepcopy(analysis),
        "market": _condition_dict(condition),
    }
