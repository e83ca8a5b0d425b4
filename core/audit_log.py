"""
ooda-agent Core: Audit Logger

Append-only JSONL export of cycle summaries and sealed commitments. The
in-memory commitment log is the source of truth; this file lets operators
keep the record beyond the process lifetime.
"""

import json
import logging
import threading
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Writes one JSON object per line:
    - {"event": "cycle", ...}       cycle summary with status and counts
    - {"event": "commitment", ...}  every sealed commitment (hash + trace)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self,
                  ts: datetime,
                  cycle: int,
                  mode: str,
                  status: str,
                  proposed: int = 0,
                  approved: int = 0,
                  executed: int = 0,
                  error: Optional[str] = None,
                  stage_latencies: Optional[Dict[str, float]] = None,
                  config_hash: Optional[str] = None,
                  commitment_hash: Optional[str] = None) -> None:
        entry = {
            "event": "cycle",
            "timestamp": ts.isoformat(),
            "cycle": cycle,
            "mode": mode,
            "status": status,
            "proposed": proposed,
            "approved": approved,
            "executed": executed,
            "error": error,
            "config_hash": config_hash,
            "commitment_hash": commitment_hash,
        }
        if stage_latencies:
            entry["stage_latencies"] = {k: round(v, 4) for k, v in stage_latencies.items()}
        self._write(entry)

    def log_commitment(self, commitment: Any) -> None:
        entry = {"event": "commitment"}
        entry.update(commitment.to_dict())
        self._write(entry)

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a") as f:
                    f.write(line + "\n")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def read_entries(self, event: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read back entries (optionally one event type); used by operators and tests."""
        if not self.audit_file.exists():
            return []
        entries = []
        with open(self.audit_file) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed audit line")
                    continue
                if event is None or entry.get("event") == event:
                    entries.append(entry)
        return entries
