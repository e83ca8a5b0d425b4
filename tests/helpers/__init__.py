"""Test helpers for the ooda-agent test suite"""

from tests.helpers.fakes import (
    OWNER,
    FakeAdapter,
    FakeChain,
    FakeDataSource,
    FakeSigner,
    RecordingSink,
    SnapshotBuilder,
    idle_base_snapshot,
    make_action,
    neutral_signals,
    stale,
    utc,
)

__all__ = [
    "OWNER",
    "FakeAdapter",
    "FakeChain",
    "FakeDataSource",
    "FakeSigner",
    "RecordingSink",
    "SnapshotBuilder",
    "idle_base_snapshot",
    "make_action",
    "neutral_signals",
    "stale",
    "utc",
]
