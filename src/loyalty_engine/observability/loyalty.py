from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List

from sqlalchemy import event
from sqlalchemy.orm import Session

_PENDING_KEY = "loyalty_pending_metrics"


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    spins: Dict[str, int]
    missions: Dict[str, int]
    concurrency: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "spins": dict(self.spins),
            "missions": dict(self.missions),
            "concurrency": dict(self.concurrency),
        }


class LoyaltyObservabilityStore:
    """Collect ledger and reward telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._spins: Dict[str, int] = defaultdict(int)
        self._missions: Dict[str, int] = defaultdict(int)
        self._concurrency: Dict[str, int] = defaultdict(int)

    def record_ledger_append(self, kind: str) -> None:
        with self._lock:
            self._ledger["appends"] += 1
            self._ledger[f"kind:{kind}"] += 1

    def record_balance_drift(self) -> None:
        with self._lock:
            self._ledger["drift_reconciled"] += 1

    def record_spin(self, outcome: str) -> None:
        with self._lock:
            self._spins["total"] += 1
            self._spins[f"outcome:{outcome}"] += 1

    def record_quota_rejection(self) -> None:
        with self._lock:
            self._spins["quota_rejected"] += 1

    def record_mission_completion(self, *, replayed: bool) -> None:
        with self._lock:
            self._missions["replayed" if replayed else "completed"] += 1

    def record_conflict(self, operation: str) -> None:
        with self._lock:
            self._concurrency["conflicts"] += 1
            self._concurrency[f"operation:{operation}"] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                ledger=dict(self._ledger),
                spins=dict(self._spins),
                missions=dict(self._missions),
                concurrency=dict(self._concurrency),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._spins.clear()
            self._missions.clear()
            self._concurrency.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


def record_after_commit(session: Any, callback: Callable[[LoyaltyObservabilityStore], None]) -> None:
    """Queue a counter update that only lands if the session's transaction commits."""

    pending: List[Callable[[LoyaltyObservabilityStore], None]] = session.info.setdefault(_PENDING_KEY, [])
    pending.append(callback)


@event.listens_for(Session, "after_commit")
def _flush_pending_metrics(session: Session) -> None:
    for callback in session.info.pop(_PENDING_KEY, []):
        callback(_STORE)


@event.listens_for(Session, "after_rollback")
def _drop_pending_metrics(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot", "record_after_commit"]
