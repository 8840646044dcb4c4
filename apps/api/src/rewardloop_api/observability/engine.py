from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class EngineSnapshot:
    rules: Dict[str, int]
    ledger: Dict[str, int]
    communications: Dict[str, Dict[str, int]]
    vouchers: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "rules": dict(self.rules),
            "ledger": dict(self.ledger),
            "communications": {key: dict(value) for key, value in self.communications.items()},
            "vouchers": dict(self.vouchers),
        }


class EngineObservabilityStore:
    """Collect rule, ledger, voucher and dispatch counters for the readiness endpoint."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._rules: Dict[str, int] = defaultdict(int)
        self._ledger: Dict[str, int] = defaultdict(int)
        self._vouchers: Dict[str, int] = defaultdict(int)
        self._dispatch_outcomes: Dict[str, int] = defaultdict(int)
        self._dispatch_channels: Dict[str, int] = defaultdict(int)

    def record_rule_outcome(self, outcome: str, reason: str | None = None) -> None:
        with self._lock:
            self._rules[outcome] += 1
            if reason:
                self._rules[f"reason:{reason}"] += 1

    def record_ledger_posting(self, transaction_type: str, points: int) -> None:
        with self._lock:
            self._ledger[f"{transaction_type}:count"] += 1
            self._ledger[f"{transaction_type}:points"] += abs(points)

    def record_voucher_outcome(self, outcome: str) -> None:
        with self._lock:
            self._vouchers[outcome] += 1

    def record_dispatch(self, outcome: str, channel: str | None) -> None:
        with self._lock:
            self._dispatch_outcomes[outcome] += 1
            self._dispatch_channels[channel or "unknown"] += 1

    def snapshot(self) -> EngineSnapshot:
        with self._lock:
            rules = dict(self._rules)
            ledger = dict(self._ledger)
            vouchers = dict(self._vouchers)
            communications = {
                "by_outcome": dict(self._dispatch_outcomes),
                "by_channel": dict(self._dispatch_channels),
            }
        return EngineSnapshot(rules=rules, ledger=ledger, communications=communications, vouchers=vouchers)

    def reset(self) -> None:
        with self._lock:
            self._rules.clear()
            self._ledger.clear()
            self._vouchers.clear()
            self._dispatch_outcomes.clear()
            self._dispatch_channels.clear()


_STORE = EngineObservabilityStore()


def get_engine_store() -> EngineObservabilityStore:
    return _STORE


__all__ = ["EngineObservabilityStore", "EngineSnapshot", "get_engine_store"]
