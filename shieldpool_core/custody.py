"""
Value-transfer capability used by the pool.

The ledger never moves value itself; it asks a ``CustodyBackend`` to

  - ``pull``   funds from a depositor into the pool (shield)
  - ``payout`` a list of legs out of the pool in one all-or-nothing call
  - report ``balance_of`` any holder (liquidity and solvency checks)

``InMemoryBank`` is the in-process implementation used by the node in
development mode and by the test-suite.  It keeps integer balances per
(holder, token) and supports one-shot fault injection via ``fail_next``.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from shieldpool_core.field import normalize_address

logger = logging.getLogger("shieldpool_custody")


class CustodyBackend(Protocol):
    def pull(self, token: str, source: str, pool: str, amount: int) -> bool: ...

    def payout(self, token: str, pool: str, legs: list[tuple[str, int]]) -> bool: ...

    def balance_of(self, token: str, holder: str) -> int: ...


class InMemoryBank:
    """Thread-safe integer ledger of external balances."""

    def __init__(self):
        self._lock = threading.Lock()
        self._balances: dict[tuple[str, str], int] = {}
        self._fail_ops: dict[str, int] = {}
        self.payouts: list[tuple[str, str, list[tuple[str, int]]]] = []

    def fund(self, holder: str, token: str, amount: int) -> int:
        """Mint ``amount`` of ``token`` to ``holder`` (test / dev faucet)."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        key = (normalize_address(holder), normalize_address(token))
        with self._lock:
            self._balances[key] = self._balances.get(key, 0) + amount
            return self._balances[key]

    def fail_next(self, op: str = "payout", times: int = 1) -> None:
        """Make the next ``times`` calls of ``op`` (pull/payout) return False."""
        if op not in ("pull", "payout"):
            raise ValueError(f"unknown custody op {op!r}")
        with self._lock:
            self._fail_ops[op] = self._fail_ops.get(op, 0) + times

    def _should_fail(self, op: str) -> bool:
        remaining = self._fail_ops.get(op, 0)
        if remaining:
            self._fail_ops[op] = remaining - 1
            return True
        return False

    def balance_of(self, token: str, holder: str) -> int:
        key = (normalize_address(holder), normalize_address(token))
        with self._lock:
            return self._balances.get(key, 0)

    def holdings(self) -> list[tuple[str, str, int]]:
        """Every non-zero ``(holder, token, amount)``, for persistence."""
        with self._lock:
            return [(h, t, amt) for (h, t), amt in sorted(self._balances.items()) if amt]

    def load(self, holdings: list[tuple[str, str, int]]) -> None:
        """Replace all balances with persisted ``holdings``."""
        with self._lock:
            self._balances = {
                (normalize_address(h), normalize_address(t)): amt for h, t, amt in holdings
            }

    def pull(self, token: str, source: str, pool: str, amount: int) -> bool:
        token = normalize_address(token)
        src = (normalize_address(source), token)
        dst = (normalize_address(pool), token)
        with self._lock:
            if self._should_fail("pull"):
                logger.warning("Injected pull failure for %s", token)
                return False
            if amount <= 0 or self._balances.get(src, 0) < amount:
                return False
            self._balances[src] -= amount
            self._balances[dst] = self._balances.get(dst, 0) + amount
            return True

    def payout(self, token: str, pool: str, legs: list[tuple[str, int]]) -> bool:
        token = normalize_address(token)
        src = (normalize_address(pool), token)
        normalized = [(normalize_address(to), amt) for to, amt in legs]
        total = sum(amt for _, amt in normalized)
        with self._lock:
            if self._should_fail("payout"):
                logger.warning("Injected payout failure for %s", token)
                return False
            if any(amt < 0 for _, amt in normalized):
                return False
            if self._balances.get(src, 0) < total:
                return False
            self._balances[src] -= total
            for to, amt in normalized:
                key = (to, token)
                self._balances[key] = self._balances.get(key, 0) + amt
            self.payouts.append((token, src[0], normalized))
            return True
