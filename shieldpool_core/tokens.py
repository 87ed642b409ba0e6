"""
Token support policy and per-token shielded balance accounting.

Support policy
--------------
Each token carries three flags:

  - ``supported``      accepted for new shields and as either side of a swap
  - ``ever_supported`` set the first time the token is supported, never cleared
  - ``blacklisted``    blocks inflows (shield, swap) while set

Unshield keys off ``ever_supported`` so that revoking support can never trap
funds that are already inside the pool.  The ever-supported set has no
removal path at all; it is exposed read-only as a ``frozenset``.

Balance book
------------
Integer base units only.  Every credit/debit is tagged with a flow so the
book can prove, per token::

    balance == shielded - unshielded - fees + swapped_in - swapped_out

A debit that would take a balance below zero raises ``InvariantViolation``;
balances are never clamped.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from shieldpool_core.errors import InvariantViolation, TokenBlacklisted, UnsupportedToken
from shieldpool_core.field import normalize_address

FLOW_SHIELD = "shielded"
FLOW_UNSHIELD = "unshielded"
FLOW_FEE = "fees"
FLOW_SWAP_IN = "swapped_in"
FLOW_SWAP_OUT = "swapped_out"

CREDIT_FLOWS = (FLOW_SHIELD, FLOW_SWAP_IN)
DEBIT_FLOWS = (FLOW_UNSHIELD, FLOW_FEE, FLOW_SWAP_OUT)
ALL_FLOWS = CREDIT_FLOWS + DEBIT_FLOWS


@dataclass
class TokenRecord:
    token: str
    supported: bool = False
    blacklisted: bool = False
    added_at: float = field(default_factory=time.time)

    def to_dict(self, ever_supported: bool) -> dict:
        return {
            "token": self.token,
            "supported": self.supported,
            "ever_supported": ever_supported,
            "blacklisted": self.blacklisted,
            "added_at": self.added_at,
        }


class TokenRegistry:
    """Support / blacklist flags plus the append-only ever-supported set."""

    def __init__(self):
        self._records: dict[str, TokenRecord] = {}
        self._ever: set[str] = set()

    def _record(self, token: str) -> TokenRecord:
        token = normalize_address(token)
        rec = self._records.get(token)
        if rec is None:
            rec = TokenRecord(token=token)
            self._records[token] = rec
        return rec

    # ── admin mutations ──────────────────────────────────────────

    def add(self, token: str) -> TokenRecord:
        rec = self._record(token)
        rec.supported = True
        self._ever.add(rec.token)
        return rec

    def remove(self, token: str) -> TokenRecord:
        """Stop accepting new inflows.  Ever-supported is untouched."""
        rec = self._record(token)
        rec.supported = False
        return rec

    def set_blacklisted(self, token: str, blacklisted: bool) -> TokenRecord:
        rec = self._record(token)
        rec.blacklisted = bool(blacklisted)
        return rec

    def mark_ever_supported(self, token: str) -> None:
        self._ever.add(normalize_address(token))

    # ── queries ──────────────────────────────────────────────────

    def is_supported(self, token: str) -> bool:
        rec = self._records.get(normalize_address(token))
        return rec is not None and rec.supported

    def was_ever_supported(self, token: str) -> bool:
        return normalize_address(token) in self._ever

    def is_blacklisted(self, token: str) -> bool:
        rec = self._records.get(normalize_address(token))
        return rec is not None and rec.blacklisted

    @property
    def ever_supported(self) -> frozenset[str]:
        return frozenset(self._ever)

    @property
    def supported(self) -> frozenset[str]:
        return frozenset(t for t, r in self._records.items() if r.supported)

    def records(self) -> list[TokenRecord]:
        return [self._records[t] for t in sorted(self._records)]

    def info(self, token: str) -> dict:
        token = normalize_address(token)
        rec = self._records.get(token) or TokenRecord(token=token, added_at=0.0)
        return rec.to_dict(token in self._ever)

    # ── policy checks ────────────────────────────────────────────

    def require_inflow(self, token: str) -> str:
        """Token must be currently supported and not blacklisted."""
        token = normalize_address(token)
        if not self.is_supported(token):
            raise UnsupportedToken(f"token {token} is not supported")
        if self.is_blacklisted(token):
            raise TokenBlacklisted(f"token {token} is blacklisted")
        return token

    def require_outflow(self, token: str) -> str:
        """Token must have been supported at some point."""
        token = normalize_address(token)
        if token not in self._ever:
            raise UnsupportedToken(f"token {token} was never supported")
        return token

    # ── persistence hooks ────────────────────────────────────────

    def load(self, token: str, supported: bool, ever_supported: bool,
             blacklisted: bool, added_at: float) -> None:
        rec = self._record(token)
        rec.supported = supported
        rec.blacklisted = blacklisted
        rec.added_at = added_at
        if ever_supported or supported:
            self._ever.add(rec.token)


class BalanceBook:
    """Aggregate shielded balance and flow counters per token."""

    def __init__(self):
        self._balances: dict[str, int] = {}
        self._flows: dict[str, dict[str, int]] = {}

    def _flow_row(self, token: str) -> dict[str, int]:
        row = self._flows.get(token)
        if row is None:
            row = {name: 0 for name in ALL_FLOWS}
            self._flows[token] = row
        return row

    def balance_of(self, token: str) -> int:
        return self._balances.get(normalize_address(token), 0)

    def flows_of(self, token: str) -> dict[str, int]:
        row = self._flows.get(normalize_address(token))
        return dict(row) if row is not None else {name: 0 for name in ALL_FLOWS}

    def tokens(self) -> list[str]:
        return sorted(set(self._balances) | set(self._flows))

    def credit(self, token: str, amount: int, flow: str) -> int:
        if flow not in CREDIT_FLOWS:
            raise ValueError(f"{flow} is not a credit flow")
        if amount < 0:
            raise InvariantViolation(f"negative credit {amount} for {token}")
        token = normalize_address(token)
        self._balances[token] = self._balances.get(token, 0) + amount
        self._flow_row(token)[flow] += amount
        return self._balances[token]

    def debit(self, token: str, amount: int, flow: str) -> int:
        if flow not in DEBIT_FLOWS:
            raise ValueError(f"{flow} is not a debit flow")
        if amount < 0:
            raise InvariantViolation(f"negative debit {amount} for {token}")
        token = normalize_address(token)
        current = self._balances.get(token, 0)
        if amount > current:
            raise InvariantViolation(
                f"balance underflow on {token}: {current} - {amount}"
            )
        self._balances[token] = current - amount
        self._flow_row(token)[flow] += amount
        return self._balances[token]

    def expected_balance(self, token: str) -> int:
        row = self._flow_row(normalize_address(token))
        return (row[FLOW_SHIELD] - row[FLOW_UNSHIELD] - row[FLOW_FEE]
                + row[FLOW_SWAP_IN] - row[FLOW_SWAP_OUT])

    # ── snapshot / rollback ──────────────────────────────────────

    def snapshot(self) -> tuple[dict[str, int], dict[str, dict[str, int]]]:
        return dict(self._balances), {t: dict(r) for t, r in self._flows.items()}

    def restore(self, snap: tuple[dict[str, int], dict[str, dict[str, int]]]) -> None:
        balances, flows = snap
        self._balances = dict(balances)
        self._flows = {t: dict(r) for t, r in flows.items()}

    def load(self, token: str, balance: int, flows: dict[str, int]) -> None:
        token = normalize_address(token)
        self._balances[token] = balance
        row = self._flow_row(token)
        for name in ALL_FLOWS:
            row[name] = int(flows.get(name, 0))
