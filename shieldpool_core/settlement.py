"""
Fee and relay settlement.

Relayers submit transactions on behalf of note owners and are paid a fee
out of the pool.  The rules are small but sharp:

  - a negative fee is malformed (``InvalidAmount``)
  - a positive fee with the zero relayer is rejected (``InvalidRecipient``);
    fees are never silently burned
  - batch fees split evenly or not at all

A ``SettlementPlan`` is assembled while an operation is being committed and
executed once, after every ledger mutation succeeded.  Each token's legs go
out in a single ``payout`` so a partial delivery is impossible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from shieldpool_core.custody import CustodyBackend
from shieldpool_core.errors import InvalidAmount, InvalidRecipient, TransferFailed
from shieldpool_core.field import is_zero_address, normalize_address

logger = logging.getLogger("shieldpool_settlement")


def check_relayer_fee(relayer: str, fee: int) -> str:
    """Validate a relayer/fee pair and return the normalised relayer."""
    if not isinstance(fee, int) or isinstance(fee, bool) or fee < 0:
        raise InvalidAmount(f"fee must be a non-negative integer, got {fee!r}")
    try:
        relayer = normalize_address(relayer)
    except ValueError as exc:
        raise InvalidRecipient(str(exc)) from None
    if fee > 0 and is_zero_address(relayer):
        raise InvalidRecipient("a non-zero fee requires a relayer")
    return relayer


def split_batch_fee(total_fee: int, count: int) -> int:
    """Per-item fee for a batch of ``count``; must divide exactly."""
    if count <= 0:
        raise InvalidAmount("batch is empty")
    if total_fee < 0:
        raise InvalidAmount("fee must be non-negative")
    per_item, remainder = divmod(total_fee, count)
    if remainder:
        raise InvalidAmount(f"fee {total_fee} is not divisible by batch size {count}")
    return per_item


@dataclass
class SettlementPlan:
    """Payout legs grouped by token, in insertion order."""
    legs: dict[str, list[tuple[str, int]]] = field(default_factory=dict)

    def add(self, token: str, recipient: str, amount: int) -> None:
        if amount <= 0:
            return
        token = normalize_address(token)
        self.legs.setdefault(token, []).append((normalize_address(recipient), amount))

    def total(self, token: str) -> int:
        return sum(amount for _, amount in self.legs.get(normalize_address(token), []))

    def is_empty(self) -> bool:
        return not self.legs

    def execute(self, custody: CustodyBackend, pool_address: str) -> None:
        for token, legs in self.legs.items():
            try:
                ok = custody.payout(token, pool_address, list(legs))
            except Exception as exc:
                logger.warning("Payout of %s raised: %s", token, exc)
                raise TransferFailed(f"payout of {token} failed: {exc}") from exc
            if not ok:
                raise TransferFailed(f"payout of {token} was refused by custody")
