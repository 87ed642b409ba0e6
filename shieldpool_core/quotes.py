"""
Swap quote capability.

A swap proof commits to the output amount the user expects; the pool only
accepts it when that amount is within ``slippage_bps`` of what an
independent quote provider says ``amount_in`` is worth:

    max_out = expected * (10000 + slippage_bps) // 10000

``StaticRateQuoter`` is a price table keyed by (token_in, token_out).  Rates
are integers with a decimal scale (``rate * 10**-scale``) so no floats ever
reach value accounting.  Entries older than ``max_age`` are refused.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol

from shieldpool_core.errors import InvalidSwapRate
from shieldpool_core.field import normalize_address

BPS_DENOMINATOR = 10_000
DEFAULT_SLIPPAGE_BPS = 500


class QuoteProvider(Protocol):
    def quote(self, token_in: str, token_out: str, amount_in: int) -> int: ...


def max_acceptable_output(expected: int, slippage_bps: int) -> int:
    if not 0 <= slippage_bps <= BPS_DENOMINATOR:
        raise ValueError("slippage must be within 0-10000 bps")
    return expected * (BPS_DENOMINATOR + slippage_bps) // BPS_DENOMINATOR


@dataclass
class PairRate:
    """Units of token_out per unit of token_in, as ``rate * 10**-scale``."""
    token_in: str
    token_out: str
    rate: int
    scale: int = 0
    updated_at: float = field(default_factory=time.time)

    def apply(self, amount_in: int) -> int:
        return amount_in * self.rate // (10 ** self.scale)

    def to_dict(self) -> dict:
        return {
            "token_in": self.token_in,
            "token_out": self.token_out,
            "rate": self.rate,
            "scale": self.scale,
            "updated_at": self.updated_at,
        }


class StaticRateQuoter:
    """Operator-maintained rate table."""

    def __init__(self, max_age: float | None = None):
        self.max_age = max_age
        self._rates: dict[tuple[str, str], PairRate] = {}

    def set_rate(self, token_in: str, token_out: str, rate: int, scale: int = 0) -> PairRate:
        if rate <= 0 or scale < 0:
            raise ValueError("rate must be positive and scale non-negative")
        entry = PairRate(normalize_address(token_in), normalize_address(token_out), rate, scale)
        self._rates[(entry.token_in, entry.token_out)] = entry
        return entry

    def remove_rate(self, token_in: str, token_out: str) -> None:
        self._rates.pop((normalize_address(token_in), normalize_address(token_out)), None)

    def get_rate(self, token_in: str, token_out: str) -> PairRate | None:
        return self._rates.get((normalize_address(token_in), normalize_address(token_out)))

    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        entry = self.get_rate(token_in, token_out)
        if entry is None:
            raise InvalidSwapRate(f"no quote for {token_in} -> {token_out}")
        if self.max_age is not None and time.time() - entry.updated_at > self.max_age:
            raise InvalidSwapRate(f"quote for {token_in} -> {token_out} is stale")
        return entry.apply(amount_in)

    def all_rates(self) -> list[dict]:
        return [r.to_dict() for r in self._rates.values()]
