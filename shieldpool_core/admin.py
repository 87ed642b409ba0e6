"""
Pool ownership and tunable parameters.

Ownership moves in two steps: the owner nominates a successor, the
successor accepts.  Until acceptance the old owner keeps full control and
may cancel the nomination.  There is no way to leave the pool ownerless.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from shieldpool_core.errors import InvalidRecipient, Unauthorized
from shieldpool_core.field import ZERO_ADDRESS, is_zero_address, normalize_address
from shieldpool_core.quotes import BPS_DENOMINATOR, DEFAULT_SLIPPAGE_BPS


def _address_or_recipient_error(address: str) -> str:
    try:
        return normalize_address(address)
    except ValueError as exc:
        raise InvalidRecipient(str(exc)) from None


class Ownership:
    """Owner plus an optional pending owner."""

    def __init__(self, owner: str):
        owner = _address_or_recipient_error(owner)
        if is_zero_address(owner):
            raise InvalidRecipient("owner must be non-zero")
        self.owner = owner
        self.pending_owner: str | None = None

    def is_owner(self, caller: str) -> bool:
        try:
            return normalize_address(caller) == self.owner
        except ValueError:
            return False

    def require_owner(self, caller: str) -> str:
        if not self.is_owner(caller):
            raise Unauthorized(f"{caller} is not the pool owner")
        return self.owner

    def start_transfer(self, caller: str, new_owner: str) -> str:
        self.require_owner(caller)
        new_owner = _address_or_recipient_error(new_owner)
        if is_zero_address(new_owner):
            raise InvalidRecipient("new owner must be non-zero")
        self.pending_owner = new_owner
        return new_owner

    def accept(self, caller: str) -> tuple[str, str]:
        """Complete the handover; returns (previous_owner, new_owner)."""
        if self.pending_owner is None:
            raise Unauthorized("no ownership transfer is pending")
        try:
            caller = normalize_address(caller)
        except ValueError:
            raise Unauthorized("caller is not the pending owner") from None
        if caller != self.pending_owner:
            raise Unauthorized(f"{caller} is not the pending owner")
        previous = self.owner
        self.owner = caller
        self.pending_owner = None
        return previous, caller

    def cancel(self, caller: str) -> str | None:
        self.require_owner(caller)
        pending, self.pending_owner = self.pending_owner, None
        return pending

    def to_dict(self) -> dict:
        return {"owner": self.owner, "pending_owner": self.pending_owner}


@dataclass
class PoolParameters:
    """Limits and fee settings the owner may tune at runtime."""
    min_shield_amount: int = 1
    max_memo_bytes: int = 1024
    max_batch_size: int = 10
    max_multi_inputs: int = 5
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    platform_fee: int = 0
    treasury: str = ZERO_ADDRESS
    relayer_router: str | None = None
    relayers: set[str] = field(default_factory=set)

    def __post_init__(self):
        if self.min_shield_amount < 1:
            raise ValueError("min_shield_amount must be at least 1")
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if self.max_multi_inputs < 2:
            raise ValueError("max_multi_inputs must be at least 2")
        if not 0 <= self.slippage_bps <= BPS_DENOMINATOR:
            raise ValueError("slippage_bps must be within 0-10000")
        if self.platform_fee < 0:
            raise ValueError("platform_fee must be non-negative")
        self.treasury = normalize_address(self.treasury)
        if self.relayer_router:
            self.relayer_router = normalize_address(self.relayer_router)
        else:
            self.relayer_router = None
        self.relayers = {normalize_address(r) for r in self.relayers}

    def relayer_allowed(self, relayer: str) -> bool:
        """With a router configured only it and registered relayers may relay."""
        if self.relayer_router is None or is_zero_address(relayer):
            return True
        relayer = normalize_address(relayer)
        return relayer == self.relayer_router or relayer in self.relayers

    def to_dict(self) -> dict:
        d = asdict(self)
        d["relayers"] = sorted(self.relayers)
        return d
