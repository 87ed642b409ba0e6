"""
Dry-run of pool operations.

Relayers call the simulator before paying to submit a transaction: it runs
every state precondition the ledger would run for a transfer, unshield or
swap against the current state, without verifying the proof and without
mutating anything, and reports which checks pass.

    sim = TransactionSimulator(pool)
    result = sim.simulate_unshield(request)
    if not result.would_pass:
        print(result.code, result.suggestion)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from shieldpool_core.errors import ShieldedPoolError, suggestion_for
from shieldpool_core.field import NATIVE_TOKEN
from shieldpool_core.ledger import ShieldedPool, SwapRequest, TransferRequest, UnshieldRequest
from shieldpool_core.verifier import PROOF_ELEMENTS


@dataclass
class SimulationResult:
    would_pass: bool
    code: str | None = None
    error: str = ""
    suggestion: str = ""
    checks: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "would_pass": self.would_pass,
            "code": self.code,
            "error": self.error,
            "suggestion": self.suggestion,
            "checks": dict(self.checks),
        }


def _passes(fn: Callable[[], object]) -> bool:
    try:
        fn()
    except (ShieldedPoolError, ValueError, TypeError):
        return False
    return True


def _proof_format_ok(proof) -> bool:
    elements = getattr(proof, "elements", proof)
    return isinstance(elements, (list, tuple)) and len(elements) == PROOF_ELEMENTS


class TransactionSimulator:
    """Read-only precondition checks against a live pool."""

    def __init__(self, pool: ShieldedPool):
        self.pool = pool

    def _run(self, checks: dict[str, bool], normalize, check_state) -> SimulationResult:
        pool = self.pool
        try:
            normalized = normalize()
            with pool._lock:
                check_state(normalized)
        except ShieldedPoolError as exc:
            return SimulationResult(False, exc.code, exc.message, suggestion_for(exc.code), checks)
        return SimulationResult(True, checks=checks)

    def _base_checks(self, proof, root: int, nullifier: int) -> dict[str, bool]:
        pool = self.pool
        return {
            "proof_format": _proof_format_ok(proof),
            "root_valid": _passes(lambda: pool._check_root(root)),
            "nullifier_unspent": _passes(lambda: pool._check_unspent(nullifier)),
        }

    def simulate_transfer(self, req: TransferRequest) -> SimulationResult:
        pool = self.pool
        checks = self._base_checks(req.proof, req.root, req.nullifier)
        checks["liquidity"] = _passes(lambda: pool._check_liquidity(NATIVE_TOKEN, req.fee))
        return self._run(checks, lambda: pool._normalize_transfer(req),
                         pool._check_transfer_state)

    def simulate_unshield(self, req: UnshieldRequest) -> SimulationResult:
        pool = self.pool
        checks = self._base_checks(req.proof, req.root, req.nullifier)
        checks["liquidity"] = _passes(
            lambda: pool._check_liquidity(req.token, req.amount + req.fee)
        )
        return self._run(checks, lambda: pool._normalize_unshield(req),
                         pool._check_unshield_state)

    def simulate_swap(self, req: SwapRequest) -> SimulationResult:
        pool = self.pool
        checks = self._base_checks(req.proof, req.root, req.nullifier)
        checks["liquidity"] = self._swap_liquidity_ok(req)
        return self._run(checks, lambda: pool._normalize_swap(req),
                         pool._check_swap_state)

    def _swap_liquidity_ok(self, req: SwapRequest) -> bool:
        pool = self.pool
        try:
            with pool._lock:
                need_out = req.output_amount + pool.params.platform_fee
                return (pool.balances.balance_of(req.token_in) >= req.swap_amount
                        and pool.free_liquidity(req.token_out) >= need_out)
        except (ValueError, TypeError):
            return False

    def simulate(self, kind: str, req) -> SimulationResult:
        handlers = {
            "transfer": self.simulate_transfer,
            "unshield": self.simulate_unshield,
            "swap": self.simulate_swap,
        }
        try:
            handler = handlers[kind]
        except KeyError:
            raise ValueError(f"cannot simulate {kind!r}") from None
        return handler(req)
