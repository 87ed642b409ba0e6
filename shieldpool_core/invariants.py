"""
Post-operation invariant checks for the shielded pool.

Run inside the commit section of every ledger operation:
  - per-token value conservation:
      balance == shielded - unshielded - fees + swapped_in - swapped_out
  - no token balance is negative
  - every supported token is in the ever-supported set
  - the ever-supported set never shrinks
  - spent-nullifier count and leaf count never decrease
  - every inserted leaf has exactly one registered commitment

If any invariant fails the operation is rolled back and rejected with
``InvariantViolation``.

``check_solvency`` is an out-of-band audit: custody must hold at least the
shielded balance of every token.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class PoolSnapshot:
    """Counters captured before an operation."""
    ever_supported: frozenset[str] = frozenset()
    nullifier_count: int = 0
    leaf_count: int = 0
    commitment_count: int = 0
    balances: dict[str, int] = field(default_factory=dict)


class PoolInvariantChecker:
    """
    Captures a pre-operation snapshot of the pool and validates invariants
    after the operation is applied.
    """

    def __init__(self):
        self._snapshot: PoolSnapshot | None = None

    def capture(self, pool) -> None:
        """Take a snapshot of the pool state before an operation."""
        self._snapshot = PoolSnapshot(
            ever_supported=pool.tokens.ever_supported,
            nullifier_count=len(pool.nullifiers),
            leaf_count=pool.tree.size,
            commitment_count=len(pool.commitments),
            balances={t: pool.balances.balance_of(t) for t in pool.balances.tokens()},
        )

    def verify(self, pool) -> tuple[bool, str]:
        """
        Verify all invariants against the current pool state.
        Returns (passed, error_message).
        """
        if self._snapshot is None:
            return True, ""

        errors: list[str] = []
        for check in (
            self._check_value_conservation,
            self._check_non_negative_balances,
            self._check_supported_subset,
            self._check_ever_supported_monotonic,
            self._check_counts_monotonic,
            self._check_commitments_match_leaves,
        ):
            ok, msg = check(pool)
            if not ok:
                errors.append(msg)

        self._snapshot = None
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def _check_value_conservation(self, pool) -> tuple[bool, str]:
        for token in pool.balances.tokens():
            actual = pool.balances.balance_of(token)
            expected = pool.balances.expected_balance(token)
            if actual != expected:
                return (False,
                        f"Value conservation broken on {token}: "
                        f"balance {actual} != flows {expected}")
        return True, ""

    def _check_non_negative_balances(self, pool) -> tuple[bool, str]:
        for token in pool.balances.tokens():
            if pool.balances.balance_of(token) < 0:
                return False, f"Negative balance on {token}"
        return True, ""

    def _check_supported_subset(self, pool) -> tuple[bool, str]:
        missing = pool.tokens.supported - pool.tokens.ever_supported
        if missing:
            return False, f"Supported but never marked ever-supported: {sorted(missing)}"
        return True, ""

    def _check_ever_supported_monotonic(self, pool) -> tuple[bool, str]:
        lost = self._snapshot.ever_supported - pool.tokens.ever_supported
        if lost:
            return False, f"Ever-supported set shrank: {sorted(lost)}"
        return True, ""

    def _check_counts_monotonic(self, pool) -> tuple[bool, str]:
        snap = self._snapshot
        if len(pool.nullifiers) < snap.nullifier_count:
            return (False,
                    f"Nullifier count decreased: {snap.nullifier_count} -> "
                    f"{len(pool.nullifiers)}")
        if pool.tree.size < snap.leaf_count:
            return False, f"Leaf count decreased: {snap.leaf_count} -> {pool.tree.size}"
        return True, ""

    def _check_commitments_match_leaves(self, pool) -> tuple[bool, str]:
        if len(pool.commitments) != pool.tree.size:
            return (False,
                    f"Commitment count {len(pool.commitments)} != "
                    f"leaf count {pool.tree.size}")
        return True, ""

    # ── solvency audit ───────────────────────────────────────────

    @staticmethod
    def check_solvency(pool) -> tuple[bool, str, dict[str, dict[str, int]]]:
        """Custody must cover the shielded balance of every token."""
        report: dict[str, dict[str, int]] = {}
        short: list[str] = []
        with pool._lock:
            for token in pool.balances.tokens():
                shielded = pool.balances.balance_of(token)
                held = pool.custody.balance_of(token, pool.pool_address)
                report[token] = {"shielded": shielded, "custody": held}
                if held < shielded:
                    short.append(f"{token} custody {held} < shielded {shielded}")
        if short:
            return False, "; ".join(short), report
        return True, "", report
