"""
Error taxonomy for the shielded pool.

Every rejection raised by the ledger is a ``ShieldedPoolError`` subclass
carrying a stable ``code`` (the name relayers and indexers match on) and a
``retryable`` flag:

  - permanent: proof rejection, replayed nullifier, commitment collision,
    malformed amounts.  Retrying the exact same input always fails again.
  - retryable: liquidity shortfalls and failed payouts.  The same input may
    succeed once the pool is topped up or the payout primitive recovers.

``InvariantViolation`` is fatal: it signals an accounting bug, the operation
is rolled back and the error must never be silently ignored.
"""

from __future__ import annotations


class ShieldedPoolError(Exception):
    """Base class for all ledger rejections."""

    code = "ShieldedPoolError"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class InvalidProof(ShieldedPoolError):
    code = "InvalidProof"


class UnknownRoot(ShieldedPoolError):
    code = "UnknownRoot"


class NullifierAlreadySpent(ShieldedPoolError):
    code = "NullifierAlreadySpent"


class DuplicateCommitment(ShieldedPoolError):
    code = "DuplicateCommitment"


class InvalidCommitment(ShieldedPoolError):
    code = "InvalidCommitment"


class InvalidAmount(ShieldedPoolError):
    code = "InvalidAmount"


class UnsupportedToken(ShieldedPoolError):
    code = "UnsupportedToken"


class TokenBlacklisted(ShieldedPoolError):
    code = "TokenBlacklisted"


class InsufficientPoolBalance(ShieldedPoolError):
    code = "InsufficientPoolBalance"
    retryable = True


class InvalidRecipient(ShieldedPoolError):
    code = "InvalidRecipient"


class TransferFailed(ShieldedPoolError):
    code = "TransferFailed"
    retryable = True


class ExcessiveSlippage(ShieldedPoolError):
    code = "ExcessiveSlippage"


class InvalidSwapRate(ShieldedPoolError):
    code = "InvalidSwapRate"


class BatchSizeMismatch(ShieldedPoolError):
    code = "BatchSizeMismatch"


class BatchSizeTooLarge(ShieldedPoolError):
    code = "BatchSizeTooLarge"


class MerkleTreeFull(ShieldedPoolError):
    code = "MerkleTreeFull"


class MemoTooLarge(ShieldedPoolError):
    code = "MemoTooLarge"


class Unauthorized(ShieldedPoolError):
    code = "Unauthorized"


class InvariantViolation(ShieldedPoolError):
    code = "InvariantViolation"


# Replay-class failures: the caller must build a new note / proof.
REPLAY_CODES = frozenset({
    NullifierAlreadySpent.code,
    DuplicateCommitment.code,
})

# Human hints returned by the API and the simulator.
SUGGESTIONS: dict[str, str] = {
    InvalidProof.code: "Regenerate the proof against the current public inputs.",
    UnknownRoot.code: "The Merkle root aged out of the history window; rebuild the proof on a fresh root.",
    NullifierAlreadySpent.code: "This note has already been spent. Use a different note.",
    DuplicateCommitment.code: "Output commitment already exists; generate a note with fresh randomness.",
    InvalidCommitment.code: "Commitments must be non-zero field elements.",
    InvalidAmount.code: "Check the amount and that the total fee divides evenly across the batch.",
    UnsupportedToken.code: "The token is not supported by this pool.",
    TokenBlacklisted.code: "The token is blacklisted for new deposits and swaps.",
    InsufficientPoolBalance.code: "Pool liquidity is too low right now; retry later or use a smaller amount.",
    InvalidRecipient.code: "Recipient and relayer must be valid addresses; a fee requires a relayer.",
    TransferFailed.code: "The payout could not be delivered; retry later.",
    ExcessiveSlippage.code: "Output fell below your minimum; increase slippage or retry.",
    InvalidSwapRate.code: "Claimed output exceeds the maximum acceptable exchange rate.",
    BatchSizeMismatch.code: "Batch inputs are empty or inconsistent.",
    BatchSizeTooLarge.code: "Split the batch into smaller batches.",
    MerkleTreeFull.code: "The pool tree is full; use a newer pool.",
    MemoTooLarge.code: "Encrypted memo exceeds the maximum size.",
    Unauthorized.code: "Only the pool owner may perform this action.",
    InvariantViolation.code: "Internal accounting error; report this to the pool operator.",
}


def suggestion_for(code: str) -> str:
    return SUGGESTIONS.get(code, "Transaction rejected.")
