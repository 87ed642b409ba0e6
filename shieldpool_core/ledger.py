"""
Shielded pool state machine.

``ShieldedPool`` is the single authority over the accumulator, the
nullifier and commitment registries, token policy and per-token balances.
Every state-changing operation follows the same shape:

  1. stateless shape validation of the request
  2. fail-fast state preconditions, under the pool lock
  3. proof verification, outside the lock (side-effect free)
  4. commit section, under the lock:
       re-check preconditions → mutate registries, tree, balances →
       invariant check → custody movements → publish buffered events

Any failure in step 4 restores the tree snapshot and balance snapshot,
forgets nullifiers / commitments recorded by the operation and drops its
buffered events, so a rejected operation leaves no trace.  Two operations
racing on one nullifier serialise on the lock; the second one fails the
re-check with ``NullifierAlreadySpent``.

Value model
-----------
  - shield         credit  ``shielded``     on the deposited token
  - unshield       debit   ``unshielded``   amount, ``fees`` relayer fee
  - transfer       debit   ``fees`` in the native token when fee > 0
  - swap           debit   ``swapped_out``  on token_in,
                   credit  ``swapped_in``   on token_out; the platform fee
                   is paid in token_out out of free liquidity
                   (custody minus shielded balance)
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Sequence

from shieldpool_core import events as ev
from shieldpool_core.admin import Ownership, PoolParameters
from shieldpool_core.custody import CustodyBackend
from shieldpool_core.errors import (
    BatchSizeMismatch,
    BatchSizeTooLarge,
    DuplicateCommitment,
    ExcessiveSlippage,
    InsufficientPoolBalance,
    InvalidAmount,
    InvalidCommitment,
    InvalidProof,
    InvalidRecipient,
    InvalidSwapRate,
    InvariantViolation,
    MemoTooLarge,
    MerkleTreeFull,
    NullifierAlreadySpent,
    ShieldedPoolError,
    TransferFailed,
    UnknownRoot,
    UnsupportedToken,
)
from shieldpool_core.events import EventLog
from shieldpool_core.field import (
    FIELD_SIZE,
    NATIVE_TOKEN,
    ZERO_ADDRESS,
    Hasher,
    address_to_field,
    is_field_element,
    is_zero_address,
    normalize_address,
)
from shieldpool_core.invariants import PoolInvariantChecker
from shieldpool_core.merkle import DEFAULT_ROOT_HISTORY_SIZE, DEFAULT_TREE_DEPTH, MerkleAccumulator
from shieldpool_core.quotes import BPS_DENOMINATOR, QuoteProvider, max_acceptable_output
from shieldpool_core.registry import CommitmentRegistry, NullifierRegistry
from shieldpool_core.settlement import SettlementPlan, check_relayer_fee, split_batch_fee
from shieldpool_core.tokens import (
    FLOW_FEE,
    FLOW_SHIELD,
    FLOW_SWAP_IN,
    FLOW_SWAP_OUT,
    FLOW_UNSHIELD,
    BalanceBook,
    TokenRegistry,
)
from shieldpool_core.verifier import Proof, ProofKind, VerifierSet

logger = logging.getLogger("shieldpool_ledger")


# ═══════════════════════════════════════════════════════════════════
#  Requests and receipts
# ═══════════════════════════════════════════════════════════════════

@dataclass
class TransferRequest:
    proof: Proof | Sequence[int]
    root: int
    nullifier: int
    output1: int
    output2: int = 0
    relayer: str = ZERO_ADDRESS
    fee: int = 0
    memo1: bytes = b""
    memo2: bytes = b""

    def public_inputs(self) -> list[int]:
        return [self.root, self.nullifier, self.output1, self.output2,
                address_to_field(self.relayer), self.fee]


@dataclass
class UnshieldRequest:
    proof: Proof | Sequence[int]
    root: int
    nullifier: int
    recipient: str
    token: str
    amount: int
    change_commitment: int = 0
    relayer: str = ZERO_ADDRESS
    fee: int = 0

    def public_inputs(self) -> list[int]:
        return [self.root, self.nullifier, address_to_field(self.recipient), self.amount,
                self.change_commitment, address_to_field(self.relayer), self.fee,
                address_to_field(self.token)]


@dataclass
class SwapRequest:
    proof: Proof | Sequence[int]
    root: int
    nullifier: int
    output1: int
    output2: int
    token_in: str
    token_out: str
    swap_amount: int
    output_amount: int
    min_amount_out: int = 0
    memo: bytes = b""

    def public_inputs(self) -> list[int]:
        return [self.root, self.nullifier, self.output1, self.output2,
                address_to_field(self.token_in), address_to_field(self.token_out),
                self.swap_amount, self.output_amount]


@dataclass
class BatchItem:
    proof: Proof | Sequence[int]
    root: int
    nullifier: int


@dataclass
class BatchTransferRequest:
    items: list[BatchItem]
    output1: int
    output2: int = 0
    relayer: str = ZERO_ADDRESS
    fee: int = 0
    memo1: bytes = b""
    memo2: bytes = b""

    def item_inputs(self, item: BatchItem, fee_per_item: int) -> list[int]:
        return [item.root, item.nullifier, self.output1, self.output2,
                address_to_field(self.relayer), fee_per_item]


@dataclass
class BatchUnshieldItem:
    proof: Proof | Sequence[int]
    root: int
    nullifier: int
    amount: int


@dataclass
class BatchUnshieldRequest:
    items: list[BatchUnshieldItem]
    recipient: str
    token: str
    relayer: str = ZERO_ADDRESS
    fee: int = 0

    def item_inputs(self, item: BatchUnshieldItem, fee_per_item: int) -> list[int]:
        return [item.root, item.nullifier, address_to_field(self.recipient), item.amount,
                0, address_to_field(self.relayer), fee_per_item,
                address_to_field(self.token)]


@dataclass
class MultiInputTransferRequest:
    proof: Proof | Sequence[int]
    roots: list[int]
    nullifiers: list[int]
    output1: int
    output2: int = 0
    relayer: str = ZERO_ADDRESS
    fee: int = 0
    memo1: bytes = b""
    memo2: bytes = b""

    def public_inputs(self, max_inputs: int) -> list[int]:
        pad = max_inputs - len(self.roots)
        return (list(self.roots) + [0] * pad
                + list(self.nullifiers) + [0] * pad
                + [self.output1, self.output2, address_to_field(self.relayer),
                   self.fee, len(self.roots)])


@dataclass
class Receipt:
    """Outcome of an accepted operation."""
    op: str
    root: int
    leaf_indices: list[int] = field(default_factory=list)
    nullifiers: list[int] = field(default_factory=list)
    details: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "op": self.op,
            "root": hex(self.root),
            "leaf_indices": list(self.leaf_indices),
            "nullifiers": [hex(n) for n in self.nullifiers],
            "details": dict(self.details),
            "timestamp": self.timestamp,
        }


# ═══════════════════════════════════════════════════════════════════
#  Operation journal
# ═══════════════════════════════════════════════════════════════════

@dataclass
class _Journal:
    tree_snapshot: object
    balance_snapshot: object
    spent: list[int] = field(default_factory=list)
    seen: list[int] = field(default_factory=list)
    events: list[ev.PoolEvent] = field(default_factory=list)
    plan: SettlementPlan = field(default_factory=SettlementPlan)
    pull: tuple[str, str, int] | None = None


def _operation(name: str):
    """Log rejections of a ledger operation with their error code."""
    def wrap(fn):
        @functools.wraps(fn)
        def inner(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except InvariantViolation as exc:
                logger.error(f"{name} rolled back: {exc.message}",
                             extra={"op": name, "code": exc.code})
                raise
            except ShieldedPoolError as exc:
                logger.debug(f"{name} rejected: {exc.code}",
                             extra={"op": name, "code": exc.code})
                raise
        return inner
    return wrap


# ── shape helpers ────────────────────────────────────────────────

def _require_amount(value, name: str, allow_zero: bool = False) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidAmount(f"{name} must be an integer")
    low = 0 if allow_zero else 1
    if value < low or value >= FIELD_SIZE:
        raise InvalidAmount(f"{name} out of range: {value}")
    return value


def _require_element(value, name: str, allow_zero: bool = False) -> int:
    if not is_field_element(value):
        raise InvalidCommitment(f"{name} is not a field element")
    if not value and not allow_zero:
        raise InvalidCommitment(f"{name} must be non-zero")
    return value


def _require_address(value, name: str, allow_zero: bool = True) -> str:
    try:
        address = normalize_address(value)
    except ValueError as exc:
        raise InvalidRecipient(f"{name}: {exc}") from None
    if not allow_zero and is_zero_address(address):
        raise InvalidRecipient(f"{name} must be non-zero")
    return address


def _require_token(value) -> str:
    try:
        return normalize_address(value)
    except ValueError as exc:
        raise UnsupportedToken(str(exc)) from None


def _require_proof(value) -> Proof:
    return Proof.from_list(value)


# ═══════════════════════════════════════════════════════════════════
#  Pool
# ═══════════════════════════════════════════════════════════════════

class ShieldedPool:
    """Proof-gated multi-token shielded ledger."""

    def __init__(
        self,
        pool_address: str,
        owner: str,
        custody: CustodyBackend,
        verifiers: VerifierSet,
        quoter: QuoteProvider | None = None,
        params: PoolParameters | None = None,
        tree_depth: int = DEFAULT_TREE_DEPTH,
        root_history_size: int = DEFAULT_ROOT_HISTORY_SIZE,
        hasher: Hasher | None = None,
    ):
        self.pool_address = normalize_address(pool_address)
        self.custody = custody
        self.verifiers = verifiers
        self.quoter = quoter
        self.params = params or PoolParameters()
        if self.verifiers.max_multi_inputs != self.params.max_multi_inputs:
            raise ValueError("verifier set and pool disagree on max_multi_inputs")
        self.ownership = Ownership(owner)

        self.tree = MerkleAccumulator(tree_depth, root_history_size, hasher,
                                      on_insert=self._on_leaf_inserted)
        self.nullifiers = NullifierRegistry()
        self.commitments = CommitmentRegistry()
        self.tokens = TokenRegistry()
        self.balances = BalanceBook()
        self.events = EventLog()
        self.invariants = PoolInvariantChecker()

        self._lock = threading.RLock()
        self._journal: _Journal | None = None
        self.created_at = time.time()

    # ── commit machinery ─────────────────────────────────────────

    def _on_leaf_inserted(self, leaf: int, index: int, root: int) -> None:
        if self._journal is not None:
            self._journal.events.append(ev.LeafInserted(leaf, index, root))

    @contextmanager
    def _atomic(self):
        """All-or-nothing commit section; caller must hold the lock."""
        journal = _Journal(self.tree.snapshot(), self.balances.snapshot())
        self._journal = journal
        self.invariants.capture(self)
        try:
            yield journal
            ok, msg = self.invariants.verify(self)
            if not ok:
                raise InvariantViolation(msg)
            if journal.pull is not None:
                self._execute_pull(*journal.pull)
            journal.plan.execute(self.custody, self.pool_address)
        except BaseException:
            self._rollback(journal)
            raise
        finally:
            self._journal = None
        self.events.publish_all(journal.events)

    def _rollback(self, journal: _Journal) -> None:
        self.tree.restore(journal.tree_snapshot)
        self.balances.restore(journal.balance_snapshot)
        for nullifier in journal.spent:
            self.nullifiers._forget(nullifier)
        for commitment in journal.seen:
            self.commitments._forget(commitment)

    def _execute_pull(self, token: str, source: str, amount: int) -> None:
        try:
            ok = self.custody.pull(token, source, self.pool_address, amount)
        except Exception as exc:
            raise TransferFailed(f"deposit of {token} failed: {exc}") from exc
        if not ok:
            raise TransferFailed(f"deposit of {amount} {token} from {source} was refused")

    def _spend(self, journal: _Journal, nullifier: int) -> None:
        self.nullifiers.mark_spent(nullifier)
        journal.spent.append(nullifier)

    def _insert(self, journal: _Journal, commitment: int) -> int:
        self.commitments.mark_seen(commitment)
        journal.seen.append(commitment)
        index = self.tree.insert(commitment)
        self.commitments.bind(commitment, index)
        return index

    def _insert_outputs(self, journal: _Journal, output1: int, output2: int) -> list[int]:
        indices = [self._insert(journal, output1)]
        if output2:
            indices.append(self._insert(journal, output2))
        return indices

    # ── shared precondition checks ───────────────────────────────

    def _check_memo(self, *memos: bytes) -> None:
        for memo in memos:
            if not isinstance(memo, (bytes, bytearray)):
                raise MemoTooLarge("memo must be bytes")
            if len(memo) > self.params.max_memo_bytes:
                raise MemoTooLarge(
                    f"memo of {len(memo)} bytes exceeds {self.params.max_memo_bytes}"
                )

    def _check_relayer(self, relayer: str, fee: int) -> str:
        relayer = check_relayer_fee(relayer, fee)
        if not self.params.relayer_allowed(relayer):
            raise InvalidRecipient(f"relayer {relayer} is not authorised")
        return relayer

    def _check_root(self, root: int) -> None:
        if not self.tree.is_known_root(root):
            raise UnknownRoot(f"root {root:#x} is not in the recent history")

    def _check_unspent(self, nullifier: int) -> None:
        if self.nullifiers.is_spent(nullifier):
            raise NullifierAlreadySpent(f"nullifier {nullifier:#x} already spent")

    def _check_fresh_outputs(self, *outputs: int) -> None:
        present = [c for c in outputs if c]
        for commitment in present:
            if self.commitments.is_seen(commitment):
                raise DuplicateCommitment(f"commitment {commitment:#x} already exists")
        if self.tree.size + len(present) > self.tree.capacity:
            raise MerkleTreeFull(f"no room for {len(present)} more leaves")

    def _check_liquidity(self, token: str, amount: int) -> None:
        """Shielded balance and custody must both cover ``amount``."""
        if amount <= 0:
            return
        balance = self.balances.balance_of(token)
        held = self.custody.balance_of(token, self.pool_address)
        if balance < amount or held < amount:
            raise InsufficientPoolBalance(
                f"{token}: need {amount}, shielded {balance}, custody {held}"
            )

    def free_liquidity(self, token: str) -> int:
        """Custody not backing any shielded note."""
        token = normalize_address(token)
        return self.custody.balance_of(token, self.pool_address) - self.balances.balance_of(token)

    @staticmethod
    def _distinct_outputs(output1: int, output2: int) -> None:
        if output2 and output1 == output2:
            raise DuplicateCommitment("output commitments must be distinct")

    # ═══════════════════════════════════════════════════════════════
    #  Shield
    # ═══════════════════════════════════════════════════════════════

    @_operation("shield")
    def shield(self, sender: str, token: str, amount: int, commitment: int,
               proof: Proof | Sequence[int] | None = None) -> Receipt:
        sender = _require_address(sender, "sender", allow_zero=False)
        token = _require_token(token)
        _require_amount(amount, "amount")
        if amount < self.params.min_shield_amount:
            raise InvalidAmount(f"amount below minimum shield of {self.params.min_shield_amount}")
        _require_element(commitment, "commitment")

        with self._lock:
            self._check_shield_state(token, commitment)

        if self.verifiers.has(ProofKind.SHIELD):
            if proof is None:
                raise InvalidProof("shield proof required")
            self.verifiers.verify(ProofKind.SHIELD, _require_proof(proof),
                                  [commitment, address_to_field(token), amount])

        with self._lock, self._atomic() as journal:
            self._check_shield_state(token, commitment)
            index = self._insert(journal, commitment)
            self.balances.credit(token, amount, FLOW_SHIELD)
            self.tokens.mark_ever_supported(token)
            journal.pull = (token, sender, amount)
            journal.events.append(ev.Shield(commitment, index, token))
            root = self.tree.latest_root()

        logger.info(f"shield accepted: leaf {index}",
                    extra={"op": "shield", "leaf_index": index, "token": token})
        return Receipt("shield", root, [index], details={"token": token})

    def _check_shield_state(self, token: str, commitment: int) -> None:
        self.tokens.require_inflow(token)
        self._check_fresh_outputs(commitment)

    # ═══════════════════════════════════════════════════════════════
    #  Transfer
    # ═══════════════════════════════════════════════════════════════

    @_operation("transfer")
    def transfer(self, req: TransferRequest) -> Receipt:
        req = self._normalize_transfer(req)
        with self._lock:
            self._check_transfer_state(req)

        self.verifiers.verify(ProofKind.TRANSFER, req.proof, req.public_inputs())

        with self._lock, self._atomic() as journal:
            self._check_transfer_state(req)
            self._spend(journal, req.nullifier)
            indices = self._insert_outputs(journal, req.output1, req.output2)
            if req.fee:
                self.balances.debit(NATIVE_TOKEN, req.fee, FLOW_FEE)
                journal.plan.add(NATIVE_TOKEN, req.relayer, req.fee)
            journal.events.append(ev.Transfer(
                req.nullifier, req.output1, req.output2, indices[0],
                indices[1] if len(indices) > 1 else None,
                bytes(req.memo1), bytes(req.memo2),
            ))
            root = self.tree.latest_root()

        logger.info(f"transfer accepted: leaves {indices}",
                    extra={"op": "transfer", "leaf_index": indices[0]})
        return Receipt("transfer", root, indices, [req.nullifier], {"fee": req.fee})

    def _normalize_transfer(self, req: TransferRequest) -> TransferRequest:
        proof = _require_proof(req.proof)
        _require_element(req.root, "root")
        _require_element(req.nullifier, "nullifier")
        _require_element(req.output1, "output1")
        _require_element(req.output2, "output2", allow_zero=True)
        self._distinct_outputs(req.output1, req.output2)
        _require_amount(req.fee, "fee", allow_zero=True)
        relayer = self._check_relayer(req.relayer, req.fee)
        self._check_memo(req.memo1, req.memo2)
        return replace(req, proof=proof, relayer=relayer)

    def _check_transfer_state(self, req: TransferRequest) -> None:
        self._check_root(req.root)
        self._check_unspent(req.nullifier)
        self._check_fresh_outputs(req.output1, req.output2)
        self._check_liquidity(NATIVE_TOKEN, req.fee)

    # ═══════════════════════════════════════════════════════════════
    #  Unshield
    # ═══════════════════════════════════════════════════════════════

    @_operation("unshield")
    def unshield(self, req: UnshieldRequest) -> Receipt:
        req = self._normalize_unshield(req)
        with self._lock:
            self._check_unshield_state(req)

        self.verifiers.verify(ProofKind.UNSHIELD, req.proof, req.public_inputs())

        with self._lock, self._atomic() as journal:
            self._check_unshield_state(req)
            self._spend(journal, req.nullifier)
            indices = []
            if req.change_commitment:
                indices.append(self._insert(journal, req.change_commitment))
            self.balances.debit(req.token, req.amount, FLOW_UNSHIELD)
            if req.fee:
                self.balances.debit(req.token, req.fee, FLOW_FEE)
            journal.plan.add(req.token, req.recipient, req.amount)
            journal.plan.add(req.token, req.relayer, req.fee)
            journal.events.append(ev.Unshield(
                req.nullifier, req.recipient, req.token, req.amount,
                req.change_commitment, indices[0] if indices else None,
                req.relayer, req.fee,
            ))
            root = self.tree.latest_root()

        logger.info(f"unshield accepted: {req.amount} {req.token}",
                    extra={"op": "unshield", "token": req.token})
        return Receipt("unshield", root, indices, [req.nullifier], {
            "recipient": req.recipient, "token": req.token,
            "amount": req.amount, "fee": req.fee,
        })

    def _normalize_unshield(self, req: UnshieldRequest) -> UnshieldRequest:
        proof = _require_proof(req.proof)
        _require_element(req.root, "root")
        _require_element(req.nullifier, "nullifier")
        _require_element(req.change_commitment, "change commitment", allow_zero=True)
        _require_amount(req.amount, "amount")
        _require_amount(req.fee, "fee", allow_zero=True)
        recipient = _require_address(req.recipient, "recipient", allow_zero=False)
        token = _require_token(req.token)
        relayer = self._check_relayer(req.relayer, req.fee)
        return replace(req, proof=proof, recipient=recipient, token=token, relayer=relayer)

    def _check_unshield_state(self, req: UnshieldRequest) -> None:
        self._check_root(req.root)
        self._check_unspent(req.nullifier)
        self.tokens.require_outflow(req.token)
        self._check_fresh_outputs(req.change_commitment)
        self._check_liquidity(req.token, req.amount + req.fee)

    # ═══════════════════════════════════════════════════════════════
    #  Swap
    # ═══════════════════════════════════════════════════════════════

    @_operation("swap")
    def swap(self, req: SwapRequest) -> Receipt:
        req = self._normalize_swap(req)
        with self._lock:
            self._check_swap_state(req)

        self.verifiers.verify(ProofKind.SWAP, req.proof, req.public_inputs())

        with self._lock, self._atomic() as journal:
            platform_fee = self._check_swap_state(req)
            self._spend(journal, req.nullifier)
            indices = self._insert_outputs(journal, req.output1, req.output2)
            self.balances.debit(req.token_in, req.swap_amount, FLOW_SWAP_OUT)
            self.balances.credit(req.token_out, req.output_amount, FLOW_SWAP_IN)
            journal.plan.add(req.token_out, self.params.treasury, platform_fee)
            journal.events.append(ev.Swap(
                req.nullifier, req.token_in, req.token_out, req.swap_amount,
                req.output_amount, req.output1, req.output2, indices[0],
                indices[1] if len(indices) > 1 else None,
                platform_fee, bytes(req.memo),
            ))
            root = self.tree.latest_root()

        logger.info(f"swap accepted: {req.token_in} -> {req.token_out}",
                    extra={"op": "swap", "leaf_index": indices[0], "token": req.token_out})
        return Receipt("swap", root, indices, [req.nullifier], {
            "token_in": req.token_in, "token_out": req.token_out,
            "swap_amount": req.swap_amount, "output_amount": req.output_amount,
            "platform_fee": platform_fee,
        })

    def _normalize_swap(self, req: SwapRequest) -> SwapRequest:
        proof = _require_proof(req.proof)
        _require_element(req.root, "root")
        _require_element(req.nullifier, "nullifier")
        _require_element(req.output1, "output1")
        _require_element(req.output2, "output2", allow_zero=True)
        self._distinct_outputs(req.output1, req.output2)
        token_in = _require_token(req.token_in)
        token_out = _require_token(req.token_out)
        if token_in == token_out:
            raise InvalidAmount("token_in and token_out must differ")
        _require_amount(req.swap_amount, "swap amount")
        _require_amount(req.output_amount, "output amount")
        _require_amount(req.min_amount_out, "minimum output", allow_zero=True)
        self._check_memo(req.memo)
        return replace(req, proof=proof, token_in=token_in, token_out=token_out)

    def _check_swap_state(self, req: SwapRequest) -> int:
        """Returns the platform fee owed on this swap."""
        self.tokens.require_inflow(req.token_in)
        self.tokens.require_inflow(req.token_out)
        self._check_root(req.root)
        self._check_unspent(req.nullifier)
        self._check_fresh_outputs(req.output1, req.output2)
        if req.output_amount < req.min_amount_out:
            raise ExcessiveSlippage(
                f"output {req.output_amount} below minimum {req.min_amount_out}"
            )
        if self.quoter is None:
            raise InvalidSwapRate("no quote provider configured")
        expected = self.quoter.quote(req.token_in, req.token_out, req.swap_amount)
        ceiling = max_acceptable_output(expected, self.params.slippage_bps)
        if req.output_amount > ceiling:
            raise InvalidSwapRate(
                f"output {req.output_amount} exceeds max acceptable {ceiling}"
            )
        platform_fee = self.params.platform_fee
        if platform_fee and is_zero_address(self.params.treasury):
            raise InvalidRecipient("platform fee set without a treasury")
        if self.balances.balance_of(req.token_in) < req.swap_amount:
            raise InsufficientPoolBalance(f"shielded {req.token_in} below {req.swap_amount}")
        if self.free_liquidity(req.token_out) < req.output_amount + platform_fee:
            raise InsufficientPoolBalance(
                f"free {req.token_out} liquidity below {req.output_amount + platform_fee}"
            )
        return platform_fee

    # ═══════════════════════════════════════════════════════════════
    #  Batches
    # ═══════════════════════════════════════════════════════════════

    def _check_batch_shape(self, items: list, nullifiers: list[int]) -> None:
        if not items:
            raise BatchSizeMismatch("batch is empty")
        if len(items) > self.params.max_batch_size:
            raise BatchSizeTooLarge(
                f"batch of {len(items)} exceeds maximum {self.params.max_batch_size}"
            )
        if len(set(nullifiers)) != len(nullifiers):
            raise NullifierAlreadySpent("duplicate nullifier inside batch")

    @_operation("batch_transfer")
    def batch_transfer(self, req: BatchTransferRequest) -> Receipt:
        req, fee_per_item = self._normalize_batch_transfer(req)
        with self._lock:
            self._check_batch_transfer_state(req)

        for item in req.items:
            self.verifiers.verify(ProofKind.TRANSFER, item.proof,
                                  req.item_inputs(item, fee_per_item))

        nullifiers = [item.nullifier for item in req.items]
        with self._lock, self._atomic() as journal:
            self._check_batch_transfer_state(req)
            for nullifier in nullifiers:
                self._spend(journal, nullifier)
            indices = self._insert_outputs(journal, req.output1, req.output2)
            if req.fee:
                self.balances.debit(NATIVE_TOKEN, req.fee, FLOW_FEE)
                journal.plan.add(NATIVE_TOKEN, req.relayer, req.fee)
            journal.events.append(ev.BatchTransfer(
                nullifiers, req.output1, req.output2, indices[0],
                indices[1] if len(indices) > 1 else None,
                bytes(req.memo1), bytes(req.memo2),
            ))
            root = self.tree.latest_root()

        logger.info(f"batch transfer accepted: {len(nullifiers)} inputs",
                    extra={"op": "batch_transfer", "leaf_index": indices[0]})
        return Receipt("batch_transfer", root, indices, nullifiers,
                       {"fee": req.fee, "fee_per_item": fee_per_item})

    def _normalize_batch_transfer(self, req: BatchTransferRequest) -> tuple[BatchTransferRequest, int]:
        items = list(req.items or [])
        self._check_batch_shape(items, [i.nullifier for i in items])
        _require_amount(req.fee, "fee", allow_zero=True)
        fee_per_item = split_batch_fee(req.fee, len(items))
        items = [self._normalize_item(item) for item in items]
        _require_element(req.output1, "output1")
        _require_element(req.output2, "output2", allow_zero=True)
        self._distinct_outputs(req.output1, req.output2)
        relayer = self._check_relayer(req.relayer, req.fee)
        self._check_memo(req.memo1, req.memo2)
        return replace(req, items=items, relayer=relayer), fee_per_item

    @staticmethod
    def _normalize_item(item):
        proof = _require_proof(item.proof)
        _require_element(item.root, "root")
        _require_element(item.nullifier, "nullifier")
        return replace(item, proof=proof)

    def _check_batch_transfer_state(self, req: BatchTransferRequest) -> None:
        for item in req.items:
            self._check_root(item.root)
            self._check_unspent(item.nullifier)
        self._check_fresh_outputs(req.output1, req.output2)
        self._check_liquidity(NATIVE_TOKEN, req.fee)

    @_operation("batch_unshield")
    def batch_unshield(self, req: BatchUnshieldRequest) -> Receipt:
        req, fee_per_item = self._normalize_batch_unshield(req)
        total_amount = sum(item.amount for item in req.items)
        with self._lock:
            self._check_batch_unshield_state(req, total_amount)

        for item in req.items:
            self.verifiers.verify(ProofKind.UNSHIELD, item.proof,
                                  req.item_inputs(item, fee_per_item))

        nullifiers = [item.nullifier for item in req.items]
        with self._lock, self._atomic() as journal:
            self._check_batch_unshield_state(req, total_amount)
            for nullifier in nullifiers:
                self._spend(journal, nullifier)
            self.balances.debit(req.token, total_amount, FLOW_UNSHIELD)
            if req.fee:
                self.balances.debit(req.token, req.fee, FLOW_FEE)
            journal.plan.add(req.token, req.recipient, total_amount)
            journal.plan.add(req.token, req.relayer, req.fee)
            journal.events.append(ev.BatchUnshield(
                nullifiers, req.recipient, req.token, total_amount, req.relayer, req.fee,
            ))
            root = self.tree.latest_root()

        logger.info(f"batch unshield accepted: {len(nullifiers)} notes of {req.token}",
                    extra={"op": "batch_unshield", "token": req.token})
        return Receipt("batch_unshield", root, [], nullifiers, {
            "recipient": req.recipient, "token": req.token,
            "total_amount": total_amount, "fee": req.fee, "fee_per_item": fee_per_item,
        })

    def _normalize_batch_unshield(self, req: BatchUnshieldRequest) -> tuple[BatchUnshieldRequest, int]:
        items = list(req.items or [])
        self._check_batch_shape(items, [i.nullifier for i in items])
        _require_amount(req.fee, "fee", allow_zero=True)
        fee_per_item = split_batch_fee(req.fee, len(items))
        items = [self._normalize_item(item) for item in items]
        for item in items:
            _require_amount(item.amount, "amount")
        recipient = _require_address(req.recipient, "recipient", allow_zero=False)
        token = _require_token(req.token)
        relayer = self._check_relayer(req.relayer, req.fee)
        return replace(req, items=items, recipient=recipient, token=token,
                       relayer=relayer), fee_per_item

    def _check_batch_unshield_state(self, req: BatchUnshieldRequest, total_amount: int) -> None:
        for item in req.items:
            self._check_root(item.root)
            self._check_unspent(item.nullifier)
        self.tokens.require_outflow(req.token)
        self._check_liquidity(req.token, total_amount + req.fee)

    # ═══════════════════════════════════════════════════════════════
    #  Multi-input transfer
    # ═══════════════════════════════════════════════════════════════

    @_operation("multi_input_transfer")
    def multi_input_transfer(self, req: MultiInputTransferRequest) -> Receipt:
        req = self._normalize_multi(req)
        with self._lock:
            self._check_multi_state(req)

        self.verifiers.verify(ProofKind.MULTI_TRANSFER, req.proof,
                              req.public_inputs(self.params.max_multi_inputs))

        with self._lock, self._atomic() as journal:
            self._check_multi_state(req)
            for nullifier in req.nullifiers:
                self._spend(journal, nullifier)
            indices = self._insert_outputs(journal, req.output1, req.output2)
            if req.fee:
                self.balances.debit(NATIVE_TOKEN, req.fee, FLOW_FEE)
                journal.plan.add(NATIVE_TOKEN, req.relayer, req.fee)
            journal.events.append(ev.MultiTransfer(
                list(req.nullifiers), req.output1, req.output2, indices[0],
                indices[1] if len(indices) > 1 else None,
                bytes(req.memo1), bytes(req.memo2),
            ))
            root = self.tree.latest_root()

        logger.info(f"multi-input transfer accepted: {len(req.nullifiers)} inputs",
                    extra={"op": "multi_input_transfer", "leaf_index": indices[0]})
        return Receipt("multi_input_transfer", root, indices, list(req.nullifiers),
                       {"fee": req.fee, "input_count": len(req.nullifiers)})

    def _normalize_multi(self, req: MultiInputTransferRequest) -> MultiInputTransferRequest:
        proof = _require_proof(req.proof)
        roots = list(req.roots or [])
        nullifiers = list(req.nullifiers or [])
        if len(roots) != len(nullifiers):
            raise BatchSizeMismatch("roots and nullifiers differ in length")
        if len(nullifiers) < 2:
            raise BatchSizeMismatch("multi-input transfer needs at least two inputs")
        if len(nullifiers) > self.params.max_multi_inputs:
            raise BatchSizeTooLarge(
                f"{len(nullifiers)} inputs exceed maximum {self.params.max_multi_inputs}"
            )
        for root in roots:
            _require_element(root, "root")
        for nullifier in nullifiers:
            _require_element(nullifier, "nullifier")
        if len(set(nullifiers)) != len(nullifiers):
            raise NullifierAlreadySpent("duplicate nullifier among inputs")
        _require_element(req.output1, "output1")
        _require_element(req.output2, "output2", allow_zero=True)
        self._distinct_outputs(req.output1, req.output2)
        _require_amount(req.fee, "fee", allow_zero=True)
        relayer = self._check_relayer(req.relayer, req.fee)
        self._check_memo(req.memo1, req.memo2)
        return replace(req, proof=proof, roots=roots, nullifiers=nullifiers, relayer=relayer)

    def _check_multi_state(self, req: MultiInputTransferRequest) -> None:
        for root in req.roots:
            self._check_root(root)
        for nullifier in req.nullifiers:
            self._check_unspent(nullifier)
        self._check_fresh_outputs(req.output1, req.output2)
        self._check_liquidity(NATIVE_TOKEN, req.fee)

    # ═══════════════════════════════════════════════════════════════
    #  Admin
    # ═══════════════════════════════════════════════════════════════

    def _admin(self, caller: str, name: str, apply) -> None:
        with self._lock, self._atomic() as journal:
            self.ownership.require_owner(caller)
            journal.events.extend(apply())
        logger.info(f"admin: {name}", extra={"op": name})

    def add_supported_token(self, caller: str, token: str) -> None:
        token = _require_token(token)
        def apply():
            self.tokens.add(token)
            return [ev.TokenSupportChanged(token, True)]
        self._admin(caller, "add_supported_token", apply)

    def remove_supported_token(self, caller: str, token: str) -> None:
        token = _require_token(token)
        def apply():
            self.tokens.remove(token)
            return [ev.TokenSupportChanged(token, False)]
        self._admin(caller, "remove_supported_token", apply)

    def set_blacklisted(self, caller: str, token: str, blacklisted: bool) -> None:
        token = _require_token(token)
        def apply():
            self.tokens.set_blacklisted(token, blacklisted)
            return [ev.TokenBlacklistChanged(token, bool(blacklisted))]
        self._admin(caller, "set_blacklisted", apply)

    def _set_param(self, caller: str, name: str, value) -> None:
        def apply():
            old = getattr(self.params, name)
            setattr(self.params, name, value)
            return [ev.ParameterChanged(name, old, value)]
        self._admin(caller, f"set_{name}", apply)

    def set_slippage_tolerance(self, caller: str, bps: int) -> None:
        if not isinstance(bps, int) or isinstance(bps, bool) or not 0 <= bps <= BPS_DENOMINATOR:
            raise InvalidAmount(f"slippage must be 0-{BPS_DENOMINATOR} bps")
        self._set_param(caller, "slippage_bps", bps)

    def set_platform_fee(self, caller: str, fee: int) -> None:
        _require_amount(fee, "platform fee", allow_zero=True)
        self._set_param(caller, "platform_fee", fee)

    def set_treasury(self, caller: str, treasury: str) -> None:
        treasury = _require_address(treasury, "treasury", allow_zero=False)
        self._set_param(caller, "treasury", treasury)

    def set_relayer_router(self, caller: str, router: str | None) -> None:
        if router is not None:
            router = _require_address(router, "router")
            if is_zero_address(router):
                router = None
        self._set_param(caller, "relayer_router", router)

    def set_relayer_registered(self, caller: str, relayer: str, registered: bool) -> None:
        relayer = _require_address(relayer, "relayer", allow_zero=False)
        def apply():
            before = sorted(self.params.relayers)
            if registered:
                self.params.relayers.add(relayer)
            else:
                self.params.relayers.discard(relayer)
            return [ev.ParameterChanged("relayers", before, sorted(self.params.relayers))]
        self._admin(caller, "set_relayer_registered", apply)

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        def apply():
            pending = self.ownership.start_transfer(caller, new_owner)
            return [ev.OwnershipTransferStarted(self.ownership.owner, pending)]
        self._admin(caller, "transfer_ownership", apply)

    def accept_ownership(self, caller: str) -> None:
        with self._lock, self._atomic() as journal:
            previous, new_owner = self.ownership.accept(caller)
            journal.events.append(ev.OwnershipTransferred(previous, new_owner))
        logger.info(f"ownership transferred to {new_owner}", extra={"op": "accept_ownership"})

    def renounce_pending_ownership(self, caller: str) -> None:
        def apply():
            self.ownership.cancel(caller)
            return []
        self._admin(caller, "renounce_pending_ownership", apply)

    # ═══════════════════════════════════════════════════════════════
    #  Queries
    # ═══════════════════════════════════════════════════════════════

    def is_spent(self, nullifier: int) -> bool:
        with self._lock:
            return self.nullifiers.is_spent(nullifier)

    def is_known_root(self, root: int) -> bool:
        with self._lock:
            return self.tree.is_known_root(root)

    def latest_root(self) -> int:
        with self._lock:
            return self.tree.latest_root()

    def balance_of(self, token: str) -> int:
        with self._lock:
            return self.balances.balance_of(token)

    def token_info(self, token: str) -> dict:
        with self._lock:
            info = self.tokens.info(token)
            info["balance"] = self.balances.balance_of(info["token"])
            info["flows"] = self.balances.flows_of(info["token"])
            return info

    def commitment_leaf_index(self, commitment: int) -> int | None:
        with self._lock:
            return self.commitments.leaf_index_of(commitment)

    def status(self) -> dict:
        with self._lock:
            return {
                "pool_address": self.pool_address,
                **self.ownership.to_dict(),
                "tree_depth": self.tree.depth,
                "capacity": self.tree.capacity,
                "leaf_count": self.tree.size,
                "latest_root": hex(self.tree.latest_root()),
                "root_history_size": self.tree.root_history_size,
                "nullifier_count": len(self.nullifiers),
                "supported_tokens": sorted(self.tokens.supported),
                "ever_supported_tokens": sorted(self.tokens.ever_supported),
                "params": self.params.to_dict(),
                "event_seq": self.events.last_seq,
                "created_at": self.created_at,
            }
