"""
Shared pytest fixtures for the ShieldPool test suite.

The default pool uses the SHA-256 field hasher and a depth-8 tree so the
suite stays fast; MiMC-specific behaviour is covered in test_field and
test_merkle.
"""

import itertools

import pytest

from shieldpool_core.admin import PoolParameters
from shieldpool_core.custody import InMemoryBank
from shieldpool_core.field import ZERO_ADDRESS, Sha256FieldHasher
from shieldpool_core.ledger import (
    BatchItem,
    BatchTransferRequest,
    BatchUnshieldItem,
    BatchUnshieldRequest,
    MultiInputTransferRequest,
    ShieldedPool,
    SwapRequest,
    TransferRequest,
    UnshieldRequest,
)
from shieldpool_core.quotes import StaticRateQuoter
from shieldpool_core.verifier import StubVerifier, VerifierSet


class PoolHarness:
    """Pool plus collaborators and request builders with sensible defaults."""

    OWNER = "0x" + "0a" * 20
    ALICE = "0x" + "a1" * 20
    BOB = "0x" + "b0" * 20
    RELAYER = "0x" + "1e" * 20
    TREASURY = "0x" + "7e" * 20
    POOL = "0x" + "5e" * 20
    NATIVE = ZERO_ADDRESS
    USDC = "0x" + "c0" * 20
    WETH = "0x" + "e7" * 20
    PROOF = [1, 2, 3, 4, 5, 6, 7, 8]

    def __init__(self, pool, bank, verifier, quoter):
        self.pool = pool
        self.bank = bank
        self.verifier = verifier
        self.quoter = quoter
        self._ids = itertools.count(1_000)

    def fresh(self) -> int:
        """A field element never handed out before in this test."""
        return next(self._ids) * 0x1_0000_0001

    def shield(self, token=None, amount=1_000, sender=None) -> int:
        commitment = self.fresh()
        self.pool.shield(sender or self.ALICE, token or self.USDC, amount, commitment)
        return commitment

    def root(self) -> int:
        return self.pool.latest_root()

    def transfer_request(self, **overrides) -> TransferRequest:
        fields = dict(proof=self.PROOF, root=self.root(), nullifier=self.fresh(),
                      output1=self.fresh(), output2=self.fresh())
        fields.update(overrides)
        return TransferRequest(**fields)

    def unshield_request(self, amount=100, **overrides) -> UnshieldRequest:
        fields = dict(proof=self.PROOF, root=self.root(), nullifier=self.fresh(),
                      recipient=self.BOB, token=self.USDC, amount=amount)
        fields.update(overrides)
        return UnshieldRequest(**fields)

    def swap_request(self, swap_amount=100, output_amount=100, **overrides) -> SwapRequest:
        fields = dict(proof=self.PROOF, root=self.root(), nullifier=self.fresh(),
                      output1=self.fresh(), output2=0, token_in=self.USDC,
                      token_out=self.WETH, swap_amount=swap_amount,
                      output_amount=output_amount)
        fields.update(overrides)
        return SwapRequest(**fields)

    def batch_items(self, count: int) -> list[BatchItem]:
        return [BatchItem(self.PROOF, self.root(), self.fresh()) for _ in range(count)]

    def batch_transfer_request(self, count=3, **overrides) -> BatchTransferRequest:
        fields = dict(items=self.batch_items(count), output1=self.fresh(), output2=self.fresh())
        fields.update(overrides)
        return BatchTransferRequest(**fields)

    def batch_unshield_request(self, amounts=(100, 100, 100), **overrides) -> BatchUnshieldRequest:
        items = [BatchUnshieldItem(self.PROOF, self.root(), self.fresh(), a) for a in amounts]
        fields = dict(items=items, recipient=self.BOB, token=self.USDC)
        fields.update(overrides)
        return BatchUnshieldRequest(**fields)

    def multi_request(self, count=3, **overrides) -> MultiInputTransferRequest:
        fields = dict(proof=self.PROOF, roots=[self.root()] * count,
                      nullifiers=[self.fresh() for _ in range(count)],
                      output1=self.fresh(), output2=self.fresh())
        fields.update(overrides)
        return MultiInputTransferRequest(**fields)


@pytest.fixture
def bank():
    """Custody with Alice funded in every test token."""
    b = InMemoryBank()
    for token in (PoolHarness.NATIVE, PoolHarness.USDC, PoolHarness.WETH):
        b.fund(PoolHarness.ALICE, token, 10**12)
    return b


@pytest.fixture
def verifier():
    return StubVerifier()


@pytest.fixture
def quoter():
    """1 USDC -> 1 WETH and 1 WETH -> 1 USDC."""
    q = StaticRateQuoter()
    q.set_rate(PoolHarness.USDC, PoolHarness.WETH, 1)
    q.set_rate(PoolHarness.WETH, PoolHarness.USDC, 1)
    return q


@pytest.fixture
def params():
    return PoolParameters()


@pytest.fixture
def pool(bank, verifier, quoter, params):
    """Fresh pool supporting the native token, USDC and WETH."""
    p = ShieldedPool(
        PoolHarness.POOL,
        PoolHarness.OWNER,
        bank,
        VerifierSet.uniform(verifier, params.max_multi_inputs),
        quoter,
        params,
        tree_depth=8,
        root_history_size=30,
        hasher=Sha256FieldHasher(),
    )
    for token in (PoolHarness.NATIVE, PoolHarness.USDC, PoolHarness.WETH):
        p.add_supported_token(PoolHarness.OWNER, token)
    return p


@pytest.fixture
def h(pool, bank, verifier, quoter):
    return PoolHarness(pool, bank, verifier, quoter)


@pytest.fixture
def funded(h):
    """Harness whose pool already holds shielded USDC, WETH and native value."""
    for token in (h.USDC, h.WETH, h.NATIVE):
        h.shield(token, 10_000)
    return h
