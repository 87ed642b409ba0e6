"""
Field arithmetic helpers and the two-to-one field hasher.

All tree and commitment hashing happens over the BN254 scalar field, the
same field the zk circuits work in.  The default compression function is
the MiMC sponge (Feistel construction, 220 rounds, x^5) absorbing two field
elements, with round constants derived from iterated Keccak-256 of the seed
``"mimcsponge"``.

Addresses (recipients, relayers, token identifiers) are 20-byte hex strings
and enter proof public inputs as their integer value.

Usage:
    from shieldpool_core.field import hash2, to_bytes32
    root = hash2(left, right)
"""

from __future__ import annotations

import hashlib
import secrets
from functools import lru_cache
from typing import Protocol

from Crypto.Hash import keccak

FIELD_SIZE = 21888242871839275222246405745257275088548364400416034343698204186575808495617

MIMC_SEED = b"mimcsponge"
MIMC_ROUNDS = 220

ZERO_ADDRESS = "0x" + "00" * 20
NATIVE_TOKEN = ZERO_ADDRESS


# ── Keccak / encoding helpers ───────────────────────────────────

def keccak256(data: bytes | str) -> bytes:
    """Keccak-256 (the pre-standard SHA-3 variant used by EVM tooling)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def field_from_keccak(label: bytes | str) -> int:
    """``keccak256(label) mod p`` — nothing-up-my-sleeve field constant."""
    return int.from_bytes(keccak256(label), "big") % FIELD_SIZE


def is_field_element(value: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < FIELD_SIZE


def to_field(value: int | str | bytes) -> int:
    """Coerce an int, hex string or 32-byte value to a field element.

    Values outside ``[0, p)`` are rejected rather than reduced so that two
    encodings of the same element can never both be presented.
    """
    if isinstance(value, bytes):
        n = int.from_bytes(value, "big")
    elif isinstance(value, str):
        n = from_hex(value)
    elif isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"not a field element: {value!r}")
    else:
        n = value
    if not 0 <= n < FIELD_SIZE:
        raise ValueError("value outside the scalar field")
    return n


def from_hex(text: str) -> int:
    if text.startswith(("0x", "0X")):
        text = text[2:]
    if not text:
        raise ValueError("empty hex string")
    return int(text, 16)


def to_bytes32(value: int) -> str:
    """Render a field element as a 0x-prefixed 64-digit hex string."""
    return "0x" + format(value, "064x")


def random_field_element() -> int:
    """31 random bytes, always below the field modulus."""
    return int.from_bytes(secrets.token_bytes(31), "big") % FIELD_SIZE


# ── Address helpers ─────────────────────────────────────────────

def normalize_address(address: str) -> str:
    """Validate and lower-case a 20-byte hex address."""
    if not isinstance(address, str):
        raise ValueError("address must be a string")
    body = address[2:] if address.startswith(("0x", "0X")) else address
    if len(body) != 40:
        raise ValueError(f"address must be 20 bytes: {address!r}")
    try:
        int(body, 16)
    except ValueError:
        raise ValueError(f"address is not hex: {address!r}") from None
    return "0x" + body.lower()


def is_zero_address(address: str) -> bool:
    return normalize_address(address) == ZERO_ADDRESS


def address_to_field(address: str) -> int:
    return int(normalize_address(address), 16)


# ── Hashers ─────────────────────────────────────────────────────

class Hasher(Protocol):
    def hash2(self, left: int, right: int) -> int: ...


@lru_cache(maxsize=1)
def mimc_constants() -> tuple[int, ...]:
    """Round constants: c[0] = c[n-1] = 0, c[i] = keccak^i(seed) mod p."""
    cts = [0] * MIMC_ROUNDS
    c = keccak256(MIMC_SEED)
    for i in range(1, MIMC_ROUNDS):
        c = keccak256(c)
        cts[i] = int.from_bytes(c, "big") % FIELD_SIZE
    cts[0] = 0
    cts[-1] = 0
    return tuple(cts)


def mimc_feistel(x_left: int, x_right: int, key: int = 0) -> tuple[int, int]:
    """One MiMC Feistel permutation of (xL, xR) under ``key``."""
    p = FIELD_SIZE
    cts = mimc_constants()
    last = MIMC_ROUNDS - 1
    for i in range(MIMC_ROUNDS):
        t = (x_left + key + cts[i]) % p
        t5 = pow(t, 5, p)
        if i < last:
            x_left, x_right = (x_right + t5) % p, x_left
        else:
            x_right = (x_right + t5) % p
    return x_left, x_right


class MiMCHasher:
    """MiMC sponge absorbing two elements, squeezing one."""

    def __init__(self, key: int = 0):
        self.key = key % FIELD_SIZE

    def hash2(self, left: int, right: int) -> int:
        r, c = 0, 0
        for x in (left % FIELD_SIZE, right % FIELD_SIZE):
            r = (r + x) % FIELD_SIZE
            r, c = mimc_feistel(r, c, self.key)
        return r


class Sha256FieldHasher:
    """
    SHA-256 of the two 32-byte big-endian inputs, reduced mod p.

    Not circuit-friendly; intended for development pools and fast tests
    where no real prover is attached.
    """

    def hash2(self, left: int, right: int) -> int:
        data = (left % FIELD_SIZE).to_bytes(32, "big") + (right % FIELD_SIZE).to_bytes(32, "big")
        return int.from_bytes(hashlib.sha256(data).digest(), "big") % FIELD_SIZE


_HASHERS = {
    "mimc": MiMCHasher,
    "sha256": Sha256FieldHasher,
}


def make_hasher(name: str = "mimc") -> Hasher:
    try:
        return _HASHERS[name.lower()]()
    except KeyError:
        raise ValueError(f"unknown hasher {name!r} (choose from {sorted(_HASHERS)})") from None


_DEFAULT_HASHER = MiMCHasher()


def hash2(left: int, right: int) -> int:
    """Default two-to-one compression used by the tree."""
    return _DEFAULT_HASHER.hash2(left, right)
