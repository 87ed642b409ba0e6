"""
Proof verification capability.

The ledger treats the verifier as a black box ``verify(proof, inputs) ->
bool``; the arithmetic lives elsewhere.  ``VerifierSet`` binds one verifier
per ``ProofKind`` and is the single place that enforces public-input arity
and turns every kind of verifier failure (``False``, an exception, malformed
inputs) into ``InvalidProof``.

Proofs travel as eight field elements, the flattened Groth16
``a[2], b[2][2], c[2]`` layout.

Two verifiers ship with the pool:

  - ``StubVerifier``         accept / reject by flag or predicate, records calls
  - ``AttestationVerifier``  secp256k1 ECDSA signature by a trusted prover over
                             keccak256 of the 32-byte-encoded public inputs,
                             packed into the eight proof slots
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Sequence

from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string

from shieldpool_core.errors import InvalidProof
from shieldpool_core.field import is_field_element, keccak256, to_field

logger = logging.getLogger("shieldpool_verifier")

PROOF_ELEMENTS = 8
DEFAULT_MAX_MULTI_INPUTS = 5


@dataclass(frozen=True)
class Proof:
    elements: tuple[int, ...]

    @classmethod
    def from_list(cls, values: Sequence[int | str]) -> Proof:
        if isinstance(values, Proof):
            return values
        if not isinstance(values, (list, tuple)) or len(values) != PROOF_ELEMENTS:
            raise InvalidProof(f"proof must have exactly {PROOF_ELEMENTS} elements")
        try:
            return cls(tuple(to_field(v) for v in values))
        except ValueError as exc:
            raise InvalidProof(f"proof element out of range: {exc}") from None

    @classmethod
    def zero(cls) -> Proof:
        return cls((0,) * PROOF_ELEMENTS)

    def to_list(self) -> list[str]:
        return [hex(e) for e in self.elements]


class ProofKind(Enum):
    SHIELD = "shield"
    TRANSFER = "transfer"
    UNSHIELD = "unshield"
    SWAP = "swap"
    MULTI_TRANSFER = "multi_transfer"


def public_input_arity(kind: ProofKind, max_multi_inputs: int = DEFAULT_MAX_MULTI_INPUTS) -> int:
    if kind is ProofKind.SHIELD:
        return 3
    if kind is ProofKind.TRANSFER:
        return 6
    if kind in (ProofKind.UNSHIELD, ProofKind.SWAP):
        return 8
    return 2 * max_multi_inputs + 5


class ProofVerifier(Protocol):
    def verify(self, proof: Proof, public_inputs: Sequence[int]) -> bool: ...


class VerifierSet:
    """One verifier per proof kind."""

    def __init__(self, max_multi_inputs: int = DEFAULT_MAX_MULTI_INPUTS):
        self.max_multi_inputs = max_multi_inputs
        self._verifiers: dict[ProofKind, ProofVerifier] = {}

    @classmethod
    def uniform(cls, verifier: ProofVerifier, max_multi_inputs: int = DEFAULT_MAX_MULTI_INPUTS,
                include_shield: bool = False) -> VerifierSet:
        vs = cls(max_multi_inputs)
        for kind in ProofKind:
            if kind is ProofKind.SHIELD and not include_shield:
                continue
            vs.register(kind, verifier)
        return vs

    def register(self, kind: ProofKind, verifier: ProofVerifier) -> None:
        self._verifiers[kind] = verifier

    def has(self, kind: ProofKind) -> bool:
        return kind in self._verifiers

    def arity(self, kind: ProofKind) -> int:
        return public_input_arity(kind, self.max_multi_inputs)

    def verify(self, kind: ProofKind, proof: Proof, public_inputs: Sequence[int]) -> None:
        """Raise ``InvalidProof`` unless the proof verifies."""
        verifier = self._verifiers.get(kind)
        if verifier is None:
            raise InvalidProof(f"no verifier registered for {kind.value}")
        if not isinstance(proof, Proof):
            proof = Proof.from_list(proof)
        expected = self.arity(kind)
        if len(public_inputs) != expected:
            raise InvalidProof(
                f"{kind.value} expects {expected} public inputs, got {len(public_inputs)}"
            )
        if not all(is_field_element(x) for x in public_inputs):
            raise InvalidProof("public input outside the scalar field")
        try:
            ok = verifier.verify(proof, list(public_inputs))
        except Exception as exc:
            logger.debug("Verifier for %s raised: %s", kind.value, exc)
            raise InvalidProof(f"verifier error: {exc}") from exc
        if ok is not True:
            raise InvalidProof(f"{kind.value} proof rejected")


class StubVerifier:
    """Deterministic verifier for development pools and tests."""

    def __init__(self, accept: bool = True,
                 predicate: Callable[[Proof, list[int]], bool] | None = None):
        self.accept = accept
        self.predicate = predicate
        self.calls: list[tuple[Proof, list[int]]] = []
        self._lock = threading.Lock()

    def verify(self, proof: Proof, public_inputs: Sequence[int]) -> bool:
        with self._lock:
            self.calls.append((proof, list(public_inputs)))
        if self.predicate is not None:
            return bool(self.predicate(proof, list(public_inputs)))
        return self.accept


# ── ECDSA attestation ───────────────────────────────────────────

_HALF = 1 << 128


def attestation_digest(public_inputs: Sequence[int]) -> bytes:
    return keccak256(b"".join(int(x).to_bytes(32, "big") for x in public_inputs))


def pack_signature(signature: bytes) -> Proof:
    """64-byte r||s → (r_hi, r_lo, s_hi, s_lo, 0, 0, 0, 0)."""
    if len(signature) != 64:
        raise ValueError("signature must be 64 bytes")
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    return Proof((r // _HALF, r % _HALF, s // _HALF, s % _HALF, 0, 0, 0, 0))


def unpack_signature(proof: Proof) -> bytes:
    r_hi, r_lo, s_hi, s_lo, *rest = proof.elements
    if any(rest) or max(r_hi, r_lo, s_hi, s_lo) >= _HALF:
        raise ValueError("proof is not a packed attestation")
    r = r_hi * _HALF + r_lo
    s = s_hi * _HALF + s_lo
    return r.to_bytes(32, "big") + s.to_bytes(32, "big")


class AttestationVerifier:
    """Accepts proofs signed by a trusted prover key."""

    def __init__(self, verifying_key: VerifyingKey):
        self.verifying_key = verifying_key

    @classmethod
    def from_public_hex(cls, public_hex: str) -> AttestationVerifier:
        raw = bytes.fromhex(public_hex[2:] if public_hex.startswith("0x") else public_hex)
        if len(raw) == 65 and raw[0] == 4:
            raw = raw[1:]
        return cls(VerifyingKey.from_string(raw, curve=SECP256k1))

    def verify(self, proof: Proof, public_inputs: Sequence[int]) -> bool:
        try:
            signature = unpack_signature(proof)
        except ValueError:
            return False
        digest = attestation_digest(public_inputs)
        try:
            return self.verifying_key.verify_digest(signature, digest, sigdecode=sigdecode_string)
        except BadSignatureError:
            return False


class AttestationSigner:
    """Prover side of ``AttestationVerifier``; used by dev tooling and tests."""

    def __init__(self, signing_key: SigningKey | None = None):
        self.signing_key = signing_key or SigningKey.generate(curve=SECP256k1)

    @property
    def verifier(self) -> AttestationVerifier:
        return AttestationVerifier(self.signing_key.get_verifying_key())

    def public_hex(self) -> str:
        return self.signing_key.get_verifying_key().to_string().hex()

    def prove(self, public_inputs: Sequence[int]) -> Proof:
        digest = attestation_digest(public_inputs)
        signature = self.signing_key.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_string,
        )
        return pack_signature(signature)
