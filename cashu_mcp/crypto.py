"""Cashu cryptographic primitives: BDHKE, fees and deterministic secrets."""

from __future__ import annotations

import hashlib
import hmac
import math
from typing import Iterable, Mapping

from bip_utils import Bip32Slip10Secp256k1
from coincurve import PrivateKey, PublicKey

from .types import Proof

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


# ──────────────────────────────────────────────────────────────────────────────
# BDHKE (NUT-00)
# ──────────────────────────────────────────────────────────────────────────────


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a secp256k1 point.

    Y = PublicKey('02' || SHA256(msg_hash || counter)) for the first counter
    that gives a valid point, where msg_hash = SHA256(DOMAIN_SEPARATOR || message).
    """
    msg_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        candidate = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def secret_to_y(secret: str) -> str:
    """Hex encoded Y point of a proof secret, as used by NUT-07 checkstate."""
    return hash_to_curve(secret.encode()).format(compressed=True).hex()


def blind_message(secret: str, r: bytes) -> PublicKey:
    """Blind a secret with blinding factor ``r``: B_ = Y + r*G."""
    Y = hash_to_curve(secret.encode())
    return PublicKey.combine_keys([Y, PrivateKey(r).public_key])


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a mint signature: C = C_ - r*K.

    The subtraction is done as C_ + (n - r)*K, which is the same point.
    """
    r_int = int.from_bytes(r, "big") % CURVE_ORDER
    neg_r = (CURVE_ORDER - r_int).to_bytes(32, "big")
    return PublicKey.combine_keys([C_, K.multiply(neg_r)])


def sign_blinded_message(B_: PublicKey, k: PrivateKey) -> PublicKey:
    """Mint side of BDHKE: C_ = k*B_."""
    return B_.multiply(k.secret)


# ──────────────────────────────────────────────────────────────────────────────
# Amounts and fees
# ──────────────────────────────────────────────────────────────────────────────


def split_amount(amount: int, denominations: Iterable[int] | None = None) -> list[int]:
    """Split an amount into denominations, largest first.

    Uses powers of two unless a keyset's ``denominations`` are given.

    Example:
        split_amount(13) == [8, 4, 1]
    """
    if amount < 0:
        raise ValueError("Amount cannot be negative")
    if denominations is None:
        return [1 << bit for bit in reversed(range(amount.bit_length())) if amount >> bit & 1]

    parts: list[int] = []
    remaining = amount
    for denom in sorted(set(denominations), reverse=True):
        while remaining >= denom:
            parts.append(denom)
            remaining -= denom
    if remaining:
        raise ValueError(f"Cannot split {amount} with available denominations")
    return parts


def calculate_input_fees(proofs: list[Proof], fee_ppk_by_keyset: Mapping[str, int]) -> int:
    """Input fee for spending ``proofs`` (NUT-02).

    Example:
        With input_fee_ppk=1000 (1 sat per proof) and 3 proofs:
        fee = (3 * 1000 + 999) // 1000 = 3 satoshis
    """
    sum_fees = sum(int(fee_ppk_by_keyset.get(p["id"], 0) or 0) for p in proofs)
    return (sum_fees + 999) // 1000


def blank_outputs_needed(overpaid: int) -> int:
    """Number of blank outputs to attach to a melt for change (NUT-08)."""
    if overpaid <= 0:
        return 0
    return max(math.ceil(math.log2(overpaid)), 1)


# ──────────────────────────────────────────────────────────────────────────────
# Deterministic secrets (NUT-13)
# ──────────────────────────────────────────────────────────────────────────────


def keyset_id_to_int(keyset_id: str) -> int:
    return int.from_bytes(bytes.fromhex(keyset_id), "big") % (2**31 - 1)


def derive_secret(seed: bytes | bytearray, keyset_id: str, counter: int) -> tuple[str, bytes]:
    """Derive the secret and blinding factor for ``counter`` of a keyset.

    Version ``00`` keysets use the BIP-32 path
    ``m/129372'/0'/<keyset_int>'/<counter>'/{0,1}``; version ``01`` keysets
    use the HMAC-SHA256 KDF.

    Returns:
        Tuple of (secret as hex string, blinding factor bytes)
    """
    if keyset_id.startswith("01"):
        base = b"Cashu_KDF_HMAC_SHA256" + bytes.fromhex(keyset_id) + counter.to_bytes(8, "big")
        key = bytes(seed)
        secret = hmac.new(key, base + b"\x00", hashlib.sha256).digest()
        r_int = int.from_bytes(hmac.new(key, base + b"\x01", hashlib.sha256).digest(), "big")
        r = (r_int % CURVE_ORDER).to_bytes(32, "big")
        return secret.hex(), r

    path = f"m/129372'/0'/{keyset_id_to_int(keyset_id)}'/{counter}'"
    node = Bip32Slip10Secp256k1.FromSeed(bytes(seed)).DerivePath(path)
    secret = node.ChildKey(0).PrivateKey().Raw().ToBytes()
    r = node.ChildKey(1).PrivateKey().Raw().ToBytes()
    return secret.hex(), r
