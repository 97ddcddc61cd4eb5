"""Cashu bearer token serialization (NUT-00 V3 ``cashuA`` and V4 ``cashuB``)."""

from __future__ import annotations

import base64
import json
from typing import Any

import cbor2

from .types import Proof, Token, TokenError


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def _b64_decode(encoded: str) -> bytes:
    # Add correct padding – (-len) % 4 equals 0,1,2,3
    encoded += "=" * ((-len(encoded)) % 4)
    return base64.urlsafe_b64decode(encoded)


def _b64_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def serialize_v3(token: Token) -> str:
    """Serialize a token into CashuA (V3) format."""
    token_data: dict[str, Any] = {
        "token": [
            {
                "mint": token["mint"],
                "proofs": [
                    {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
                    for p in token["proofs"]
                ],
            }
        ],
        "unit": token["unit"],
    }
    if token.get("memo"):
        token_data["memo"] = token["memo"]
    json_str = json.dumps(token_data, separators=(",", ":"))
    return f"cashuA{_b64_encode(json_str.encode())}"


def serialize_v4(token: Token) -> str:
    """Serialize a token into CashuB (V4) format using CBOR."""
    # Group proofs by keyset ID for V4 format
    proofs_by_keyset: dict[str, list[Proof]] = {}
    for proof in token["proofs"]:
        proofs_by_keyset.setdefault(proof["id"], []).append(proof)

    token_data: dict[str, Any] = {
        "m": token["mint"],
        "u": token["unit"],
        "t": [
            {
                "i": bytes.fromhex(keyset_id),
                "p": [
                    {"a": p["amount"], "s": p["secret"], "c": bytes.fromhex(p["C"])}
                    for p in keyset_proofs
                ],
            }
            for keyset_id, keyset_proofs in proofs_by_keyset.items()
        ],
    }
    if token.get("memo"):
        token_data["d"] = token["memo"]
    return f"cashuB{_b64_encode(cbor2.dumps(token_data))}"


def encode_token(token: Token, *, version: int = 4) -> str:
    """Encode a token, using V3 when a keyset id cannot be packed into V4."""
    if version == 4 and all(_is_hex(p["id"]) for p in token["proofs"]):
        return serialize_v4(token)
    if version in (3, 4):
        return serialize_v3(token)
    raise ValueError(f"Unsupported token version: {version}")


def decode_token(token: str) -> Token:
    """Parse a Cashu token string.

    Raises:
        TokenError: If the token is malformed, spans several mints or has no
            proofs.
    """
    token = token.strip()
    if token.startswith("cashu:"):
        token = token[len("cashu:") :]

    try:
        if token.startswith("cashuA"):
            parsed = _decode_v3(token[6:])
        elif token.startswith("cashuB"):
            parsed = _decode_v4(token[6:])
        else:
            raise TokenError(f"Unknown token version: {token[:7]!r}")
    except TokenError:
        raise
    except Exception as e:
        raise TokenError(f"Invalid token format: {e}") from e

    if not parsed["proofs"]:
        raise TokenError("Token contains no proofs")
    return parsed


def _decode_v3(encoded: str) -> Token:
    token_data = json.loads(_b64_decode(encoded).decode())
    entries = [entry for entry in token_data["token"] if entry.get("proofs")]
    mints = {entry["mint"] for entry in entries}
    if len(mints) > 1:
        raise TokenError("Multi-mint tokens are not supported")

    proofs: list[Proof] = [
        Proof(id=p["id"], amount=int(p["amount"]), secret=p["secret"], C=p["C"])
        for entry in entries
        for p in entry["proofs"]
    ]
    mint_url = entries[0]["mint"] if entries else token_data["token"][0]["mint"]
    return Token(
        mint=mint_url.rstrip("/"),
        # Cashu V3 tokens commonly omit the unit
        unit=token_data.get("unit", "sat"),
        proofs=proofs,
        memo=token_data.get("memo"),
    )


def _decode_v4(encoded: str) -> Token:
    token_data = cbor2.loads(_b64_decode(encoded))
    proofs: list[Proof] = [
        Proof(id=entry["i"].hex(), amount=int(p["a"]), secret=p["s"], C=p["c"].hex())
        for entry in token_data["t"]
        for p in entry["p"]
    ]
    return Token(
        mint=token_data["m"].rstrip("/"),
        unit=token_data["u"],
        proofs=proofs,
        memo=token_data.get("d"),
    )
