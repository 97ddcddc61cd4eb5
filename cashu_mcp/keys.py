"""Lazy derivation of wallet seed bytes from the mnemonic."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from bip_utils import Bip39Languages, Bip39SeedGenerator


class KeyProvider:
    """Derive seed bytes from a BIP-39 mnemonic on demand.

    Nothing is derived at construction time. The wallet engine asks for key
    material through ``materialize()`` only when it needs to derive
    deterministic secrets, and the bytes are wiped when the block exits.

    Example:
        async with key_provider.materialize() as seed:
            secret, r = derive_secret(seed, keyset_id, counter)
    """

    def __init__(self, mnemonic: str, *, passphrase: str = "") -> None:
        self._mnemonic = mnemonic
        self._passphrase = passphrase
        self.derivations = 0

    def __repr__(self) -> str:
        return "KeyProvider(<redacted>)"

    async def derive_seed(self) -> bytes:
        """Return the BIP-39 seed. Same mnemonic gives the same bytes."""
        self.derivations += 1
        return bytes(
            Bip39SeedGenerator(self._mnemonic, Bip39Languages.ENGLISH).Generate(
                self._passphrase
            )
        )

    @asynccontextmanager
    async def materialize(self) -> AsyncIterator[bytearray]:
        """Yield the seed in a buffer that is zeroed on every exit path."""
        buffer = bytearray(await self.derive_seed())
        try:
            yield buffer
        finally:
            for i in range(len(buffer)):
                buffer[i] = 0
