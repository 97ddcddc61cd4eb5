"""Trusted mint management and default mint resolution."""

from __future__ import annotations

import logging
from typing import Protocol

from .mint import normalize_mint_url, validate_mint_url
from .types import ErrorCode, Mint, MintFilter, MintInfo, MintsListResult, WalletApiError

logger = logging.getLogger(__name__)


class MintEngine(Protocol):
    async def add_mint(self, mint_url: str, *, trusted: bool = False) -> Mint: ...

    async def trust_mint(self, mint_url: str) -> Mint: ...

    async def untrust_mint(self, mint_url: str) -> Mint: ...

    async def get_all_mints(self) -> list[Mint]: ...

    async def get_all_trusted_mints(self) -> list[Mint]: ...


class MintStorage(Protocol):
    async def get_mint_by_url(self, mint_url: str) -> Mint | None: ...

    async def delete_mint(self, mint_url: str) -> bool: ...


def to_mint_info(mint: Mint) -> MintInfo:
    return MintInfo(mintUrl=mint["mintUrl"], trusted=mint["trusted"], lastChecked=mint["updatedAt"])


async def get_default_mint_url(engine: MintEngine) -> str:
    """URL of the first trusted mint in the engine's enumeration order.

    Raises:
        WalletApiError: NO_TRUSTED_MINTS if no mint is trusted.
    """
    trusted = await engine.get_all_trusted_mints()
    if not trusted:
        raise WalletApiError(ErrorCode.NO_TRUSTED_MINTS, "No trusted mints available")
    return trusted[0]["mintUrl"]


class MintTrustStore:
    """Add, trust, untrust, remove and list mints.

    Trust changes go through the engine. Removal deletes the mint row
    directly in storage; trust never deletes anything. URLs are normalized
    the way the mint client normalizes them, so "https://mint/" and
    "https://mint" name the same mint.
    """

    def __init__(self, engine: MintEngine, storage: MintStorage) -> None:
        self.engine = engine
        self.storage = storage

    async def add_mint(self, mint_url: str, trusted: bool = False) -> MintInfo:
        mint_url = normalize_mint_url(mint_url)
        if not validate_mint_url(mint_url):
            raise WalletApiError(ErrorCode.MINT_INVALID_URL, f"Invalid mint URL: {mint_url!r}")
        mint = await self.engine.add_mint(mint_url, trusted=trusted)
        if not mint:
            raise WalletApiError(ErrorCode.MINT_ADD_FAILED, f"Mint {mint_url} was not added")
        logger.info("Added mint %s (trusted=%s)", mint["mintUrl"], mint["trusted"])
        return to_mint_info(mint)

    async def trust_mint(self, mint_url: str) -> MintInfo:
        return to_mint_info(await self.engine.trust_mint(normalize_mint_url(mint_url)))

    async def untrust_mint(self, mint_url: str) -> MintInfo:
        return to_mint_info(await self.engine.untrust_mint(normalize_mint_url(mint_url)))

    async def remove_mint(self, mint_url: str) -> None:
        mint_url = normalize_mint_url(mint_url)
        mint = await self.storage.get_mint_by_url(mint_url)
        if mint and mint["trusted"]:
            trusted = await self.get_trusted_mint_urls()
            if trusted == [mint_url]:
                logger.warning(
                    "Removing %s leaves no trusted mint; operations without a mint URL will fail",
                    mint_url,
                )
        if not await self.storage.delete_mint(mint_url):
            logger.debug("Mint %s was not stored, nothing removed", mint_url)

    async def list_mints(self, filter: MintFilter = "all") -> MintsListResult:
        """Mints matching ``filter``; the counts always cover every mint."""
        all_mints = await self.engine.get_all_mints()
        if filter == "trusted":
            selected = [m for m in all_mints if m["trusted"]]
        elif filter == "untrusted":
            selected = [m for m in all_mints if not m["trusted"]]
        else:
            selected = all_mints

        trusted_count = sum(1 for m in all_mints if m["trusted"])
        return MintsListResult(
            mints=[to_mint_info(m) for m in selected],
            total=len(all_mints),
            trusted=trusted_count,
            untrusted=len(all_mints) - trusted_count,
        )

    async def get_trusted_mint_urls(self) -> list[str]:
        return [m["mintUrl"] for m in await self.engine.get_all_trusted_mints()]

    async def get_default_mint_url(self) -> str:
        return await get_default_mint_url(self.engine)
