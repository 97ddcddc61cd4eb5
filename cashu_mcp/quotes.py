"""Resolve a quote id to its mint quote or melt quote."""

from __future__ import annotations

from typing import Protocol, Union

from .types import ErrorCode, MeltQuote, MintQuote, WalletApiError, service_errors

AnyQuote = Union[MintQuote, MeltQuote]


class QuoteStorage(Protocol):
    async def get_mint_quote(self, mint_url: str, quote_id: str) -> MintQuote | None: ...

    async def get_melt_quote(self, mint_url: str, quote_id: str) -> MeltQuote | None: ...


class QuoteResolver:
    """Look up quotes in storage.

    Quote ids are only unique per mint and per kind. When the same id exists
    as both a mint quote and a melt quote the mint quote is returned.
    """

    def __init__(self, storage: QuoteStorage | None) -> None:
        self.storage = storage

    async def check_quote_status(self, quote_id: str, mint_url: str) -> AnyQuote | None:
        """Return the mint quote or melt quote for ``quote_id``, or None."""
        if self.storage is None:
            raise WalletApiError(
                ErrorCode.SERVICE_NOT_INITIALIZED,
                "Quote resolver dependencies not initialized: storage",
            )

        with service_errors("check quote status", quoteId=quote_id, mintUrl=mint_url):
            mint_quote = await self.storage.get_mint_quote(mint_url, quote_id)
            if mint_quote is not None:
                return mint_quote
            return await self.storage.get_melt_quote(mint_url, quote_id)
