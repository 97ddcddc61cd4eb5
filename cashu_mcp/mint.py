"""Cashu Mint API client wrapper."""

from __future__ import annotations

import logging
from typing import Any, TypedDict, cast

import httpx

from .types import BlindedMessage, BlindedSignature, MintError, Proof

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class Mint:
    """Thin async client for one mint's NUT REST API.

    Args:
        url: Mint base URL. Trailing slashes are removed.
        client: Optional ``httpx.AsyncClient`` to reuse. A client created
            here is closed by ``aclose()``.
    """

    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None) -> None:
        self.url = normalize_mint_url(url)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    async def aclose(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint."""
        logger.debug("%s %s%s", method, self.url, path)
        try:
            response = await self.client.request(method, f"{self.url}{path}", json=json)
        except httpx.HTTPError as e:
            raise MintError(f"Mint {self.url} unreachable: {e}") from e

        if response.status_code >= 400:
            detail = response.text
            try:
                detail = response.json().get("detail", detail)
            except ValueError:
                pass
            raise MintError(
                f"Mint returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        return response.json()

    # ───────────────────────── Info & Keys ─────────────────────────────────

    async def get_info(self) -> MintInfo:
        """Get mint information (NUT-06)."""
        return cast(MintInfo, await self._request("GET", "/v1/info"))

    async def get_keys(self, keyset_id: str | None = None) -> list[KeysetKeys]:
        """Get public keys of the active keysets, or of one keyset (NUT-01)."""
        path = f"/v1/keys/{keyset_id}" if keyset_id else "/v1/keys"
        response = await self._request("GET", path)
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise MintError("Response missing 'keysets' field")
        for keyset in keysets:
            if not {"id", "unit", "keys"} <= keyset.keys():
                raise MintError(f"Invalid keyset in response: {keyset.get('id')}")
        return cast(list[KeysetKeys], keysets)

    async def get_keysets(self) -> list[KeysetInfo]:
        """Get all keysets with their fee rate and active flag (NUT-02)."""
        response = await self._request("GET", "/v1/keysets")
        return cast(list[KeysetInfo], response["keysets"])

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(
        self, *, amount: int, unit: str = "sat", description: str | None = None
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {"unit": unit, "amount": amount}
        if description is not None:
            body["description"] = description
        return cast(
            PostMintQuoteResponse,
            await self._request("POST", "/v1/mint/quote/bolt11", json=body),
        )

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        """Check status of a mint quote."""
        return cast(
            PostMintQuoteResponse,
            await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}"),
        )

    async def mint(self, *, quote: str, outputs: list[BlindedMessage]) -> PostMintResponse:
        """Mint tokens after paying the Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "outputs": outputs}
        return cast(
            PostMintResponse, await self._request("POST", "/v1/mint/bolt11", json=body)
        )

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(self, request: str, *, unit: str = "sat") -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {"unit": unit, "request": request}
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/quote/bolt11", json=body),
        )

    async def get_melt_quote(self, quote_id: str) -> PostMeltQuoteResponse:
        """Check status of a melt quote."""
        return cast(
            PostMeltQuoteResponse,
            await self._request("GET", f"/v1/melt/quote/bolt11/{quote_id}"),
        )

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[Proof],
        outputs: list[BlindedMessage] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "inputs": inputs}
        if outputs:
            body["outputs"] = outputs
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/bolt11", json=body),
        )

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self, *, inputs: list[Proof], outputs: list[BlindedMessage]
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        body: dict[str, Any] = {"inputs": inputs, "outputs": outputs}
        return cast(PostSwapResponse, await self._request("POST", "/v1/swap", json=body))

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        return cast(
            PostCheckStateResponse,
            await self._request("POST", "/v1/checkstate", json={"Ys": Ys}),
        )

    async def restore(self, *, outputs: list[BlindedMessage]) -> PostRestoreResponse:
        """Restore signatures for previously used blinded messages."""
        return cast(
            PostRestoreResponse,
            await self._request("POST", "/v1/restore", json={"outputs": outputs}),
        )


def normalize_mint_url(url: str) -> str:
    """Canonical form of a mint URL: surrounding whitespace and trailing slashes removed."""
    return url.strip().rstrip("/")


def validate_mint_url(url: str) -> bool:
    """Validate that a mint URL has the correct format.

    Args:
        url: Mint URL to validate

    Returns:
        True if URL appears valid, False otherwise
    """
    if not url:
        return False

    # Basic URL validation - should start with http:// or https://
    if not (url.startswith("http://") or url.startswith("https://")):
        return False

    return bool(httpx.URL(url).host)


# ──────────────────────────────────────────────────────────────────────────────
# Response types from the NUT-01 to NUT-09 documents
# ──────────────────────────────────────────────────────────────────────────────


class MintInfo(TypedDict, total=False):
    """Mint information response."""

    name: str
    pubkey: str
    version: str
    description: str
    motd: str
    nuts: dict[str, dict[str, Any]]


class KeysetKeys(TypedDict):
    """Keys of one keyset (NUT-01)."""

    id: str
    unit: str
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey


class KeysetInfoRequired(TypedDict):
    id: str
    unit: str
    active: bool


class KeysetInfo(KeysetInfoRequired, total=False):
    """Keyset entry from GET /v1/keysets."""

    input_fee_ppk: int  # input fee in parts per thousand


class PostMintQuoteResponse(TypedDict, total=False):
    """Mint quote response."""

    quote: str  # quote id
    request: str  # bolt11 invoice
    amount: int
    unit: str
    state: str  # "UNPAID", "PAID", "ISSUED"
    expiry: int | None


class PostMintResponse(TypedDict):
    signatures: list[BlindedSignature]


class PostMeltQuoteResponse(TypedDict, total=False):
    """Melt quote response."""

    quote: str
    amount: int
    fee_reserve: int
    unit: str
    request: str
    state: str  # "UNPAID", "PENDING", "PAID"
    expiry: int
    payment_preimage: str | None
    change: list[BlindedSignature]


class PostSwapResponse(TypedDict):
    signatures: list[BlindedSignature]


class PostCheckStateResponse(TypedDict):
    """Check state response."""

    states: list[dict[str, Any]]  # {"Y", "state", "witness"}


class PostRestoreResponse(TypedDict, total=False):
    """Restore response."""

    outputs: list[BlindedMessage]
    signatures: list[BlindedSignature]
    promises: list[BlindedSignature]  # deprecated
