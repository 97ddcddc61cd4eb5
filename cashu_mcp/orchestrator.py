"""Top-level wallet facade used by the MCP tools and the CLI."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from .config import WalletConfig
from .events import EventObserver, EventSource
from .keys import KeyProvider
from .manager import Manager, MintFactory
from .mint import Mint, normalize_mint_url
from .mints import MintEngine, MintTrustStore
from .quotes import AnyQuote, QuoteResolver
from .storage import Storage
from .types import (
    BalanceResult,
    ErrorCode,
    HistoryEntry,
    MeltQuote,
    MintFilter,
    MintInfo,
    MintQuote,
    MintsListResult,
    ReceiveResult,
    SendResult,
    WalletApiError,
    service_errors,
)

logger = logging.getLogger(__name__)


class WalletEngine(EventSource, MintEngine, Protocol):
    """Operations the orchestrator needs from the wallet engine."""

    async def initialize(self) -> None: ...

    async def aclose(self) -> None: ...

    def enable_mint_quote_watcher(self) -> None: ...

    def enable_mint_quote_processor(self) -> None: ...

    def enable_proof_state_watcher(self) -> None: ...

    async def get_balances(self) -> dict[str, int]: ...

    async def send(self, mint_url: str, amount: int) -> Any: ...

    async def receive(self, token: str) -> int: ...

    async def restore(self, mint_url: str) -> int: ...

    async def create_mint_quote(self, mint_url: str, amount: int) -> MintQuote: ...

    async def redeem_mint_quote(self, mint_url: str, quote_id: str) -> None: ...

    async def create_melt_quote(self, mint_url: str, invoice: str) -> MeltQuote: ...

    async def pay_melt_quote(self, mint_url: str, quote_id: str) -> MeltQuote: ...

    async def get_paginated_history(self, offset: int = 0, limit: int = 100) -> list[HistoryEntry]: ...


EngineFactory = Callable[[Any, KeyProvider, MintFactory], WalletEngine]
StorageFactory = Callable[[str], Any]


def _not_initialized() -> WalletApiError:
    return WalletApiError(ErrorCode.WALLET_NOT_INITIALIZED, "Wallet service not initialized")


class WalletOrchestrator:
    """Own the storage and engine handles and sequence wallet start-up.

    ``initialize()`` opens storage, builds the key provider, builds the
    engine, attaches the event observer, enables the engine's background
    watchers and only then marks the wallet ready. Each step needs the one
    before it.

    Example:
        async with WalletOrchestrator(config.wallet) as wallet:
            balance = await wallet.get_balance()
    """

    def __init__(
        self,
        config: WalletConfig,
        *,
        storage_factory: StorageFactory = Storage,
        engine_factory: EngineFactory = Manager,
        mint_factory: MintFactory = Mint,
        observer: EventObserver | None = None,
    ) -> None:
        self.config = config
        self.events = observer or EventObserver()
        self._storage_factory = storage_factory
        self._engine_factory = engine_factory
        self._mint_factory = mint_factory

        self._storage: Any = None
        self._engine: WalletEngine | None = None
        self._mints: MintTrustStore | None = None
        self.quotes = QuoteResolver(None)
        self._ready = False

    # ───────────────────────── Lifecycle ─────────────────────────────────

    async def initialize(self) -> None:
        """Bring the wallet up. A second call after success does nothing."""
        if self._ready:
            return

        storage = engine = None
        try:
            storage = self._storage_factory(self.config.database_path)
            await storage.connect()

            key_provider = KeyProvider(self.config.seed)
            engine = self._engine_factory(storage, key_provider, self._mint_factory)
            await engine.initialize()

            self.events.attach(engine)

            engine.enable_mint_quote_watcher()
            engine.enable_mint_quote_processor()
            engine.enable_proof_state_watcher()
        except Exception as e:
            logger.error("Wallet initialization failed: %s", e)
            await self._release(engine, storage)
            raise WalletApiError(
                ErrorCode.WALLET_INIT_FAILED, f"Failed to initialize wallet: {e}"
            ) from e

        self._storage = storage
        self._engine = engine
        self._mints = MintTrustStore(engine, storage)
        self.quotes = QuoteResolver(storage)
        self._ready = True
        logger.info("Wallet initialized (database: %s)", self.config.database_path)

    async def _release(self, engine: WalletEngine | None, storage: Any) -> None:
        if engine is not None:
            try:
                await engine.aclose()
            except Exception as e:
                logger.warning("Failed to close wallet engine: %s", e)
        if storage is not None:
            try:
                await storage.close()
            except Exception as e:
                logger.error("Failed to close storage: %s", e)
        if self.events.attached:
            await self.events.close()

    async def cleanup(self) -> None:
        """Close the engine and storage. Safe to call at any time, any number of times."""
        engine, storage = self._engine, self._storage
        self._ready = False
        self._engine = None
        self._storage = None
        self._mints = None
        self.quotes = QuoteResolver(None)
        await self._release(engine, storage)
        if engine is not None:
            logger.info("Wallet cleaned up")

    async def __aenter__(self) -> "WalletOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.cleanup()

    def is_initialized(self) -> bool:
        return self._engine is not None

    def is_ready(self) -> bool:
        return self._ready

    def _require_ready(self) -> None:
        if not self._ready:
            raise _not_initialized()

    @property
    def engine(self) -> WalletEngine:
        if not self._ready or self._engine is None:
            raise _not_initialized()
        return self._engine

    @property
    def mints(self) -> MintTrustStore:
        if not self._ready or self._mints is None:
            raise _not_initialized()
        return self._mints

    # ───────────────────────── Balance ─────────────────────────────────

    async def get_balance(self) -> BalanceResult:
        """Total balance and per-mint breakdown; missing values count as zero."""
        engine = self.engine
        with service_errors("get balance"):
            balances = await engine.get_balances() or {}
            breakdown = {url: int(value or 0) for url, value in balances.items()}
            return BalanceResult(total=sum(breakdown.values()), breakdown=breakdown)

    # ───────────────────────── Mints ─────────────────────────────────

    async def resolve_mint_url(self, mint_url: str | None = None) -> str:
        """Return ``mint_url`` (normalized, not checked), or the default mint when omitted."""
        mints = self.mints
        if mint_url:
            return normalize_mint_url(mint_url)
        return await mints.get_default_mint_url()

    async def get_default_mint(self) -> str:
        return await self.mints.get_default_mint_url()

    async def get_all_trusted_mints(self) -> list[str]:
        mints = self.mints
        with service_errors("get all trusted mints"):
            return await mints.get_trusted_mint_urls()

    async def add_mint(self, mint_url: str, trusted: bool | None = None) -> MintInfo:
        mints = self.mints
        with service_errors("add mint", mintUrl=mint_url, trusted=trusted):
            return await mints.add_mint(mint_url, trusted=bool(trusted))

    async def ensure_default_mint(self, mint_url: str) -> MintInfo | None:
        """Add ``mint_url`` as trusted; failures are only logged."""
        try:
            return await self.add_mint(mint_url, trusted=True)
        except WalletApiError as e:
            logger.warning("Could not add default mint %s: %s", mint_url, e)
            return None

    async def trust_mint(self, mint_url: str) -> MintInfo:
        mints = self.mints
        with service_errors("trust mint", mintUrl=mint_url):
            return await mints.trust_mint(mint_url)

    async def untrust_mint(self, mint_url: str) -> MintInfo:
        mints = self.mints
        with service_errors("untrust mint", mintUrl=mint_url):
            return await mints.untrust_mint(mint_url)

    async def remove_mint(self, mint_url: str) -> None:
        """Delete a mint and its cached keysets.

        Proofs and history stay. If this was the only trusted mint, calls that
        omit a mint URL fail with NO_TRUSTED_MINTS afterwards.
        """
        mints = self.mints
        with service_errors("remove mint", mintUrl=mint_url):
            await mints.remove_mint(mint_url)

    async def list_mints(self, filter: MintFilter = "all") -> MintsListResult:
        mints = self.mints
        with service_errors("list mints", filter=filter):
            return await mints.list_mints(filter)

    # ───────────────────────── Tokens ─────────────────────────────────

    async def send_tokens(self, amount: int, mint_url: str | None = None) -> SendResult:
        engine = self.engine
        with service_errors("send cashu", amount=amount, mintUrl=mint_url):
            target = await self.resolve_mint_url(mint_url)
            token = await engine.send(target, amount)
            return SendResult(token=token, amount=amount, mintUrl=target)

    async def receive_tokens(self, token: str) -> ReceiveResult:
        """Redeem a token. The received amount is recorded in history only."""
        engine = self.engine
        with service_errors("receive cashu", tokenLength=len(token)):
            await engine.receive(token)
            return ReceiveResult(success=True)

    async def restore(self, mint_url: str | None = None) -> dict[str, int]:
        """Restore proofs from the seed at one mint, or at every trusted mint."""
        engine = self.engine
        with service_errors("restore", mintUrl=mint_url):
            if mint_url:
                urls = [normalize_mint_url(mint_url)]
            else:
                urls = await self.mints.get_trusted_mint_urls()
            return {url: await engine.restore(url) for url in urls}

    # ───────────────────────── Quotes ─────────────────────────────────

    async def create_mint_quote(self, mint_url: str, amount: int) -> MintQuote:
        engine = self.engine
        with service_errors("create mint quote", mintUrl=mint_url, amount=amount):
            return await engine.create_mint_quote(normalize_mint_url(mint_url), amount)

    async def redeem_mint_quote(self, mint_url: str, quote_id: str) -> None:
        engine = self.engine
        with service_errors("redeem mint quote", mintUrl=mint_url, quoteId=quote_id):
            await engine.redeem_mint_quote(normalize_mint_url(mint_url), quote_id)

    async def create_melt_quote(self, mint_url: str, invoice: str) -> MeltQuote:
        engine = self.engine
        with service_errors("create melt quote", mintUrl=mint_url):
            return await engine.create_melt_quote(normalize_mint_url(mint_url), invoice)

    async def pay_melt_quote(self, mint_url: str, quote_id: str) -> MeltQuote:
        engine = self.engine
        with service_errors("pay melt quote", mintUrl=mint_url, quoteId=quote_id):
            return await engine.pay_melt_quote(normalize_mint_url(mint_url), quote_id)

    async def check_quote_status(self, quote_id: str, mint_url: str) -> AnyQuote | None:
        self._require_ready()
        return await self.quotes.check_quote_status(quote_id, normalize_mint_url(mint_url))

    # ───────────────────────── History ─────────────────────────────────

    async def list_transactions(self, limit: int = 100, offset: int = 0) -> list[HistoryEntry]:
        engine = self.engine
        with service_errors("list transactions", limit=limit, offset=offset):
            return await engine.get_paginated_history(offset, limit)

    async def get_transaction(self, quote_id: str) -> HistoryEntry | None:
        """Most recent mint or melt entry for ``quote_id`` among the last 100."""
        engine = self.engine
        with service_errors("get transaction", quoteId=quote_id):
            for entry in await engine.get_paginated_history(0, 100):
                if entry["type"] in ("mint", "melt") and entry.get("quoteId") == quote_id:
                    return entry
            return None
