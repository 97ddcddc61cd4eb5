"""Shared fixtures: an in-memory mint with real BDHKE keys and engine doubles."""

from __future__ import annotations

import hashlib
from typing import Any

import pytest
from coincurve import PrivateKey, PublicKey

from cashu_mcp.config import WalletConfig
from cashu_mcp.crypto import (
    calculate_input_fees,
    hash_to_curve,
    sign_blinded_message,
    split_amount,
)
from cashu_mcp.events import EventBus
from cashu_mcp.keys import KeyProvider
from cashu_mcp.manager import Manager
from cashu_mcp.orchestrator import WalletOrchestrator
from cashu_mcp.storage import Storage
from cashu_mcp.tokens import decode_token
from cashu_mcp.types import (
    BlindedSignature,
    MeltQuote,
    Mint,
    MintError,
    MintNotFoundError,
    MintQuote,
    Proof,
    Token,
)

# BIP-39 test vector
MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
MINT_URL = "https://mint.test"
KEYSET_ID = "009a1f293253e41e"
AMOUNTS = [2**i for i in range(16)]


# ──────────────────────────────────────────────────────────────────────────────
# In-memory mint
# ──────────────────────────────────────────────────────────────────────────────


class FakeMint:
    """Mint double speaking the ``Mint`` client interface.

    Outputs are signed with real keys so the wallet's unblinding and
    verification run for real. Spent secrets are tracked by their Y point.
    """

    def __init__(self, url: str, *, input_fee_ppk: int = 0) -> None:
        self.url = url.rstrip("/")
        self.input_fee_ppk = input_fee_ppk
        self.privkeys = {
            a: PrivateKey(hashlib.sha256(f"{self.url}:{a}".encode()).digest()) for a in AMOUNTS
        }
        self.keys = {
            str(a): k.public_key.format(compressed=True).hex() for a, k in self.privkeys.items()
        }
        self.spent: set[str] = set()
        self.pending: set[str] = set()
        self.signed: dict[str, BlindedSignature] = {}
        self.mint_quotes: dict[str, dict[str, Any]] = {}
        self.melt_quotes: dict[str, dict[str, Any]] = {}
        self.melt_state = "PAID"
        self.melt_amount = 50
        self.fee_reserve = 4
        self._pending_melts: dict[str, tuple[list[str], list[Any], int]] = {}
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    # Info and keys

    async def get_info(self) -> dict[str, Any]:
        return {"name": "Fake Mint", "version": "fake/0.1"}

    async def get_keysets(self) -> list[dict[str, Any]]:
        return [
            {"id": KEYSET_ID, "unit": "sat", "active": True, "input_fee_ppk": self.input_fee_ppk}
        ]

    async def get_keys(self, keyset_id: str | None = None) -> list[dict[str, Any]]:
        return [{"id": KEYSET_ID, "unit": "sat", "keys": dict(self.keys)}]

    # Signing helpers

    def _sign(self, outputs: list[Any], amounts: list[int] | None = None) -> list[BlindedSignature]:
        signatures: list[BlindedSignature] = []
        for output, amount in zip(outputs, amounts or [o["amount"] for o in outputs]):
            C_ = sign_blinded_message(
                PublicKey(bytes.fromhex(output["B_"])), self.privkeys[amount]
            )
            sig = BlindedSignature(amount=amount, id=KEYSET_ID, C_=C_.format(compressed=True).hex())
            self.signed[output["B_"]] = sig
            signatures.append(sig)
        return signatures

    def _check_inputs(self, inputs: list[Proof]) -> tuple[list[str], int]:
        ys = []
        for proof in inputs:
            Y = hash_to_curve(proof["secret"].encode())
            expected = Y.multiply(self.privkeys[proof["amount"]].secret)
            if expected.format(compressed=True).hex() != proof["C"]:
                raise MintError("Invalid proof", status_code=400)
            y = Y.format(compressed=True).hex()
            if y in self.spent or y in self.pending:
                raise MintError("Token already spent", status_code=400)
            ys.append(y)
        fee = calculate_input_fees(inputs, {KEYSET_ID: self.input_fee_ppk})
        return ys, sum(p["amount"] for p in inputs) - fee

    # Swap and state

    async def swap(self, *, inputs: list[Proof], outputs: list[Any]) -> dict[str, Any]:
        ys, available = self._check_inputs(inputs)
        if available != sum(o["amount"] for o in outputs):
            raise MintError("Inputs and outputs are not balanced", status_code=400)
        self.spent.update(ys)
        return {"signatures": self._sign(outputs)}

    async def check_state(self, *, Ys: list[str]) -> dict[str, Any]:
        def state(y: str) -> str:
            if y in self.spent:
                return "SPENT"
            return "PENDING" if y in self.pending else "UNSPENT"

        return {"states": [{"Y": y, "state": state(y), "witness": None} for y in Ys]}

    async def restore(self, *, outputs: list[Any]) -> dict[str, Any]:
        matched = [o for o in outputs if o["B_"] in self.signed]
        return {"outputs": matched, "signatures": [self.signed[o["B_"]] for o in matched]}

    # Minting

    async def create_mint_quote(
        self, *, amount: int, unit: str = "sat", description: str | None = None
    ) -> dict[str, Any]:
        quote_id = f"mint-quote-{len(self.mint_quotes) + 1}"
        self.mint_quotes[quote_id] = {
            "quote": quote_id,
            "request": f"lnbc{amount}n1fake{len(self.mint_quotes)}",
            "amount": amount,
            "unit": unit,
            "state": "UNPAID",
            "expiry": 1_900_000_000,
        }
        return dict(self.mint_quotes[quote_id])

    async def get_mint_quote(self, quote_id: str) -> dict[str, Any]:
        if quote_id not in self.mint_quotes:
            raise MintError("Quote not found", status_code=404)
        return dict(self.mint_quotes[quote_id])

    def pay_invoice(self, quote_id: str) -> None:
        """Simulate the Lightning invoice of a mint quote being paid."""
        self.mint_quotes[quote_id]["state"] = "PAID"

    async def mint(self, *, quote: str, outputs: list[Any]) -> dict[str, Any]:
        stored = self.mint_quotes.get(quote)
        if stored is None or stored["state"] != "PAID":
            raise MintError("Quote not paid", status_code=400)
        if sum(o["amount"] for o in outputs) != stored["amount"]:
            raise MintError("Outputs do not match quote amount", status_code=400)
        stored["state"] = "ISSUED"
        return {"signatures": self._sign(outputs)}

    # Melting

    async def create_melt_quote(self, request: str, *, unit: str = "sat") -> dict[str, Any]:
        quote_id = f"melt-quote-{len(self.melt_quotes) + 1}"
        self.melt_quotes[quote_id] = {
            "quote": quote_id,
            "amount": self.melt_amount,
            "fee_reserve": self.fee_reserve,
            "unit": unit,
            "request": request,
            "state": "UNPAID",
            "expiry": 1_900_000_000,
            "payment_preimage": None,
        }
        return dict(self.melt_quotes[quote_id])

    async def get_melt_quote(self, quote_id: str) -> dict[str, Any]:
        if quote_id not in self.melt_quotes:
            raise MintError("Quote not found", status_code=404)
        return dict(self.melt_quotes[quote_id])

    def _pay(self, quote_id: str, outputs: list[Any], available: int) -> None:
        stored = self.melt_quotes[quote_id]
        change_amounts = split_amount(available - stored["amount"])[: len(outputs)]
        stored["state"] = "PAID"
        stored["payment_preimage"] = "00" * 32
        stored["change"] = self._sign(outputs[: len(change_amounts)], change_amounts)

    async def melt(
        self, *, quote: str, inputs: list[Proof], outputs: list[Any] | None = None
    ) -> dict[str, Any]:
        stored = self.melt_quotes.get(quote)
        if stored is None:
            raise MintError("Quote not found", status_code=404)
        ys, available = self._check_inputs(inputs)
        if available < stored["amount"] + stored["fee_reserve"]:
            raise MintError("Not enough inputs for melt", status_code=400)

        if self.melt_state == "PENDING":
            self.pending.update(ys)
            stored["state"] = "PENDING"
            self._pending_melts[quote] = (ys, list(outputs or []), available)
        elif self.melt_state == "PAID":
            self.spent.update(ys)
            self._pay(quote, list(outputs or []), available)
        else:
            stored["state"] = self.melt_state
        return dict(stored)

    def settle_melt(self, quote_id: str, *, paid: bool = True) -> None:
        """Finish a pending Lightning payment."""
        ys, outputs, available = self._pending_melts.pop(quote_id)
        self.pending.difference_update(ys)
        if paid:
            self.spent.update(ys)
            self._pay(quote_id, outputs, available)
        else:
            self.melt_quotes[quote_id]["state"] = "UNPAID"


class FakeMintNetwork:
    """Mint factory handing out one ``FakeMint`` per URL.

    Mint state outlives the wallet engines that talk to it.
    """

    def __init__(self) -> None:
        self.mints: dict[str, FakeMint] = {}

    def __call__(self, url: str) -> FakeMint:
        url = url.rstrip("/")
        if url not in self.mints:
            self.mints[url] = FakeMint(url)
        return self.mints[url]

    def __getitem__(self, url: str) -> FakeMint:
        return self(url)


# ──────────────────────────────────────────────────────────────────────────────
# Orchestrator doubles
# ──────────────────────────────────────────────────────────────────────────────


PROOF_C = "02" + "ab" * 32


class FakeStorage:
    """Just the storage calls the orchestrator's helpers make."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self.mints: dict[str, Mint] = {}
        self.mint_quotes: dict[tuple[str, str], MintQuote] = {}
        self.melt_quotes: dict[tuple[str, str], MeltQuote] = {}
        self.connected = False
        self.closed = False
        self.fail_connect: Exception | None = None

    async def connect(self) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    async def get_mint_by_url(self, mint_url: str) -> Mint | None:
        return self.mints.get(mint_url)

    async def delete_mint(self, mint_url: str) -> bool:
        return self.mints.pop(mint_url, None) is not None

    async def get_mint_quote(self, mint_url: str, quote_id: str) -> MintQuote | None:
        return self.mint_quotes.get((mint_url, quote_id))

    async def get_melt_quote(self, mint_url: str, quote_id: str) -> MeltQuote | None:
        return self.melt_quotes.get((mint_url, quote_id))


class FakeEngine:
    """Wallet engine double keeping its state in ``FakeStorage``.

    Set ``failures[method_name]`` to make a method raise.
    """

    def __init__(self, storage: FakeStorage, key_provider: KeyProvider, mint_factory: Any) -> None:
        self.storage = storage
        self.key_provider = key_provider
        self.events = EventBus()
        self.calls: list[str] = []
        self.watchers: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.balances: dict[str, Any] = {}
        self.restored: dict[str, int] = {}
        self.history: list[Any] = []
        self.closed = False

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    async def initialize(self) -> None:
        self._call("initialize")

    async def aclose(self) -> None:
        self.closed = True
        self._call("aclose")

    def on(self, name: Any, handler: Any) -> Any:
        return self.events.on(name, handler)

    def enable_mint_quote_watcher(self) -> None:
        self.watchers.append("mint-quote-watcher")

    def enable_mint_quote_processor(self) -> None:
        self.watchers.append("mint-quote-processor")

    def enable_proof_state_watcher(self) -> None:
        self.watchers.append("proof-state-watcher")

    # Mints

    async def add_mint(self, mint_url: str, *, trusted: bool = False) -> Mint:
        self._call("add_mint")
        existing = self.storage.mints.get(mint_url)
        record = Mint(
            mintUrl=mint_url,
            name=None,
            trusted=trusted or bool(existing and existing["trusted"]),
            createdAt=1_700_000_000,
            updatedAt=1_700_000_100,
        )
        self.storage.mints[mint_url] = record
        return record

    async def _set_trust(self, mint_url: str, trusted: bool) -> Mint:
        if mint_url not in self.storage.mints:
            raise MintNotFoundError(f"Mint {mint_url} not found")
        record = Mint(**{**self.storage.mints[mint_url], "trusted": trusted})  # type: ignore[typeddict-item]
        self.storage.mints[mint_url] = record
        return record

    async def trust_mint(self, mint_url: str) -> Mint:
        self._call("trust_mint")
        return await self._set_trust(mint_url, True)

    async def untrust_mint(self, mint_url: str) -> Mint:
        self._call("untrust_mint")
        return await self._set_trust(mint_url, False)

    async def get_all_mints(self) -> list[Mint]:
        self._call("get_all_mints")
        return list(self.storage.mints.values())

    async def get_all_trusted_mints(self) -> list[Mint]:
        return [m for m in self.storage.mints.values() if m["trusted"]]

    # Wallet operations

    async def get_balances(self) -> dict[str, Any]:
        self._call("get_balances")
        return self.balances

    async def send(self, mint_url: str, amount: int) -> Token:
        self._call("send")
        return Token(
            mint=mint_url,
            unit="sat",
            proofs=[Proof(id=KEYSET_ID, amount=amount, secret="send-secret", C=PROOF_C)],
            memo=None,
        )

    async def receive(self, token: str) -> int:
        self._call("receive")
        return sum(p["amount"] for p in decode_token(token)["proofs"])

    async def restore(self, mint_url: str) -> int:
        self._call("restore")
        return self.restored.get(mint_url, 0)

    async def create_mint_quote(self, mint_url: str, amount: int) -> MintQuote:
        self._call("create_mint_quote")
        quote = MintQuote(
            quote="mint-quote-1",
            mintUrl=mint_url,
            amount=amount,
            state="UNPAID",
            expiry=1_900_000_000,
            request=f"lnbc{amount}n1fake",
            unit="sat",
        )
        self.storage.mint_quotes[(mint_url, quote["quote"])] = quote
        return quote

    async def redeem_mint_quote(self, mint_url: str, quote_id: str) -> None:
        self._call("redeem_mint_quote")

    async def create_melt_quote(self, mint_url: str, invoice: str) -> MeltQuote:
        self._call("create_melt_quote")
        quote = MeltQuote(
            quote="melt-quote-1",
            mintUrl=mint_url,
            amount=100,
            fee_reserve=2,
            state="UNPAID",
            expiry=1_900_000_000,
            request=invoice,
            payment_preimage=None,
            unit="sat",
        )
        self.storage.melt_quotes[(mint_url, quote["quote"])] = quote
        return quote

    async def pay_melt_quote(self, mint_url: str, quote_id: str) -> MeltQuote:
        self._call("pay_melt_quote")
        quote = self.storage.melt_quotes[(mint_url, quote_id)]
        paid = MeltQuote(**{**quote, "state": "PAID", "payment_preimage": "00" * 32})  # type: ignore[typeddict-item]
        self.storage.melt_quotes[(mint_url, quote_id)] = paid
        return paid

    async def get_paginated_history(self, offset: int = 0, limit: int = 100) -> list[Any]:
        self._call("get_paginated_history")
        return self.history[offset : offset + limit]


class EngineRecorder:
    """Engine factory that remembers every engine it built."""

    def __init__(self) -> None:
        self.engines: list[FakeEngine] = []
        self.failures: dict[str, Exception] = {}

    def __call__(self, storage: Any, key_provider: KeyProvider, mint_factory: Any) -> FakeEngine:
        engine = FakeEngine(storage, key_provider, mint_factory)
        engine.failures.update(self.failures)
        self.engines.append(engine)
        return engine

    @property
    def engine(self) -> FakeEngine:
        return self.engines[-1]


# ──────────────────────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def mnemonic() -> str:
    return MNEMONIC


@pytest.fixture
def mint_network() -> FakeMintNetwork:
    return FakeMintNetwork()


@pytest.fixture
async def storage(tmp_path):
    """Connected SQLite storage in a temporary directory."""
    async with Storage(tmp_path / "wallet.db") as db:
        yield db


@pytest.fixture
async def manager(storage, mint_network):
    """Initialized engine talking to fake mints."""
    engine = Manager(
        storage,
        KeyProvider(MNEMONIC),
        mint_network,
        poll_interval=0.01,
        proof_poll_interval=0.01,
    )
    await engine.initialize()
    yield engine
    await engine.aclose()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def engine_recorder() -> EngineRecorder:
    return EngineRecorder()


@pytest.fixture
def wallet_config() -> WalletConfig:
    return WalletConfig(seed=MNEMONIC, database_path=":memory:")


@pytest.fixture
def orchestrator(wallet_config, fake_storage, engine_recorder) -> WalletOrchestrator:
    """Orchestrator wired to fakes, not yet initialized."""
    return WalletOrchestrator(
        wallet_config,
        storage_factory=lambda path: fake_storage,
        engine_factory=engine_recorder,
    )


@pytest.fixture
async def wallet(orchestrator):
    """Initialized orchestrator wired to fakes."""
    await orchestrator.initialize()
    yield orchestrator
    await orchestrator.cleanup()
