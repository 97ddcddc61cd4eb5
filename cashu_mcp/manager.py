"""Cashu wallet engine.

``Manager`` owns the wallet's mints, proofs and quotes on top of ``Storage``
and talks to mints through ``Mint`` clients. Every state change is announced
on its ``EventBus``. Optional background tasks poll mint quotes, redeem paid
quotes and track proofs that are in flight.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Callable, Iterable, cast

from coincurve import PublicKey

from .crypto import (
    blank_outputs_needed,
    blind_message,
    calculate_input_fees,
    derive_secret,
    secret_to_y,
    split_amount,
    unblind_signature,
)
from .events import EventBus, EventName, Handler, Unsubscribe
from .keys import KeyProvider
from .mint import Mint, normalize_mint_url
from .storage import Storage, StoredProof
from .tokens import decode_token
from .types import (
    BlindedMessage,
    BlindedSignature,
    HistoryEntry,
    InsufficientBalanceError,
    Keyset,
    MeltQuote,
    Mint as MintRecord,
    MintError,
    MintNotFoundError,
    MintNotTrustedError,
    MintQuote,
    Proof,
    QuoteNotFoundError,
    Token,
    TokenError,
    WalletError,
)

logger = logging.getLogger(__name__)

RESTORE_BATCH_SIZE = 100
RESTORE_EMPTY_BATCHES = 3
MAX_REDEEM_ATTEMPTS = 3

# used_by marker of proofs sent to a swap whose outcome is unknown
UNCONFIRMED_SWAP = "swap:unconfirmed"

MintFactory = Callable[[str], Mint]

# (secret, blinding factor) pairs in output order
OutputSecrets = list[tuple[str, bytes]]


def _strip(proof: Proof) -> Proof:
    """Drop local bookkeeping fields before a proof is sent to a mint."""
    return Proof(id=proof["id"], amount=proof["amount"], secret=proof["secret"], C=proof["C"])


def _sum(proofs: Iterable[Proof]) -> int:
    return sum(int(p["amount"]) for p in proofs)


class Manager:
    """Wallet engine bound to one storage handle and one seed.

    Args:
        storage: Connected ``Storage`` instance.
        key_provider: Source of the seed bytes. The seed is materialized once,
            on ``initialize()``, and cleared on ``aclose()``.
        mint_factory: Builds a ``Mint`` client for a URL.
        poll_interval: Seconds between mint quote polls.
        proof_poll_interval: Seconds between checks of in-flight proofs.
    """

    def __init__(
        self,
        storage: Storage,
        key_provider: KeyProvider,
        mint_factory: MintFactory = Mint,
        *,
        poll_interval: float = 5.0,
        proof_poll_interval: float = 30.0,
    ) -> None:
        self.storage = storage
        self.key_provider = key_provider
        self._mint_factory = mint_factory
        self.poll_interval = poll_interval
        self.proof_poll_interval = proof_poll_interval

        self.events = EventBus()
        self.mints: dict[str, Mint] = {}

        self._seed: bytearray | None = None
        self._exit_stack = AsyncExitStack()
        self._counter_lock = asyncio.Lock()

        # Blank output secrets of melts still pending at the mint
        self._pending_change: dict[str, tuple[dict[str, str], OutputSecrets]] = {}

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._redeem_queue: asyncio.Queue[tuple[str, str]] | None = None
        # Quotes queued, being redeemed or waiting for a retry
        self._queued: set[tuple[str, str]] = set()
        self._redeem_attempts: dict[tuple[str, str], int] = {}
        self._closed = False

    # ───────────────────────── Lifecycle ─────────────────────────────────

    async def initialize(self) -> None:
        """Materialize the seed. Calling it again is a no-op."""
        if self._seed is None:
            self._seed = await self._exit_stack.enter_async_context(
                self.key_provider.materialize()
            )

    async def aclose(self) -> None:
        """Stop background tasks, close mint clients and wipe the seed."""
        if self._closed:
            return
        self._closed = True

        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        for mint in self.mints.values():
            await mint.aclose()
        self.mints.clear()

        await self._exit_stack.aclose()
        self._seed = None
        self.events.clear()
        logger.debug("Wallet engine closed")

    def on(self, name: EventName, handler: Handler) -> Unsubscribe:
        return self.events.on(name, handler)

    def _get_mint(self, mint_url: str) -> Mint:
        """Get or create mint instance for URL."""
        if mint_url not in self.mints:
            self.mints[mint_url] = self._mint_factory(mint_url)
        return self.mints[mint_url]

    # ───────────────────────── Mints ─────────────────────────────────

    async def add_mint(self, mint_url: str, *, trusted: bool = False) -> MintRecord:
        """Fetch a mint's info and keysets and store it.

        An existing mint keeps its trust flag unless ``trusted`` is True.
        """
        mint_url = normalize_mint_url(mint_url)
        client = self._get_mint(mint_url)
        info = await client.get_info()
        keysets = await self._fetch_keysets(mint_url)

        existing = await self.storage.get_mint_by_url(mint_url)
        record = await self.storage.upsert_mint(
            mint_url,
            name=info.get("name"),
            trusted=trusted or bool(existing and existing["trusted"]),
        )
        await self.storage.save_keysets(keysets)

        await self.events.emit(
            "mint:updated" if existing else "mint:added",
            {"mintUrl": mint_url, "trusted": record["trusted"]},
        )
        return record

    async def _set_trust(self, mint_url: str, trusted: bool) -> MintRecord:
        if not await self.storage.set_mint_trusted(mint_url, trusted):
            raise MintNotFoundError(f"Mint {mint_url} not found")
        record = await self.storage.get_mint_by_url(mint_url)
        if record is None:
            raise MintNotFoundError(f"Mint {mint_url} not found")
        await self.events.emit("mint:updated", {"mintUrl": mint_url, "trusted": trusted})
        return record

    async def trust_mint(self, mint_url: str) -> MintRecord:
        return await self._set_trust(mint_url, True)

    async def untrust_mint(self, mint_url: str) -> MintRecord:
        return await self._set_trust(mint_url, False)

    async def get_all_mints(self) -> list[MintRecord]:
        return await self.storage.get_all_mints()

    async def get_all_trusted_mints(self) -> list[MintRecord]:
        return await self.storage.get_trusted_mints()

    async def _require_mint(self, mint_url: str, *, trusted: bool = False) -> MintRecord:
        record = await self.storage.get_mint_by_url(mint_url)
        if record is None:
            if trusted:
                raise MintNotTrustedError(f"Mint {mint_url} is not trusted")
            raise MintNotFoundError(f"Mint {mint_url} not found")
        if trusted and not record["trusted"]:
            raise MintNotTrustedError(f"Mint {mint_url} is not trusted")
        return record

    # ───────────────────────── Keysets ─────────────────────────────────

    async def _fetch_keysets(self, mint_url: str) -> list[Keyset]:
        client = self._get_mint(mint_url)
        infos = await client.get_keysets()
        active_keys = {ks["id"]: ks["keys"] for ks in await client.get_keys()}
        return [
            Keyset(
                id=info["id"],
                mintUrl=mint_url,
                unit=info["unit"],
                active=bool(info["active"]),
                input_fee_ppk=int(info.get("input_fee_ppk", 0) or 0),
                keys=active_keys.get(info["id"], {}),
            )
            for info in infos
        ]

    async def _load_keysets(self, mint_url: str, *, refresh: bool = False) -> list[Keyset]:
        keysets = [] if refresh else await self.storage.get_keysets(mint_url)
        if not keysets:
            await self.storage.save_keysets(await self._fetch_keysets(mint_url))
            keysets = await self.storage.get_keysets(mint_url)
        return keysets

    async def _active_keyset(self, mint_url: str, unit: str = "sat") -> Keyset:
        for refresh in (False, True):
            candidates = [
                ks
                for ks in await self._load_keysets(mint_url, refresh=refresh)
                if ks["active"] and ks["unit"] == unit
            ]
            if candidates:
                keyset = min(candidates, key=lambda ks: ks["input_fee_ppk"])
                return await self._with_keys(keyset)
        raise WalletError(f"No active {unit} keyset at mint {mint_url}")

    async def _with_keys(self, keyset: Keyset) -> Keyset:
        if keyset["keys"]:
            return keyset
        response = await self._get_mint(keyset["mintUrl"]).get_keys(keyset["id"])
        keyset = Keyset(**{**keyset, "keys": response[0]["keys"]})  # type: ignore[typeddict-item]
        await self.storage.save_keysets([keyset])
        return keyset

    async def _fee_rates(self, mint_url: str, proofs: list[Proof]) -> dict[str, int]:
        keysets = await self._load_keysets(mint_url)
        if {p["id"] for p in proofs} - {ks["id"] for ks in keysets}:
            keysets = await self._load_keysets(mint_url, refresh=True)
        return {ks["id"]: ks["input_fee_ppk"] for ks in keysets}

    # ───────────────────────── Blinding ─────────────────────────────────

    async def _seed_bytes(self) -> bytearray:
        if self._seed is None:
            await self.initialize()
        if self._seed is None:
            raise WalletError("Wallet seed is not available")
        return self._seed

    async def _reserve(self, mint_url: str, keyset_id: str, count: int) -> int:
        async with self._counter_lock:
            start = await self.storage.reserve_counter(mint_url, keyset_id, count)
        await self.events.emit(
            "counter:updated",
            {"mintUrl": mint_url, "keysetId": keyset_id, "counter": start + count},
        )
        return start

    async def _derive_outputs(
        self, keyset_id: str, counters: Iterable[int], amounts: Iterable[int]
    ) -> tuple[list[BlindedMessage], OutputSecrets]:
        seed = await self._seed_bytes()
        outputs: list[BlindedMessage] = []
        secrets: OutputSecrets = []
        for counter, amount in zip(counters, amounts):
            secret, r = derive_secret(seed, keyset_id, counter)
            B_ = blind_message(secret, r)
            outputs.append(
                BlindedMessage(amount=amount, id=keyset_id, B_=B_.format(compressed=True).hex())
            )
            secrets.append((secret, r))
        return outputs, secrets

    async def _create_outputs(
        self, mint_url: str, keyset: Keyset, amounts: list[int]
    ) -> tuple[list[BlindedMessage], OutputSecrets]:
        start = await self._reserve(mint_url, keyset["id"], len(amounts))
        return await self._derive_outputs(
            keyset["id"], range(start, start + len(amounts)), amounts
        )

    @staticmethod
    def _unblind(
        signatures: list[BlindedSignature], secrets: OutputSecrets, keys: dict[str, str]
    ) -> list[Proof]:
        proofs: list[Proof] = []
        for sig, (secret, r) in zip(signatures, secrets):
            mint_pubkey = keys.get(str(sig["amount"]))
            if not mint_pubkey:
                raise WalletError(f"Could not find mint public key for amount {sig['amount']}")
            C = unblind_signature(
                PublicKey(bytes.fromhex(sig["C_"])), r, PublicKey(bytes.fromhex(mint_pubkey))
            )
            proofs.append(
                Proof(
                    id=sig["id"],
                    amount=int(sig["amount"]),
                    secret=secret,
                    C=C.format(compressed=True).hex(),
                )
            )
        return proofs

    async def _swap(
        self, mint_url: str, inputs: list[Proof], amounts: list[int], keyset: Keyset
    ) -> list[Proof]:
        """Swap ``inputs`` for new proofs of ``amounts``, in that order."""
        outputs, secrets = await self._create_outputs(mint_url, keyset, amounts)
        response = await self._get_mint(mint_url).swap(
            inputs=[_strip(p) for p in inputs], outputs=outputs
        )
        return self._unblind(response["signatures"], secrets, keyset["keys"])

    # ───────────────────────── Proofs ─────────────────────────────────

    @staticmethod
    def _select_proofs(
        proofs: list[StoredProof], amount: int, fee_rates: dict[str, int]
    ) -> list[StoredProof]:
        """Pick proofs, largest first, until they cover amount plus input fees."""
        selected: list[StoredProof] = []
        total = 0
        for proof in sorted(proofs, key=lambda p: p["amount"], reverse=True):
            if selected and total >= amount + calculate_input_fees(selected, fee_rates):
                break
            selected.append(proof)
            total += int(proof["amount"])
        if not selected or total < amount + calculate_input_fees(selected, fee_rates):
            available = _sum(proofs)
            raise InsufficientBalanceError(
                f"Insufficient balance: need {amount}, have {available}"
            )
        return selected

    async def _save_proofs(
        self, mint_url: str, proofs: list[Proof], *, state: str = "ready"
    ) -> None:
        if not proofs:
            return
        await self.storage.save_proofs(mint_url, proofs, state=state)  # type: ignore[arg-type]
        await self.events.emit(
            "proofs:saved", {"mintUrl": mint_url, "count": len(proofs), "amount": _sum(proofs)}
        )

    async def _set_state(
        self, mint_url: str, proofs: list[Proof], state: str, *, used_by: str | None = None
    ) -> None:
        if not proofs:
            return
        await self.storage.set_proof_state(
            [p["secret"] for p in proofs], state, used_by=used_by  # type: ignore[arg-type]
        )
        await self.events.emit(
            "proofs:state-changed",
            {"mintUrl": mint_url, "state": state, "secrets": [p["secret"] for p in proofs]},
        )

    async def get_balances(self) -> dict[str, int]:
        """Spendable balance of every mint holding ready proofs."""
        return await self.storage.get_ready_balances()

    # ───────────────────────── History ─────────────────────────────────

    async def _record(self, type: str, **fields: Any) -> HistoryEntry:
        entry = await self.storage.add_history(type, **fields)
        await self.events.emit("history:updated", entry)
        return entry

    async def get_paginated_history(self, offset: int = 0, limit: int = 100) -> list[HistoryEntry]:
        return await self.storage.get_paginated_history(offset, limit)

    # ───────────────────────── Send / Receive ─────────────────────────────────

    async def send(self, mint_url: str, amount: int) -> Token:
        """Build a bearer token worth exactly ``amount`` from one mint's proofs.

        Selected proofs are swapped into a send part and a change part. The
        send part stays ``inflight`` until the proof state watcher sees it
        spent. A swap rejected by the mint puts the inputs back to ready. A
        swap without an answer leaves them in flight until the watcher learns
        whether the mint spent them; outputs it signed can be restored.

        Raises:
            InsufficientBalanceError: If the mint's ready proofs cannot cover
                ``amount`` plus input fees.
        """
        if amount <= 0:
            raise WalletError("Amount must be positive")
        await self._require_mint(mint_url)

        ready = await self.storage.get_proofs(mint_url=mint_url, state="ready")
        fee_rates = await self._fee_rates(mint_url, ready)
        selected = self._select_proofs(ready, amount, fee_rates)
        await self._set_state(mint_url, selected, "inflight")

        try:
            total = _sum(selected)
            fee = calculate_input_fees(selected, fee_rates)
            if total == amount and fee == 0:
                send_proofs = [_strip(p) for p in selected]
            else:
                keyset = await self._active_keyset(mint_url)
                send_amounts = split_amount(amount)
                keep_amounts = split_amount(total - fee - amount)
                new_proofs = await self._swap(
                    mint_url, selected, send_amounts + keep_amounts, keyset
                )
                send_proofs = new_proofs[: len(send_amounts)]
                await self._set_state(mint_url, selected, "spent")
                await self._save_proofs(mint_url, new_proofs[len(send_amounts) :])
                await self._save_proofs(mint_url, send_proofs, state="inflight")
        except MintError as e:
            if e.status_code is not None:
                await self._set_state(mint_url, selected, "ready")
                raise
            # The mint may have swapped the inputs before the connection broke
            logger.warning(
                "Swap at %s ended without an answer, inputs stay in flight until checked: %s",
                mint_url,
                e,
            )
            await self._set_state(mint_url, selected, "inflight", used_by=UNCONFIRMED_SWAP)
            raise
        except WalletError:
            await self._set_state(mint_url, selected, "ready")
            raise

        token = Token(mint=mint_url, unit="sat", proofs=send_proofs, memo=None)
        await self.events.emit("send:created", {"mintUrl": mint_url, "amount": amount, "token": token})
        await self._record("send", mint_url=mint_url, unit="sat", amount=amount, token=token)
        return token

    async def receive(self, token: str) -> int:
        """Redeem a bearer token into the wallet.

        The token's mint must be known and trusted. Returns the amount added
        after input fees.
        """
        parsed = decode_token(token)
        mint_url = normalize_mint_url(parsed["mint"])
        await self._require_mint(mint_url, trusted=True)

        proofs = parsed["proofs"]
        fee = calculate_input_fees(proofs, await self._fee_rates(mint_url, proofs))
        amount = _sum(proofs) - fee
        if amount <= 0:
            raise TokenError("Token amount does not cover the input fees")

        keyset = await self._active_keyset(mint_url, parsed["unit"])
        new_proofs = await self._swap(mint_url, proofs, split_amount(amount), keyset)
        await self._save_proofs(mint_url, new_proofs)

        await self.events.emit("receive:created", {"mintUrl": mint_url, "amount": amount})
        await self._record("receive", mint_url=mint_url, unit=parsed["unit"], amount=amount)
        return amount

    # ───────────────────────── Restore ─────────────────────────────────

    async def restore(self, mint_url: str) -> int:
        """Recover proofs derived from the seed at one mint (NUT-09).

        Walks every keyset in batches until several batches in a row come
        back empty. Unspent proofs are saved as ready, pending ones as
        inflight. Returns the restored amount that is spendable.
        """
        await self._require_mint(mint_url)
        client = self._get_mint(mint_url)
        known = {p["secret"] for p in await self.storage.get_proofs(mint_url=mint_url)}
        restored = 0

        for keyset in await self._load_keysets(mint_url, refresh=True):
            keyset = await self._with_keys(keyset)
            found: list[Proof] = []
            counter = 0
            empty_batches = 0
            last_used = -1

            while empty_batches < RESTORE_EMPTY_BATCHES:
                counters = range(counter, counter + RESTORE_BATCH_SIZE)
                outputs, secrets = await self._derive_outputs(
                    keyset["id"], counters, [1] * RESTORE_BATCH_SIZE
                )
                response = await client.restore(outputs=outputs)
                signatures = response.get("signatures") or response.get("promises") or []
                if not signatures:
                    empty_batches += 1
                    counter += RESTORE_BATCH_SIZE
                    continue

                empty_batches = 0
                index_by_B = {o["B_"]: i for i, o in enumerate(outputs)}
                for output, sig in zip(response.get("outputs", []), signatures):
                    i = index_by_B.get(output["B_"])
                    if i is None:
                        continue
                    last_used = max(last_used, counter + i)
                    found.extend(self._unblind([sig], [secrets[i]], keyset["keys"]))
                counter += RESTORE_BATCH_SIZE

            if last_used >= 0:
                await self.storage.bump_counter(mint_url, keyset["id"], last_used + 1)

            fresh = [p for p in found if p["secret"] not in known]
            if not fresh:
                continue
            states = await client.check_state(Ys=[secret_to_y(p["secret"]) for p in fresh])
            state_by_y = {s["Y"]: s["state"] for s in states["states"]}
            unspent = [p for p in fresh if state_by_y.get(secret_to_y(p["secret"])) == "UNSPENT"]
            pending = [p for p in fresh if state_by_y.get(secret_to_y(p["secret"])) == "PENDING"]
            await self._save_proofs(mint_url, unspent)
            await self._save_proofs(mint_url, pending, state="inflight")
            restored += _sum(unspent)

        logger.info("Restored %d from %s", restored, mint_url)
        return restored

    # ───────────────────────── Mint quotes ─────────────────────────────────

    async def create_mint_quote(self, mint_url: str, amount: int) -> MintQuote:
        """Request a Lightning invoice that mints ``amount`` when paid."""
        await self._require_mint(mint_url)
        response = await self._get_mint(mint_url).create_mint_quote(amount=amount, unit="sat")
        quote = MintQuote(
            quote=response["quote"],
            mintUrl=mint_url,
            amount=response.get("amount", amount),
            state=cast(Any, response.get("state", "UNPAID")),
            expiry=response.get("expiry"),
            request=response["request"],
            unit=response.get("unit", "sat"),
        )
        await self.storage.save_mint_quote(quote)
        await self.events.emit(
            "mint-quote:created", {"mintUrl": mint_url, "quoteId": quote["quote"], "quote": quote}
        )
        return quote

    async def redeem_mint_quote(self, mint_url: str, quote_id: str) -> None:
        """Mint proofs for a paid quote. Does nothing if already issued."""
        quote = await self.storage.get_mint_quote(mint_url, quote_id)
        if quote is None:
            raise QuoteNotFoundError(f"Mint quote {quote_id} not found at {mint_url}")
        if quote["state"] == "ISSUED":
            return
        if not quote["amount"]:
            raise WalletError(f"Mint quote {quote_id} has no amount")

        keyset = await self._active_keyset(mint_url, quote["unit"])
        outputs, secrets = await self._create_outputs(
            mint_url, keyset, split_amount(quote["amount"])
        )
        response = await self._get_mint(mint_url).mint(quote=quote_id, outputs=outputs)
        proofs = self._unblind(response["signatures"], secrets, keyset["keys"])

        await self._save_proofs(mint_url, proofs)
        await self.storage.set_mint_quote_state(mint_url, quote_id, "ISSUED")
        await self.events.emit(
            "mint-quote:state-changed", {"mintUrl": mint_url, "quoteId": quote_id, "state": "ISSUED"}
        )
        await self.events.emit(
            "mint-quote:redeemed", {"mintUrl": mint_url, "quoteId": quote_id, "amount": quote["amount"]}
        )
        await self._record(
            "mint",
            mint_url=mint_url,
            unit=quote["unit"],
            amount=quote["amount"],
            quote_id=quote_id,
            state="ISSUED",
            payment_request=quote["request"],
        )

    # ───────────────────────── Melt quotes ─────────────────────────────────

    async def create_melt_quote(self, mint_url: str, invoice: str) -> MeltQuote:
        """Ask the mint what paying ``invoice`` costs.

        Raises:
            WalletError: If the mint's answer lacks a required field.
        """
        await self._require_mint(mint_url)
        response = await self._get_mint(mint_url).create_melt_quote(invoice, unit="sat")
        missing = {"quote", "amount", "fee_reserve", "expiry"} - response.keys()
        if missing:
            raise WalletError(f"Mint returned incomplete melt quote, missing {sorted(missing)}")

        quote = MeltQuote(
            quote=response["quote"],
            mintUrl=mint_url,
            amount=int(response["amount"]),
            fee_reserve=int(response["fee_reserve"]),
            state=cast(Any, response.get("state", "UNPAID")),
            expiry=int(response["expiry"]),
            request=response.get("request", invoice),
            payment_preimage=None,
            unit=response.get("unit", "sat"),
        )
        await self.storage.save_melt_quote(quote)
        await self.events.emit(
            "melt-quote:created", {"mintUrl": mint_url, "quoteId": quote["quote"], "quote": quote}
        )
        return quote

    async def pay_melt_quote(self, mint_url: str, quote_id: str) -> MeltQuote:
        """Pay a melt quote with ready proofs.

        Blank outputs are attached so the mint can return unused fee reserve
        (NUT-08). A ``PAID`` answer finalizes the melt. ``PENDING`` leaves the
        inputs in flight for the proof state watcher. A mint that rejects the
        melt gets the inputs back to ready. When the request ends without an
        answer the quote is marked ``PENDING`` so the watcher settles it from
        the mint's quote state. A quote that is already ``PAID`` or
        ``PENDING`` is returned as stored.

        Returns:
            The melt quote as updated by the payment.
        """
        quote = await self.storage.get_melt_quote(mint_url, quote_id)
        if quote is None:
            raise QuoteNotFoundError(f"Melt quote {quote_id} not found at {mint_url}")
        if quote["state"] in ("PAID", "PENDING"):
            return quote

        ready = await self.storage.get_proofs(mint_url=mint_url, state="ready")
        fee_rates = await self._fee_rates(mint_url, ready)
        needed = quote["amount"] + quote["fee_reserve"]
        selected = self._select_proofs(ready, needed, fee_rates)
        overpaid = _sum(selected) - calculate_input_fees(selected, fee_rates) - quote["amount"]

        keyset = await self._active_keyset(mint_url, quote["unit"])
        blank_count = blank_outputs_needed(overpaid)
        blanks, blank_secrets = await self._create_outputs(mint_url, keyset, [1] * blank_count)

        await self._set_state(mint_url, selected, "inflight", used_by=quote_id)
        try:
            response = await self._get_mint(mint_url).melt(
                quote=quote_id, inputs=[_strip(p) for p in selected], outputs=blanks
            )
        except MintError as e:
            if e.status_code is not None:
                await self._set_state(mint_url, selected, "ready")
                raise
            logger.warning(
                "Melt of quote %s ended without an answer, waiting for the mint: %s", quote_id, e
            )
            self._pending_change[quote_id] = (keyset["keys"], blank_secrets)
            await self._set_melt_state(quote, "PENDING")
            raise

        state = response.get("state") or ("PAID" if response.get("paid") else "PENDING")
        if state == "PAID":
            return await self._finalize_melt(
                quote,
                response.get("payment_preimage"),
                response.get("change") or [],
                keyset["keys"],
                blank_secrets,
            )
        if state == "PENDING":
            self._pending_change[quote_id] = (keyset["keys"], blank_secrets)
            return await self._set_melt_state(quote, "PENDING")

        await self._set_state(mint_url, selected, "ready")
        await self._set_melt_state(quote, "UNPAID")
        raise WalletError(f"Lightning payment failed, melt quote {quote_id} is {state}")

    async def _set_melt_state(
        self, quote: MeltQuote, state: str, preimage: str | None = None
    ) -> MeltQuote:
        await self.storage.update_melt_quote(
            quote["mintUrl"], quote["quote"], state=state, payment_preimage=preimage
        )
        updated = await self.storage.get_melt_quote(quote["mintUrl"], quote["quote"])
        if updated is None:
            raise QuoteNotFoundError(f"Melt quote {quote['quote']} not found at {quote['mintUrl']}")
        if state != quote["state"]:
            await self.events.emit(
                "melt-quote:state-changed",
                {"mintUrl": quote["mintUrl"], "quoteId": quote["quote"], "state": state},
            )
        return updated

    async def _finalize_melt(
        self,
        quote: MeltQuote,
        preimage: str | None,
        change: list[BlindedSignature],
        keys: dict[str, str],
        blank_secrets: OutputSecrets,
    ) -> MeltQuote:
        mint_url = quote["mintUrl"]
        inputs = await self.storage.get_proofs_used_by(quote["quote"])
        await self._set_state(mint_url, list(inputs), "spent", used_by=quote["quote"])
        await self._save_proofs(mint_url, self._unblind(change, blank_secrets, keys))
        self._pending_change.pop(quote["quote"], None)

        updated = await self._set_melt_state(quote, "PAID", preimage)
        await self.events.emit(
            "melt-quote:paid", {"mintUrl": mint_url, "quoteId": quote["quote"], "amount": quote["amount"]}
        )
        await self._record(
            "melt",
            mint_url=mint_url,
            unit=quote["unit"],
            amount=quote["amount"],
            quote_id=quote["quote"],
            state="PAID",
        )
        return updated

    # ───────────────────────── Background processing ─────────────────────────

    def _start(self, name: str, coro_factory: Callable[[], Any]) -> None:
        if self._closed:
            raise WalletError("Wallet engine is closed")
        if name not in self._tasks:
            self._tasks[name] = asyncio.create_task(coro_factory(), name=name)
            logger.debug("Started %s", name)

    async def _every(self, interval: float, step: Callable[[], Any], label: str) -> None:
        while True:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("%s failed: %s", label, e)
            await asyncio.sleep(interval)

    def enable_mint_quote_watcher(self) -> None:
        """Poll unpaid mint quotes and announce state changes."""
        self._start(
            "mint-quote-watcher",
            lambda: self._every(self.poll_interval, self.check_pending_mint_quotes, "Mint quote poll"),
        )

    def enable_mint_quote_processor(self) -> None:
        """Redeem mint quotes as soon as they are paid."""
        queue = self._redeem_queue
        if queue is None:
            queue = self._redeem_queue = asyncio.Queue()
            self.events.on("mint-quote:state-changed", self._on_mint_quote_state)
        self._start("mint-quote-processor", lambda: self._process_mint_quotes(queue))

    def enable_proof_state_watcher(self) -> None:
        """Track in-flight proofs and pending melts."""
        self._start(
            "proof-state-watcher",
            lambda: self._every(
                self.proof_poll_interval, self.check_inflight_proofs, "Proof state check"
            ),
        )

    async def check_pending_mint_quotes(self) -> None:
        """One polling pass over unpaid mint quotes."""
        for quote in await self.storage.get_mint_quotes_by_state("UNPAID", "PAID"):
            if quote["state"] == "PAID":
                self._enqueue_redeem(quote["mintUrl"], quote["quote"])
                continue
            try:
                response = await self._get_mint(quote["mintUrl"]).get_mint_quote(quote["quote"])
            except MintError as e:
                logger.warning("Could not check mint quote %s: %s", quote["quote"], e)
                continue
            state = response.get("state", quote["state"])
            if state != quote["state"]:
                await self.storage.set_mint_quote_state(quote["mintUrl"], quote["quote"], state)
                await self.events.emit(
                    "mint-quote:state-changed",
                    {"mintUrl": quote["mintUrl"], "quoteId": quote["quote"], "state": state},
                )

    def _on_mint_quote_state(self, payload: dict[str, Any]) -> None:
        if payload.get("state") == "PAID":
            self._enqueue_redeem(payload["mintUrl"], payload["quoteId"])

    def _enqueue_redeem(self, mint_url: str, quote_id: str) -> None:
        """Queue a paid quote for redemption.

        A quote already queued, being redeemed or waiting for a retry is
        skipped, and so is one that ran out of attempts.
        """
        key = (mint_url, quote_id)
        if self._redeem_queue is None or key in self._queued:
            return
        if self._redeem_attempts.get(key, 0) >= MAX_REDEEM_ATTEMPTS:
            return
        self._queued.add(key)
        self._redeem_queue.put_nowait(key)

    async def _process_mint_quotes(self, queue: asyncio.Queue[tuple[str, str]]) -> None:
        loop = asyncio.get_running_loop()
        while True:
            key = await queue.get()
            mint_url, quote_id = key
            try:
                await self.redeem_mint_quote(mint_url, quote_id)
            except Exception as e:
                failures = self._redeem_attempts.get(key, 0) + 1
                self._redeem_attempts[key] = failures
                if failures >= MAX_REDEEM_ATTEMPTS:
                    logger.error(
                        "Giving up on mint quote %s after %d attempts: %s", quote_id, failures, e
                    )
                    self._queued.discard(key)
                    continue
                logger.warning("Redeeming mint quote %s failed, requeueing: %s", quote_id, e)
                await self.events.emit(
                    "mint-quote:requeue",
                    {"mintUrl": mint_url, "quoteId": quote_id, "attempt": failures + 1},
                )
                # Stays in _queued until the retry runs
                loop.call_later(self.poll_interval * failures, queue.put_nowait, key)
            else:
                self._redeem_attempts.pop(key, None)
                self._queued.discard(key)
            finally:
                queue.task_done()

    async def check_inflight_proofs(self) -> None:
        """One pass over pending melts and in-flight proofs.

        Proofs sent to a swap that never answered go back to ready when the
        mint reports them unspent. Spent ones are marked spent; outputs the
        mint signed for them are recovered by ``restore``.
        """
        for quote in await self.storage.get_melt_quotes_by_state("PENDING"):
            await self._resolve_pending_melt(quote)

        inflight = [
            p
            for p in await self.storage.get_proofs(state="inflight")
            if p["usedBy"] in (None, UNCONFIRMED_SWAP)
        ]
        by_mint: dict[str, list[StoredProof]] = {}
        for proof in inflight:
            by_mint.setdefault(proof["mintUrl"], []).append(proof)

        for mint_url, proofs in by_mint.items():
            try:
                response = await self._get_mint(mint_url).check_state(
                    Ys=[secret_to_y(p["secret"]) for p in proofs]
                )
            except MintError as e:
                logger.warning("Could not check proof states at %s: %s", mint_url, e)
                continue
            states = {s["Y"]: s.get("state") for s in response["states"]}
            spent = [p for p in proofs if states.get(secret_to_y(p["secret"])) == "SPENT"]
            unspent = [
                p
                for p in proofs
                if p["usedBy"] == UNCONFIRMED_SWAP
                and states.get(secret_to_y(p["secret"])) == "UNSPENT"
            ]
            await self._set_state(mint_url, list(spent), "spent")
            await self._set_state(mint_url, list(unspent), "ready")
            if any(p["usedBy"] == UNCONFIRMED_SWAP for p in spent):
                logger.info("Unconfirmed swap at %s was spent, restore recovers its outputs", mint_url)

    async def _resolve_pending_melt(self, quote: MeltQuote) -> None:
        try:
            response = await self._get_mint(quote["mintUrl"]).get_melt_quote(quote["quote"])
        except MintError as e:
            logger.warning("Could not check melt quote %s: %s", quote["quote"], e)
            return

        state = response.get("state")
        if state == "PAID":
            # Change is lost if the blank outputs were not kept; restore recovers it
            keys, secrets = self._pending_change.get(quote["quote"], ({}, []))
            change = (response.get("change") or []) if secrets else []
            await self._finalize_melt(
                quote, response.get("payment_preimage"), change, keys, secrets
            )
        elif state == "UNPAID":
            inputs = await self.storage.get_proofs_used_by(quote["quote"])
            await self._set_state(quote["mintUrl"], list(inputs), "ready")
            self._pending_change.pop(quote["quote"], None)
            await self._set_melt_state(quote, "UNPAID")
