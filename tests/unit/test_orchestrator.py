"""Unit tests for the wallet orchestrator."""

import pytest

from cashu_mcp.orchestrator import WalletOrchestrator
from cashu_mcp.tokens import encode_token
from cashu_mcp.types import InsufficientBalanceError, Proof, Token, WalletApiError

MINT_A = "https://a.mint.test"
MINT_B = "https://b.mint.test"


class TestInitialization:
    """Test start-up ordering and cleanup."""

    @pytest.mark.asyncio
    async def test_initialize_order(self, orchestrator, fake_storage, engine_recorder):
        assert not orchestrator.is_initialized()
        assert not orchestrator.is_ready()

        await orchestrator.initialize()
        engine = engine_recorder.engine

        assert fake_storage.connected
        assert engine.calls == ["initialize"]
        assert engine.watchers == [
            "mint-quote-watcher",
            "mint-quote-processor",
            "proof-state-watcher",
        ]
        assert orchestrator.events.attached
        assert orchestrator.is_initialized()
        assert orchestrator.is_ready()
        await orchestrator.cleanup()

    @pytest.mark.asyncio
    async def test_initialize_twice(self, orchestrator, engine_recorder):
        await orchestrator.initialize()
        await orchestrator.initialize()

        assert len(engine_recorder.engines) == 1
        await orchestrator.cleanup()

    @pytest.mark.asyncio
    async def test_engine_failure_releases_everything(self, orchestrator, fake_storage, engine_recorder):
        engine_recorder.failures["initialize"] = RuntimeError("seed unavailable")

        with pytest.raises(WalletApiError) as exc_info:
            await orchestrator.initialize()

        assert exc_info.value.code == "WALLET_INIT_FAILED"
        assert "seed unavailable" in exc_info.value.message
        assert engine_recorder.engine.closed
        assert fake_storage.closed
        assert not orchestrator.is_ready()

    @pytest.mark.asyncio
    async def test_storage_failure(self, orchestrator, fake_storage, engine_recorder):
        fake_storage.fail_connect = OSError("read-only file system")

        with pytest.raises(WalletApiError) as exc_info:
            await orchestrator.initialize()

        assert exc_info.value.code == "WALLET_INIT_FAILED"
        assert engine_recorder.engines == []
        assert fake_storage.closed

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, orchestrator, fake_storage, engine_recorder):
        await orchestrator.cleanup()
        await orchestrator.initialize()
        await orchestrator.cleanup()
        await orchestrator.cleanup()

        assert engine_recorder.engine.calls.count("aclose") == 1
        assert fake_storage.closed
        assert not orchestrator.is_initialized()
        assert not orchestrator.events.attached

    @pytest.mark.asyncio
    async def test_engine_close_failure_still_closes_storage(self, orchestrator, fake_storage, engine_recorder):
        engine_recorder.failures["aclose"] = RuntimeError("stuck")
        await orchestrator.initialize()
        await orchestrator.cleanup()
        assert fake_storage.closed

    @pytest.mark.asyncio
    async def test_context_manager(self, wallet_config, fake_storage, engine_recorder):
        async with WalletOrchestrator(
            wallet_config, storage_factory=lambda path: fake_storage, engine_factory=engine_recorder
        ) as wallet:
            assert wallet.is_ready()
        assert fake_storage.closed

    @pytest.mark.asyncio
    async def test_operations_before_initialize(self, orchestrator):
        for call in (
            orchestrator.get_balance(),
            orchestrator.list_mints(),
            orchestrator.send_tokens(10),
            orchestrator.check_quote_status("q", MINT_A),
            orchestrator.list_transactions(),
        ):
            with pytest.raises(WalletApiError) as exc_info:
                await call
            assert exc_info.value.code == "WALLET_NOT_INITIALIZED"

    def test_services_before_initialize(self, orchestrator):
        for name in ("engine", "mints"):
            with pytest.raises(WalletApiError) as exc_info:
                getattr(orchestrator, name)
            assert exc_info.value.code == "WALLET_NOT_INITIALIZED"


class TestBalance:
    """Test balance aggregation."""

    @pytest.mark.asyncio
    async def test_total_and_breakdown(self, wallet):
        wallet.engine.balances = {MINT_A: 100, MINT_B: 250}
        assert await wallet.get_balance() == {
            "total": 350,
            "breakdown": {MINT_A: 100, MINT_B: 250},
        }

    @pytest.mark.asyncio
    async def test_missing_values_count_as_zero(self, wallet):
        wallet.engine.balances = {MINT_A: None, MINT_B: 5}
        result = await wallet.get_balance()
        assert result == {"total": 5, "breakdown": {MINT_A: 0, MINT_B: 5}}

    @pytest.mark.asyncio
    async def test_empty_wallet(self, wallet):
        assert await wallet.get_balance() == {"total": 0, "breakdown": {}}

    @pytest.mark.asyncio
    async def test_engine_failure(self, wallet):
        wallet.engine.failures["get_balances"] = RuntimeError("db gone")
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.get_balance()
        assert exc_info.value.code == "GET_BALANCE_FAILED"
        assert exc_info.value.message == "Failed to get balance: db gone"


class TestMints:
    """Test mint management through the orchestrator."""

    @pytest.mark.asyncio
    async def test_add_and_list(self, wallet):
        await wallet.add_mint(MINT_A, trusted=True)
        await wallet.add_mint(MINT_B)

        result = await wallet.list_mints()
        assert [m["mintUrl"] for m in result["mints"]] == [MINT_A, MINT_B]
        assert (result["total"], result["trusted"], result["untrusted"]) == (2, 1, 1)
        assert await wallet.get_all_trusted_mints() == [MINT_A]
        assert await wallet.get_default_mint() == MINT_A

    @pytest.mark.asyncio
    async def test_add_invalid_url(self, wallet):
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.add_mint("not a url")
        assert exc_info.value.code == "MINT_INVALID_URL"

    @pytest.mark.asyncio
    async def test_add_failure(self, wallet):
        wallet.engine.failures["add_mint"] = ConnectionError("mint offline")
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.add_mint(MINT_A, trusted=True)
        assert exc_info.value.code == "ADD_MINT_FAILED"
        assert exc_info.value.context == {"mintUrl": MINT_A, "trusted": True}
        assert "mint offline" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_ensure_default_mint_is_best_effort(self, wallet):
        wallet.engine.failures["add_mint"] = ConnectionError("mint offline")
        assert await wallet.ensure_default_mint(MINT_A) is None

    @pytest.mark.asyncio
    async def test_ensure_default_mint_trusts(self, wallet):
        info = await wallet.ensure_default_mint(MINT_A)
        assert info == {"mintUrl": MINT_A, "trusted": True, "lastChecked": 1_700_000_100}

    @pytest.mark.asyncio
    async def test_trust_unknown_mint(self, wallet):
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.trust_mint(MINT_A)
        assert exc_info.value.code == "MINT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_untrust_keeps_mint(self, wallet):
        await wallet.add_mint(MINT_A, trusted=True)
        info = await wallet.untrust_mint(MINT_A)

        assert info["trusted"] is False
        assert (await wallet.list_mints("untrusted"))["total"] == 1

    @pytest.mark.asyncio
    async def test_removing_only_trusted_mint(self, wallet):
        await wallet.add_mint(MINT_A, trusted=True)
        await wallet.remove_mint(MINT_A)

        assert (await wallet.list_mints())["total"] == 0
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.send_tokens(10)
        assert exc_info.value.code == "NO_TRUSTED_MINTS"

    @pytest.mark.asyncio
    async def test_trailing_slash_urls(self, wallet):
        await wallet.add_mint("https://mint.test/", trusted=True)
        await wallet.untrust_mint("https://mint.test/")
        await wallet.trust_mint("https://mint.test/")
        assert await wallet.get_default_mint() == "https://mint.test"

        quote = await wallet.create_mint_quote("https://mint.test/", 10)
        assert quote["mintUrl"] == "https://mint.test"
        assert await wallet.check_quote_status(quote["quote"], "https://mint.test/") == quote

        await wallet.remove_mint("https://mint.test/")
        assert (await wallet.list_mints())["total"] == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_mint(self, wallet):
        await wallet.remove_mint(MINT_A)


class TestTokens:
    """Test sending and receiving."""

    @pytest.mark.asyncio
    async def test_send_uses_default_mint(self, wallet):
        await wallet.add_mint(MINT_B)
        await wallet.add_mint(MINT_A, trusted=True)

        result = await wallet.send_tokens(21)

        assert result["mintUrl"] == MINT_A
        assert result["amount"] == 21
        assert result["token"]["mint"] == MINT_A

    @pytest.mark.asyncio
    async def test_send_with_explicit_mint(self, wallet):
        result = await wallet.send_tokens(5, MINT_B)
        assert result["mintUrl"] == MINT_B

    @pytest.mark.asyncio
    async def test_send_insufficient_balance(self, wallet):
        wallet.engine.failures["send"] = InsufficientBalanceError("need 10, have 3")
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.send_tokens(10, MINT_A)
        assert exc_info.value.code == "INSUFFICIENT_BALANCE"

    @pytest.mark.asyncio
    async def test_send_failure(self, wallet):
        wallet.engine.failures["send"] = RuntimeError("swap rejected")
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.send_tokens(10, MINT_A)
        assert exc_info.value.code == "SEND_CASHU_FAILED"

    @pytest.mark.asyncio
    async def test_receive(self, wallet):
        token = Token(
            mint=MINT_A,
            unit="sat",
            proofs=[Proof(id="009a1f293253e41e", amount=8, secret="s", C="02" + "ab" * 32)],
            memo=None,
        )
        assert await wallet.receive_tokens(encode_token(token)) == {"success": True}

    @pytest.mark.asyncio
    async def test_receive_invalid_token(self, wallet):
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.receive_tokens("cashuXnope")
        assert exc_info.value.code == "INVALID_TOKEN"
        assert exc_info.value.context == {"tokenLength": 10}

    @pytest.mark.asyncio
    async def test_restore_all_trusted_mints(self, wallet):
        await wallet.add_mint(MINT_A, trusted=True)
        await wallet.add_mint(MINT_B, trusted=True)
        wallet.engine.restored = {MINT_A: 40}

        assert await wallet.restore() == {MINT_A: 40, MINT_B: 0}
        assert await wallet.restore(MINT_B) == {MINT_B: 0}


class TestQuotesAndHistory:
    """Test quote lookups and history."""

    @pytest.mark.asyncio
    async def test_quote_lifecycle(self, wallet):
        mint_quote = await wallet.create_mint_quote(MINT_A, 100)
        melt_quote = await wallet.create_melt_quote(MINT_A, "lnbc1000n1invoice")

        assert await wallet.check_quote_status(mint_quote["quote"], MINT_A) == mint_quote
        assert await wallet.check_quote_status(melt_quote["quote"], MINT_A) == melt_quote
        assert await wallet.check_quote_status("unknown", MINT_A) is None

        paid = await wallet.pay_melt_quote(MINT_A, melt_quote["quote"])
        assert paid["state"] == "PAID"

        await wallet.redeem_mint_quote(MINT_A, mint_quote["quote"])
        assert "redeem_mint_quote" in wallet.engine.calls

    @pytest.mark.asyncio
    async def test_quote_failure_code(self, wallet):
        wallet.engine.failures["create_mint_quote"] = RuntimeError("mint offline")
        with pytest.raises(WalletApiError) as exc_info:
            await wallet.create_mint_quote(MINT_A, 100)
        assert exc_info.value.code == "CREATE_MINT_QUOTE_FAILED"

    @pytest.mark.asyncio
    async def test_list_transactions(self, wallet):
        wallet.engine.history = [{"id": str(i), "type": "receive", "amount": i} for i in range(5)]

        assert [e["id"] for e in await wallet.list_transactions(limit=2, offset=1)] == ["1", "2"]
        assert await wallet.list_transactions(offset=10) == []

    @pytest.mark.asyncio
    async def test_get_transaction(self, wallet):
        wallet.engine.history = [
            {"id": "3", "type": "send", "amount": 1},
            {"id": "2", "type": "melt", "quoteId": "q-2", "amount": 5},
            {"id": "1", "type": "mint", "quoteId": "q-1", "amount": 9},
        ]

        assert (await wallet.get_transaction("q-1"))["id"] == "1"
        assert (await wallet.get_transaction("q-2"))["type"] == "melt"
        assert await wallet.get_transaction("q-3") is None
