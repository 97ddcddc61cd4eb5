"""Wallet tools exposed over MCP.

Arguments are validated once here with pydantic models; handlers receive
already validated parameters and an explicit ``ToolContext``. Every handler
is wrapped so that results come back as JSON text plus structured content,
and coded wallet errors leave as ``"<CODE>: <message>"``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import ServerConfig
from .orchestrator import WalletOrchestrator
from .tokens import encode_token
from .types import ErrorCode, ToolExecutionError, WalletApiError

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


@dataclass(frozen=True)
class ToolContext:
    """Everything a tool handler may use. Built once at start-up."""

    wallet: WalletOrchestrator
    config: ServerConfig


# ──────────────────────────────────────────────────────────────────────────────
# Parameter models
# ──────────────────────────────────────────────────────────────────────────────


class ToolParams(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PayInvoiceParams(ToolParams):
    invoice: str = Field(min_length=1, description="BOLT11 invoice to pay")
    mintUrl: str = Field(min_length=1, description="Mint that pays the invoice")


class MakeInvoiceParams(ToolParams):
    amount: int = Field(ge=0, description="Amount in sats")
    mintUrl: Optional[str] = Field(None, description="Mint URL, defaults to the first trusted mint")


class LookupQuoteParams(ToolParams):
    quoteId: str = Field(min_length=1)
    mintUrl: Optional[str] = None


class ListTransactionsParams(ToolParams):
    limit: int = Field(100, ge=1, description="Maximum number of entries")
    offset: int = Field(0, ge=0, description="Entries to skip, most recent first")


class GetBalanceParams(ToolParams):
    pass


class AddMintParams(ToolParams):
    mintUrl: str
    trusted: Optional[bool] = None


class ListMintsParams(ToolParams):
    filter: Literal["all", "trusted", "untrusted"] = "all"


class MintUrlParams(ToolParams):
    mintUrl: str


class ReceiveCashuParams(ToolParams):
    token: str = Field(min_length=1, description="Encoded Cashu token")


class SendCashuParams(ToolParams):
    amount: int = Field(ge=1, description="Amount in sats")
    mintUrl: Optional[str] = None


# ──────────────────────────────────────────────────────────────────────────────
# Adapter
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolResult:
    """Tool output as JSON text and, for objects, structured content."""

    text: str
    structured: dict[str, Any] | None

    @classmethod
    def from_value(cls, value: Any) -> "ToolResult":
        return cls(
            text=json.dumps(value, indent=2, default=str),
            structured=value if isinstance(value, dict) else None,
        )


Handler = Callable[[P, ToolContext], Awaitable[Any]]
BoundTool = Callable[[dict[str, Any]], Awaitable[ToolResult]]


def _format_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}"
        for err in error.errors()
    )


def create_tool_handler(
    handler: Handler[P],
    context: ToolContext,
    params_model: type[P],
    *,
    transform_result: Callable[[Any], Any] | None = None,
) -> BoundTool:
    """Wrap ``handler`` into a tool taking raw arguments."""

    async def run(arguments: dict[str, Any]) -> ToolResult:
        try:
            params = params_model.model_validate(arguments or {})
        except ValidationError as e:
            raise ToolExecutionError(
                f"{ErrorCode.TOOL_EXECUTION_ERROR.value}: Invalid arguments: "
                f"{_format_validation_error(e)}"
            ) from e

        try:
            result = await handler(params, context)
        except ToolExecutionError:
            raise
        except WalletApiError as e:
            logger.warning("%s: %s", e.code, e.message)
            raise ToolExecutionError(f"{e.code}: {e.message}") from e

        if transform_result is not None:
            result = transform_result(result)
        return ToolResult.from_value(result)

    return run


def create_array_tool_handler(
    handler: Handler[P], context: ToolContext, params_model: type[P], array_key: str
) -> BoundTool:
    """Like ``create_tool_handler`` but wraps a list result under ``array_key``."""
    return create_tool_handler(
        handler, context, params_model, transform_result=lambda result: {array_key: result}
    )


def create_success_tool_handler(
    handler: Handler[P], context: ToolContext, params_model: type[P]
) -> BoundTool:
    """Like ``create_tool_handler`` but always answers ``{"success": true}``."""
    return create_tool_handler(
        handler, context, params_model, transform_result=lambda _: {"success": True}
    )


# ──────────────────────────────────────────────────────────────────────────────
# Handlers
# ──────────────────────────────────────────────────────────────────────────────


async def handle_pay_invoice(params: PayInvoiceParams, context: ToolContext) -> Any:
    wallet = context.wallet
    quote = await wallet.create_melt_quote(params.mintUrl, params.invoice)
    return await wallet.pay_melt_quote(params.mintUrl, quote["quote"])


async def handle_make_invoice(params: MakeInvoiceParams, context: ToolContext) -> Any:
    mint_url = await context.wallet.resolve_mint_url(params.mintUrl)
    return await context.wallet.create_mint_quote(mint_url, params.amount)


async def handle_lookup_quote(params: LookupQuoteParams, context: ToolContext) -> Any:
    mint_url = await context.wallet.resolve_mint_url(params.mintUrl)
    return await context.wallet.check_quote_status(params.quoteId, mint_url)


async def handle_list_transactions(
    params: ListTransactionsParams, context: ToolContext
) -> Any:
    return await context.wallet.list_transactions(limit=params.limit, offset=params.offset)


async def handle_get_balance(params: GetBalanceParams, context: ToolContext) -> Any:
    return await context.wallet.get_balance()


async def handle_add_mint(params: AddMintParams, context: ToolContext) -> Any:
    return await context.wallet.add_mint(params.mintUrl, trusted=params.trusted)


async def handle_list_mints(params: ListMintsParams, context: ToolContext) -> Any:
    return await context.wallet.list_mints(params.filter)


async def handle_trust_mint(params: MintUrlParams, context: ToolContext) -> Any:
    return await context.wallet.trust_mint(params.mintUrl)


async def handle_untrust_mint(params: MintUrlParams, context: ToolContext) -> Any:
    return await context.wallet.untrust_mint(params.mintUrl)


async def handle_remove_mint(params: MintUrlParams, context: ToolContext) -> None:
    await context.wallet.remove_mint(params.mintUrl)


async def handle_receive_cashu(params: ReceiveCashuParams, context: ToolContext) -> Any:
    result = await context.wallet.receive_tokens(params.token)
    return {"success": result["success"]}


async def handle_send_cashu(params: SendCashuParams, context: ToolContext) -> Any:
    result = await context.wallet.send_tokens(params.amount, params.mintUrl)
    return {
        "token": encode_token(result["token"]),
        "amount": result["amount"],
        "mintUrl": result["mintUrl"],
    }


# ──────────────────────────────────────────────────────────────────────────────
# Registry
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolDefinition(Generic[P]):
    name: str
    title: str
    description: str
    params_model: type[P]
    handler: Handler[P]
    array_key: str | None = None
    success_only: bool = False

    def input_schema(self) -> dict[str, Any]:
        return self.params_model.model_json_schema()

    def bind(self, context: ToolContext) -> BoundTool:
        if self.array_key is not None:
            return create_array_tool_handler(
                self.handler, context, self.params_model, self.array_key
            )
        if self.success_only:
            return create_success_tool_handler(self.handler, context, self.params_model)
        return create_tool_handler(self.handler, context, self.params_model)


TOOLS: tuple[ToolDefinition[Any], ...] = (
    ToolDefinition(
        "pay_invoice",
        "Pay Invoice",
        "Pay a BOLT11 invoice using Cashu wallet",
        PayInvoiceParams,
        handle_pay_invoice,
    ),
    ToolDefinition(
        "make_invoice",
        "Make Invoice",
        "Create an invoice for receiving payments",
        MakeInvoiceParams,
        handle_make_invoice,
    ),
    ToolDefinition(
        "lookup_quote",
        "Lookup Quote",
        "Check quote status by quote ID; returns null when the quote is unknown",
        LookupQuoteParams,
        handle_lookup_quote,
    ),
    ToolDefinition(
        "list_transactions",
        "List Transactions",
        "List wallet transactions, most recent first",
        ListTransactionsParams,
        handle_list_transactions,
        array_key="transactions",
    ),
    ToolDefinition(
        "get_balance",
        "Get Balance",
        "Get current wallet balance",
        GetBalanceParams,
        handle_get_balance,
    ),
    ToolDefinition(
        "add_mint",
        "Add Mint",
        "Add a new mint to the wallet",
        AddMintParams,
        handle_add_mint,
    ),
    ToolDefinition(
        "list_mints",
        "List Mints",
        "List all mints with optional filtering by trust status",
        ListMintsParams,
        handle_list_mints,
    ),
    ToolDefinition(
        "trust_mint",
        "Trust Mint",
        "Mark a mint as trusted",
        MintUrlParams,
        handle_trust_mint,
    ),
    ToolDefinition(
        "untrust_mint",
        "Untrust Mint",
        "Mark a mint as untrusted; its proofs and history are kept",
        MintUrlParams,
        handle_untrust_mint,
    ),
    ToolDefinition(
        "remove_mint",
        "Remove Mint",
        "Remove a mint from the wallet",
        MintUrlParams,
        handle_remove_mint,
        success_only=True,
    ),
    ToolDefinition(
        "receive_cashu",
        "Receive Cashu",
        "Receive Cashu tokens into the wallet",
        ReceiveCashuParams,
        handle_receive_cashu,
    ),
    ToolDefinition(
        "send_cashu",
        "Send Cashu",
        "Create a Cashu token to send",
        SendCashuParams,
        handle_send_cashu,
    ),
)


def bind_tools(context: ToolContext) -> dict[str, BoundTool]:
    """Bind every tool to ``context``."""
    return {tool.name: tool.bind(context) for tool in TOOLS}
