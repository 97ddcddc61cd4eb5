"""Type definitions and errors for the cashu-mcp wallet server."""

from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, Literal, TypedDict, Union


# ──────────────────────────────────────────────────────────────────────────────
# Engine exceptions
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors."""


class MintError(WalletError):
    """Raised when a mint rejects a request or cannot be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InsufficientBalanceError(WalletError):
    """Raised when the proofs of a mint cannot cover an amount."""


class MintNotFoundError(WalletError):
    """Raised when a mint URL is not known to the wallet."""


class MintNotTrustedError(WalletError):
    """Raised when an operation needs a trusted mint."""


class TokenError(WalletError):
    """Raised for malformed or unsupported Cashu tokens."""


class QuoteNotFoundError(WalletError):
    """Raised when a stored quote is missing."""


# ──────────────────────────────────────────────────────────────────────────────
# Wallet API errors
# ──────────────────────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Machine-readable error kinds surfaced by the wallet API."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    WALLET_NOT_INITIALIZED = "WALLET_NOT_INITIALIZED"
    WALLET_INIT_FAILED = "WALLET_INIT_FAILED"
    SERVICE_NOT_INITIALIZED = "SERVICE_NOT_INITIALIZED"
    SERVICE_NOT_READY = "SERVICE_NOT_READY"
    NO_TRUSTED_MINTS = "NO_TRUSTED_MINTS"
    MINT_NOT_TRUSTED = "MINT_NOT_TRUSTED"
    MINT_NOT_FOUND = "MINT_NOT_FOUND"
    MINT_INVALID_URL = "MINT_INVALID_URL"
    MINT_ALREADY_EXISTS = "MINT_ALREADY_EXISTS"
    MINT_ADD_FAILED = "MINT_ADD_FAILED"
    MINT_TRUST_FAILED = "MINT_TRUST_FAILED"
    MINT_UNTRUST_FAILED = "MINT_UNTRUST_FAILED"
    MINT_REMOVE_FAILED = "MINT_REMOVE_FAILED"
    MINT_LIST_FAILED = "MINT_LIST_FAILED"
    RECEIVE_CASHU_FAILED = "RECEIVE_CASHU_FAILED"
    SEND_CASHU_FAILED = "SEND_CASHU_FAILED"
    INVALID_TOKEN = "INVALID_TOKEN"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    # Generic `<OPERATION>_FAILED` wrapper
    OPERATION_FAILED = "OPERATION_FAILED"


# Codes that already describe the final outcome and are never re-wrapped
TERMINAL_CODES = frozenset(
    {
        ErrorCode.WALLET_NOT_INITIALIZED,
        ErrorCode.SERVICE_NOT_INITIALIZED,
        ErrorCode.SERVICE_NOT_READY,
        ErrorCode.NO_TRUSTED_MINTS,
        ErrorCode.MINT_NOT_TRUSTED,
        ErrorCode.MINT_NOT_FOUND,
        ErrorCode.MINT_INVALID_URL,
        ErrorCode.MINT_ALREADY_EXISTS,
        ErrorCode.INVALID_TOKEN,
        ErrorCode.INSUFFICIENT_BALANCE,
    }
)


class WalletApiError(Exception):
    """Structured wallet API error.

    The code, operation and context are kept as data; the message is only
    rendered when the error is turned into a string.

    Args:
        code: Machine-readable code, either an ``ErrorCode`` or a generic
            ``<OPERATION>_FAILED`` string.
        message: Human readable description. When omitted it is rendered
            from ``operation``, ``context`` and the cause.
        operation: Name of the operation that failed.
        context: Parameter names and values of the failing call.
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str | None = None,
        *,
        operation: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.operation = operation
        self.context = dict(context or {})
        self._message = message
        super().__init__(code, message)

    @property
    def kind(self) -> ErrorCode:
        try:
            return ErrorCode(self.code)
        except ValueError:
            return ErrorCode.OPERATION_FAILED

    @property
    def message(self) -> str:
        if self._message is not None:
            return self._message
        parts = [f"Failed to {self.operation or 'complete operation'}"]
        if self.context:
            rendered = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f" ({rendered})")
        if self.__cause__ is not None:
            parts.append(f": {self.__cause__}")
        return "".join(parts)

    def __str__(self) -> str:
        return self.message


class ToolExecutionError(WalletApiError):
    """Raised at the tool boundary; the message carries the leading code."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.TOOL_EXECUTION_ERROR, message)


def failure_code(operation: str) -> str:
    """Build the generic failure code for an operation label.

    Example:
        failure_code("get balance") == "GET_BALANCE_FAILED"
    """
    return "_".join(operation.upper().replace("-", " ").split()) + "_FAILED"


_OPERATION_CODES: dict[str, ErrorCode | str] = {
    "add mint": "ADD_MINT_FAILED",
    "trust mint": ErrorCode.MINT_TRUST_FAILED,
    "untrust mint": ErrorCode.MINT_UNTRUST_FAILED,
    "remove mint": ErrorCode.MINT_REMOVE_FAILED,
    "list mints": ErrorCode.MINT_LIST_FAILED,
    "receive cashu": ErrorCode.RECEIVE_CASHU_FAILED,
    "send cashu": ErrorCode.SEND_CASHU_FAILED,
}

_ENGINE_ERROR_CODES: tuple[tuple[type[Exception], ErrorCode], ...] = (
    (InsufficientBalanceError, ErrorCode.INSUFFICIENT_BALANCE),
    (MintNotFoundError, ErrorCode.MINT_NOT_FOUND),
    (MintNotTrustedError, ErrorCode.MINT_NOT_TRUSTED),
    (TokenError, ErrorCode.INVALID_TOKEN),
)


def wrap_error(
    error: Exception, operation: str, context: dict[str, Any] | None = None
) -> WalletApiError:
    """Classify ``error`` raised while running ``operation``.

    Terminal API errors are returned unchanged. Known engine errors get
    their own code, anything else the operation's failure code. The result
    keeps ``error`` as its cause.
    """
    if isinstance(error, WalletApiError) and error.kind in TERMINAL_CODES:
        return error

    code: ErrorCode | str = _OPERATION_CODES.get(operation) or failure_code(operation)
    for error_type, engine_code in _ENGINE_ERROR_CODES:
        if isinstance(error, error_type):
            code = engine_code
            break

    wrapped = WalletApiError(code, operation=operation, context=context)
    wrapped.__cause__ = error
    return wrapped


@contextmanager
def service_errors(operation: str, **context: Any) -> Iterator[None]:
    """Re-raise any error in the block as a classified ``WalletApiError``.

    Example:
        with service_errors("send cashu", amount=amount, mintUrl=mint_url):
            token = await engine.send(mint_url, amount)
    """
    try:
        yield
    except Exception as e:
        wrapped = wrap_error(e, operation, context)
        if wrapped is e:
            raise
        raise wrapped from e


# ──────────────────────────────────────────────────────────────────────────────
# Cashu primitives
# ──────────────────────────────────────────────────────────────────────────────


class Proof(TypedDict):
    """Unblinded ecash proof as defined in NUT-00."""

    id: str
    amount: int
    secret: str
    C: str


class BlindedMessage(TypedDict):
    """Blinded output sent to the mint."""

    amount: int
    id: str  # keyset ID
    B_: str  # hex encoded blinded message


class BlindedSignature(TypedDict):
    """Blinded signature returned by the mint."""

    amount: int
    id: str  # keyset ID
    C_: str  # hex encoded blinded signature


class Token(TypedDict):
    """Decoded bearer token (single mint)."""

    mint: str
    unit: str
    proofs: list[Proof]
    memo: str | None


ProofState = Literal["ready", "inflight", "spent"]


# ──────────────────────────────────────────────────────────────────────────────
# Wallet records
# ──────────────────────────────────────────────────────────────────────────────


class Mint(TypedDict):
    """Stored mint row."""

    mintUrl: str
    name: str | None
    trusted: bool
    createdAt: int
    updatedAt: int


class Keyset(TypedDict):
    """Cached keyset of a mint."""

    id: str
    mintUrl: str
    unit: str
    active: bool
    input_fee_ppk: int
    keys: dict[str, str]  # amount -> pubkey


MintQuoteState = Literal["UNPAID", "PAID", "ISSUED"]
MeltQuoteState = Literal["UNPAID", "PENDING", "PAID"]


class MintQuote(TypedDict):
    """Pending or completed request to receive funds over Lightning."""

    quote: str
    mintUrl: str
    amount: int | None
    state: MintQuoteState
    expiry: int | None
    request: str
    unit: str


class MeltQuote(TypedDict):
    """Pending or completed request to pay a Lightning invoice.

    Every field is populated when the quote is created; only
    ``payment_preimage`` stays ``None`` until the payment settles.
    """

    quote: str
    mintUrl: str
    amount: int
    fee_reserve: int
    state: MeltQuoteState
    expiry: int
    request: str
    payment_preimage: str | None
    unit: str


class _HistoryBase(TypedDict):
    id: str
    createdAt: int
    mintUrl: str
    unit: str
    amount: int


class MintHistoryEntry(_HistoryBase):
    type: Literal["mint"]
    quoteId: str
    paymentRequest: str
    state: MintQuoteState


class MeltHistoryEntry(_HistoryBase):
    type: Literal["melt"]
    quoteId: str
    state: MeltQuoteState


class SendHistoryEntry(_HistoryBase):
    type: Literal["send"]
    token: Token | None


class ReceiveHistoryEntry(_HistoryBase):
    type: Literal["receive"]


HistoryEntry = Union[
    MintHistoryEntry, MeltHistoryEntry, SendHistoryEntry, ReceiveHistoryEntry
]


# ──────────────────────────────────────────────────────────────────────────────
# Wallet API results
# ──────────────────────────────────────────────────────────────────────────────


class BalanceResult(TypedDict):
    total: int
    breakdown: dict[str, int]


class MintInfo(TypedDict):
    """Mint projection returned to callers."""

    mintUrl: str
    trusted: bool
    lastChecked: int | None


class MintsListResult(TypedDict):
    mints: list[MintInfo]
    total: int
    trusted: int
    untrusted: int


class SendResult(TypedDict):
    token: Token
    amount: int
    mintUrl: str


class ReceiveResult(TypedDict):
    success: bool


MintFilter = Literal["all", "trusted", "untrusted"]
