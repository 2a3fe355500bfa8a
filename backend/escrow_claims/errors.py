"""
Error taxonomy for the escrow claim engine.

Every error carries a stable ``code`` so surfaces (CLI, HTTP) and the claim
ledger can keep the classification even when the message is generic.
"""


class EscrowEngineError(Exception):
    """Base class for all engine errors."""

    code = "EngineError"
    default_message = "escrow engine error"

    def __init__(self, message=None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self):
        data = {"code": self.code, "message": self.message}
        if self.context:
            data["context"] = {k: str(v) for k, v in self.context.items()}
        return data

    def __repr__(self):
        return f"{type(self).__name__}({self.message!r})"


# ─────────────────────────────────────────────
# Input / registry errors
# ─────────────────────────────────────────────
class UnknownToken(EscrowEngineError):
    code = "UnknownToken"
    default_message = "token is not registered"


class InvalidAmount(EscrowEngineError):
    code = "InvalidAmount"
    default_message = "amount must be a non-negative decimal number"


class MalformedEscrowId(EscrowEngineError):
    code = "MalformedEscrowId"
    default_message = "escrow id is not a valid 32-byte hex identifier"


class EscrowNotFound(EscrowEngineError):
    code = "EscrowNotFound"
    default_message = "escrow not found"


# ─────────────────────────────────────────────
# Eligibility errors
# ─────────────────────────────────────────────
class NotActive(EscrowEngineError):
    code = "NotActive"
    default_message = "escrow or receiver is not active"


class NothingVested(EscrowEngineError):
    code = "NothingVested"
    default_message = "no funds available to claim"


class BelowMinimum(EscrowEngineError):
    code = "BelowMinimum"
    default_message = "amount is below the protocol minimum"


class AboveMaximum(EscrowEngineError):
    code = "AboveMaximum"
    default_message = "amount is above the claimable maximum"


# ─────────────────────────────────────────────
# Transaction errors
# ─────────────────────────────────────────────
class InsufficientBalance(EscrowEngineError):
    code = "InsufficientBalance"
    default_message = "insufficient token balance"


class ApprovalFailed(EscrowEngineError):
    code = "ApprovalFailed"
    default_message = "token approval failed"


class WithdrawalReverted(EscrowEngineError):
    code = "WithdrawalReverted"
    default_message = "transaction failed"


class WalletNotConnected(EscrowEngineError):
    code = "WalletNotConnected"
    default_message = "wallet is not connected"


class WalletRejected(EscrowEngineError):
    code = "WalletRejected"
    default_message = "transaction was rejected by the wallet"


class ConfirmationTimeout(EscrowEngineError):
    code = "ConfirmationTimeout"
    default_message = "timed out waiting for transaction confirmation"


class NetworkUnavailable(EscrowEngineError):
    code = "NetworkUnavailable"
    default_message = "indexer or RPC endpoint is unreachable"


ELIGIBILITY_ERRORS = (NotActive, NothingVested, BelowMinimum, AboveMaximum, InvalidAmount)

ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        UnknownToken, InvalidAmount, MalformedEscrowId, EscrowNotFound,
        NotActive, NothingVested, BelowMinimum, AboveMaximum,
        InsufficientBalance, ApprovalFailed, WithdrawalReverted,
        WalletNotConnected, WalletRejected, ConfirmationTimeout, NetworkUnavailable,
    )
}
