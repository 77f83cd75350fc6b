"""Errors raised by role shop operations."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class ErrorCode(str, Enum):
    """Machine readable reasons an operation was rejected."""

    UNKNOWN_ENTITLEMENT = "unknown_entitlement"
    UNKNOWN_ACCOUNT = "unknown_account"
    NOT_OWNER = "not_owner"
    INVALID_STATE = "invalid_state"
    LABEL_TAKEN = "label_taken"
    INVALID_LABEL = "invalid_label"
    SHOP_DISABLED = "shop_disabled"
    SLOT_LIMIT_REACHED = "slot_limit_reached"
    ALREADY_SHARED = "already_shared"
    NOT_SHARED = "not_shared"
    SELF_TARGET = "self_target"
    INVALID_AMOUNT = "invalid_amount"
    AUCTION_TOO_LONG = "auction_too_long"
    AUCTION_CLOSED = "auction_closed"
    BID_TOO_LOW = "bid_too_low"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SETTLEMENT_FAILED = "settlement_failed"
    APPROVAL_PENDING = "approval_pending"
    UNKNOWN_APPROVAL = "unknown_approval"
    APPROVAL_PROCESSED = "approval_processed"
    FORBIDDEN = "forbidden"
    INVALID_CONFIG = "invalid_config"


_STATUS_BY_CODE = {
    ErrorCode.UNKNOWN_ENTITLEMENT: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNKNOWN_ACCOUNT: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNKNOWN_APPROVAL: status.HTTP_404_NOT_FOUND,
    ErrorCode.NOT_OWNER: status.HTTP_403_FORBIDDEN,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.INVALID_LABEL: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.AUCTION_TOO_LONG: status.HTTP_400_BAD_REQUEST,
    ErrorCode.SELF_TARGET: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_CONFIG: status.HTTP_400_BAD_REQUEST,
}


def status_code_for(code: ErrorCode) -> int:
    """HTTP status used when surfacing ``code`` to API callers."""

    return _STATUS_BY_CODE.get(code, status.HTTP_409_CONFLICT)


@dataclass(eq=False)
class RoleShopError(Exception):
    """An expected, user-facing rejection of a role shop operation."""

    code: ErrorCode
    message: str
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code.value, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    @property
    def status_code(self) -> int:
        return status_code_for(self.code)

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class InsufficientFundsError(RoleShopError):
    """Raised when a ledger debit cannot be covered by the account balance."""

    def __init__(self, *, balance: int, required: int, message: Optional[str] = None) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            code=ErrorCode.INSUFFICIENT_FUNDS,
            message=message or f"Insufficient funds: {required} required, balance is {balance}",
            detail={"balance": balance, "required": required},
        )


__all__ = ["ErrorCode", "InsufficientFundsError", "RoleShopError", "status_code_for"]
