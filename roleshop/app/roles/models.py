"""Domain models for the custom role shop."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import RoleShopError

_HEX_COLOR = re.compile(r"^#?[0-9a-fA-F]{6}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    if clock is None:
        return _utcnow()
    value = clock()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_label(label: str) -> str:
    """Collapse whitespace so that stored labels compare predictably."""

    return " ".join(label.split())


def label_key(label: str) -> str:
    """Key used for uniqueness checks between labels."""

    return normalize_label(label).casefold()


class EntitlementKind(str, Enum):
    """Kinds of purchasable entitlements."""

    CUSTOM_ROLE = "custom_role"


class EntitlementStatus(str, Enum):
    """Lifecycle state of a purchased slot."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    TRANSFERRING = "transferring"
    SOLD = "sold"


class SharingStatus(str, Enum):
    """Lifecycle state of a sharing grant."""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class HistoryActionType(str, Enum):
    """Audit trail action categories."""

    PURCHASE = "purchase"
    MAINTENANCE_PAID = "maintenance_paid"
    MAINTENANCE_MISSED = "maintenance_missed"
    MAINTENANCE_EXTENDED = "maintenance_extended"
    TRANSFER_STARTED = "transfer_started"
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_CANCELLED = "transfer_cancelled"
    AUCTION_STARTED = "auction_started"
    AUCTION_BID = "auction_bid"
    AUCTION_COMPLETED = "auction_completed"
    AUCTION_CANCELLED = "auction_cancelled"
    SLOT_SOLD = "slot_sold"
    SHARED = "shared"
    UNSHARED = "unshared"
    SUSPENDED = "suspended"
    REACTIVATED = "reactivated"
    ROLE_CREATED = "role_created"
    ROLE_DELETED = "role_deleted"


class ApprovalStatus(str, Enum):
    """Status of a role creation request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ShopItemType(str, Enum):
    """Configurable shop item kinds."""

    CUSTOM_ROLE = "custom_role"


class CustomRoleAttributes(BaseModel):
    """Visual attributes of a custom role."""

    kind: Literal["custom_role"] = "custom_role"
    color: str = Field(description="Hex color in #RRGGBB form")
    description: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(frozen=True)

    @field_validator("color")
    @classmethod
    def _normalize_color(cls, value: str) -> str:
        candidate = value.strip()
        if not _HEX_COLOR.match(candidate):
            raise ValueError("color must be a hex value like #FFAA00")
        return "#" + candidate.lstrip("#").upper()

    @property
    def color_value(self) -> int:
        return int(self.color.lstrip("#"), 16)


class Auction(BaseModel):
    """Auction embedded in an entitlement while it is transferring."""

    start_time: datetime
    end_time: datetime
    starting_bid: int = Field(ge=1)
    current_bid: int = Field(ge=1)
    current_bidder_account_id: Optional[int] = None
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_bounds(self) -> "Auction":
        if self.end_time <= self.start_time:
            raise ValueError("auction end_time must be after start_time")
        if self.current_bid < self.starting_bid:
            raise ValueError("current_bid cannot be below starting_bid")
        return self

    @property
    def has_bidder(self) -> bool:
        return self.current_bidder_account_id is not None

    def is_open(self, now: datetime) -> bool:
        return self.is_active and now < self.end_time


class Entitlement(BaseModel):
    """A purchased custom role slot."""

    id: Optional[int] = None
    owner_account_id: int
    kind: EntitlementKind = EntitlementKind.CUSTOM_ROLE
    status: EntitlementStatus = EntitlementStatus.ACTIVE
    label: str = Field(min_length=1, max_length=100)
    attributes: CustomRoleAttributes
    purchase_price: int = Field(ge=0)
    maintenance_cost: int = Field(ge=0)
    purchase_date: datetime = Field(default_factory=_utcnow)
    last_maintenance_date: Optional[datetime] = None
    next_maintenance_date: Optional[datetime] = None
    external_role_ref: Optional[str] = None
    auction: Optional[Auction] = None
    last_reminder_days: Optional[int] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _auction_matches_status(self) -> "Entitlement":
        if (self.auction is not None) != (self.status == EntitlementStatus.TRANSFERRING):
            raise ValueError("an auction is embedded exactly while the entitlement is transferring")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status == EntitlementStatus.SOLD

    @property
    def label_key(self) -> str:
        return label_key(self.label)

    def is_overdue(self, now: datetime) -> bool:
        return self.next_maintenance_date is not None and self.next_maintenance_date < now


class SharingGrant(BaseModel):
    """Delegation of an entitlement to a non-owner account."""

    id: Optional[int] = None
    entitlement_id: int
    owner_account_id: int
    grantee_account_id: int
    status: SharingStatus = SharingStatus.ACTIVE
    granted_date: datetime = Field(default_factory=_utcnow)
    revoked_date: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class ShopConfig(BaseModel):
    """Administratively managed shop parameters for one item kind."""

    item_type: ShopItemType = ShopItemType.CUSTOM_ROLE
    price: int = Field(ge=0)
    maintenance_cost: Optional[int] = Field(default=None, ge=0)
    maintenance_interval_days: int = Field(default=14, ge=1)
    max_sharing_slots: int = Field(default=2, ge=0)
    max_auction_days: int = Field(default=7, ge=1)
    slot_refund_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    is_enabled: bool = True
    max_label_length: int = Field(default=100, ge=1, le=100)
    banned_labels: Tuple[str, ...] = Field(default_factory=tuple)
    min_starting_bid: int = Field(default=1, ge=1)
    version: int = Field(default=1, ge=1)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def defaults(cls, item_type: ShopItemType = ShopItemType.CUSTOM_ROLE) -> "ShopConfig":
        """Fallback used when no configuration row exists; the shop stays closed."""

        return cls(item_type=item_type, price=0, is_enabled=False)

    @property
    def effective_maintenance_cost(self) -> int:
        return self.price if self.maintenance_cost is None else self.maintenance_cost


class HistoryRecord(BaseModel):
    """Immutable audit trail entry."""

    id: Optional[int] = None
    entitlement_id: Optional[int] = None
    action_type: HistoryActionType
    actor_account_id: int
    counterparty_account_id: Optional[int] = None
    amount: Optional[int] = None
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class RoleApproval(BaseModel):
    """A member's request to create a custom role, pending moderation."""

    id: Optional[int] = None
    account_id: int
    label: str = Field(min_length=1, max_length=100)
    attributes: CustomRoleAttributes
    status: ApprovalStatus = ApprovalStatus.PENDING
    moderator_account_id: Optional[int] = None
    rejection_reason: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class SharedEntitlement(BaseModel):
    """An active grant together with the entitlement it refers to."""

    grant: SharingGrant
    entitlement: Entitlement

    model_config = ConfigDict(frozen=True)


class OperationResult(BaseModel):
    """Structured outcome returned by every caller-facing operation."""

    success: bool
    message: str
    code: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def ok(cls, message: str, **data: Any) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failure(cls, error: RoleShopError) -> "OperationResult":
        return cls(
            success=False,
            message=error.message,
            code=error.code.value,
            data=dict(error.detail or {}),
        )


class RoleStats(BaseModel):
    """Aggregate counts across all entitlements."""

    active: int = 0
    suspended: int = 0
    transferring: int = 0
    sold: int = 0
    active_grants: int = 0
    upcoming_payments: int = 0

    model_config = ConfigDict(frozen=True)


class ReconciliationSummary(BaseModel):
    """Counters describing one reconciliation pass."""

    communities: int = 0
    materialized: int = 0
    granted: int = 0
    revoked: int = 0
    failures: int = 0

    model_config = ConfigDict(frozen=True)


class TickSummary(BaseModel):
    """Outcome of one scheduler tick."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    suspended: int = 0
    auctions_completed: int = 0
    auctions_failed: int = 0
    reconciliation: ReconciliationSummary = Field(default_factory=ReconciliationSummary)
    reminders_sent: int = 0
    history_purged: int = 0
    failures: int = 0

    model_config = ConfigDict(frozen=True)

    @property
    def completed(self) -> bool:
        return self.completed_at is not None


class HealthReport(BaseModel):
    """Reachability of the engine's collaborators."""

    is_healthy: bool
    checks: Dict[str, bool]
    last_tick_completed_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


__all__ = [
    "ApprovalStatus",
    "Auction",
    "CustomRoleAttributes",
    "Entitlement",
    "EntitlementKind",
    "EntitlementStatus",
    "HealthReport",
    "HistoryActionType",
    "HistoryRecord",
    "OperationResult",
    "ReconciliationSummary",
    "RoleApproval",
    "RoleStats",
    "SharedEntitlement",
    "SharingGrant",
    "SharingStatus",
    "ShopConfig",
    "ShopItemType",
    "TickSummary",
    "current_time",
    "label_key",
    "normalize_label",
]
