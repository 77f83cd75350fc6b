"""API schemas for role shop endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..roles import (
    CustomRoleAttributes,
    Entitlement,
    HistoryRecord,
    OperationResult,
    RoleApproval,
    SharedEntitlement,
)


class RoleAttributesRequest(BaseModel):
    label: str = Field(min_length=1, max_length=100)
    color: str
    description: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)

    def attributes(self) -> CustomRoleAttributes:
        return CustomRoleAttributes(color=self.color, description=self.description)


class ShareRequest(BaseModel):
    target_account_id: int = Field(alias="targetAccountId")

    model_config = ConfigDict(populate_by_name=True)


class StartAuctionRequest(BaseModel):
    starting_bid: int = Field(alias="startingBid", ge=1)
    duration_days: int = Field(alias="durationDays", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class BidRequest(BaseModel):
    amount: int = Field(ge=1)


class RejectApprovalRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class ForceExtendRequest(BaseModel):
    days: int = Field(default=14, ge=1, le=365)


class ShopConfigUpdateRequest(BaseModel):
    price: Optional[int] = Field(default=None, ge=0)
    maintenance_cost: Optional[int] = Field(default=None, alias="maintenanceCost", ge=0)
    maintenance_interval_days: Optional[int] = Field(default=None, alias="maintenanceIntervalDays", ge=1)
    max_sharing_slots: Optional[int] = Field(default=None, alias="maxSharingSlots", ge=0)
    max_auction_days: Optional[int] = Field(default=None, alias="maxAuctionDays", ge=1)
    slot_refund_rate: Optional[float] = Field(default=None, alias="slotRefundRate", ge=0.0, le=1.0)
    is_enabled: Optional[bool] = Field(default=None, alias="isEnabled")
    max_label_length: Optional[int] = Field(default=None, alias="maxLabelLength", ge=1, le=100)
    banned_labels: Optional[List[str]] = Field(default=None, alias="bannedLabels")
    min_starting_bid: Optional[int] = Field(default=None, alias="minStartingBid", ge=1)

    model_config = ConfigDict(populate_by_name=True)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class OperationResponse(BaseModel):
    success: bool
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: OperationResult) -> "OperationResponse":
        return cls(success=result.success, message=result.message, data=dict(result.data))


class EntitlementListResponse(BaseModel):
    entitlements: List[Entitlement]


class SharedListResponse(BaseModel):
    shared: List[SharedEntitlement]


class MemberRolesResponse(BaseModel):
    account_id: int = Field(alias="accountId")
    owned: List[Entitlement]
    shared: List[SharedEntitlement]

    model_config = ConfigDict(populate_by_name=True)


class HistoryResponse(BaseModel):
    records: List[HistoryRecord]


class ApprovalListResponse(BaseModel):
    approvals: List[RoleApproval]


class HealthResponse(BaseModel):
    is_healthy: bool = Field(alias="isHealthy")
    checks: Dict[str, bool]
    last_tick_completed_at: Optional[datetime] = Field(default=None, alias="lastTickCompletedAt")

    model_config = ConfigDict(populate_by_name=True)
