"""API routes exposing the custom role shop."""
from __future__ import annotations

import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Response, status

from ... import app_context
from ..roles import ErrorCode, OperationResult, ReconciliationSummary, RoleStats, ShopConfig, TickSummary
from ..roles.exceptions import status_code_for
from ..schemas.roleshop import (
    ApprovalListResponse,
    BidRequest,
    EntitlementListResponse,
    ForceExtendRequest,
    HealthResponse,
    HistoryResponse,
    MemberRolesResponse,
    OperationResponse,
    RejectApprovalRequest,
    RoleAttributesRequest,
    ShareRequest,
    SharedListResponse,
    ShopConfigUpdateRequest,
    StartAuctionRequest,
)
from ..services.roleshop import get_role_shop_service

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _require_admin(current_user=Depends(_get_current_user)):
    if not getattr(current_user, "is_admin", False):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")
    return current_user


def _respond(result: OperationResult) -> OperationResponse:
    if result.success:
        return OperationResponse.from_result(result)
    try:
        code = ErrorCode(result.code)
    except ValueError:
        code = ErrorCode.INVALID_STATE
    detail: Dict[str, Any] = {"error": code.value, "message": result.message}
    detail.update({key: value for key, value in result.data.items() if isinstance(value, (int, str, list))})
    raise HTTPException(status_code=status_code_for(code), detail=detail)


router = APIRouter(prefix="/api/roles", tags=["roles"])


@router.post("/purchase", response_model=OperationResponse)
def purchase_role(
    payload: RoleAttributesRequest,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.purchase(current_user.id, payload.label, payload.attributes()))


@router.post("/{entitlement_id}/maintenance", response_model=OperationResponse)
def pay_maintenance(
    entitlement_id: int,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.pay_maintenance(current_user.id, entitlement_id))


@router.post("/{entitlement_id}/sell", response_model=OperationResponse)
def sell_role(
    entitlement_id: int,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.sell_slot(current_user.id, entitlement_id))


@router.post("/{entitlement_id}/share", response_model=OperationResponse)
def share_role(
    entitlement_id: int,
    payload: ShareRequest,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.share(current_user.id, entitlement_id, payload.target_account_id))


@router.delete("/{entitlement_id}/share/{target_account_id}", response_model=OperationResponse)
def unshare_role(
    entitlement_id: int,
    target_account_id: int,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.unshare(current_user.id, entitlement_id, target_account_id))


@router.post("/{entitlement_id}/auction", response_model=OperationResponse)
def start_auction(
    entitlement_id: int,
    payload: StartAuctionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(
        service.start_auction(current_user.id, entitlement_id, payload.starting_bid, payload.duration_days)
    )


@router.post("/{entitlement_id}/bids", response_model=OperationResponse)
def place_bid(
    entitlement_id: int,
    payload: BidRequest,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.place_bid(current_user.id, entitlement_id, payload.amount))


@router.get("/owned", response_model=EntitlementListResponse)
def list_owned(*, current_user=Depends(_get_current_user)) -> EntitlementListResponse:
    service = get_role_shop_service()
    return EntitlementListResponse(entitlements=service.list_owned(current_user.id))


@router.get("/shared", response_model=SharedListResponse)
def list_shared(*, current_user=Depends(_get_current_user)) -> SharedListResponse:
    service = get_role_shop_service()
    return SharedListResponse(shared=service.list_shared(current_user.id))


@router.get("/auctions", response_model=EntitlementListResponse)
def list_auctions(*, current_user=Depends(_get_current_user)) -> EntitlementListResponse:
    service = get_role_shop_service()
    return EntitlementListResponse(entitlements=service.list_active_auctions())


@router.get("/history", response_model=HistoryResponse)
def get_history(
    limit: int = Query(50, ge=1, le=200),
    *,
    current_user=Depends(_get_current_user),
) -> HistoryResponse:
    service = get_role_shop_service()
    return HistoryResponse(records=list(service.get_history(current_user.id, limit)))


@router.post("/requests", response_model=OperationResponse)
def create_role_request(
    payload: RoleAttributesRequest,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.create_role_request(current_user.id, payload.label, payload.attributes()))


@router.get("/requests", response_model=ApprovalListResponse)
def list_own_requests(*, current_user=Depends(_get_current_user)) -> ApprovalListResponse:
    service = get_role_shop_service()
    return ApprovalListResponse(approvals=service.list_pending_approvals(current_user.id))


@router.delete("/requests/{approval_id}", response_model=OperationResponse)
def cancel_role_request(
    approval_id: int,
    *,
    current_user=Depends(_get_current_user),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.cancel_role_request(current_user.id, approval_id))


@router.get("/health", response_model=HealthResponse)
def health(response: Response) -> HealthResponse:
    report = get_role_shop_service().health_check()
    if not report.is_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        is_healthy=report.is_healthy,
        checks=report.checks,
        last_tick_completed_at=report.last_tick_completed_at,
    )


@router.get("/admin/config", response_model=ShopConfig)
def get_config(*, current_user=Depends(_require_admin)) -> ShopConfig:
    return get_role_shop_service().get_config()


@router.patch("/admin/config", response_model=OperationResponse)
def update_config(
    payload: ShopConfigUpdateRequest,
    *,
    current_user=Depends(_require_admin),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.update_config(current_user.id, payload.changes()))


@router.get("/admin/stats", response_model=RoleStats)
def get_stats(*, current_user=Depends(_require_admin)) -> RoleStats:
    return get_role_shop_service().get_stats()


@router.get("/admin/accounts/{account_id}/roles", response_model=MemberRolesResponse)
def get_member_roles(account_id: int, *, current_user=Depends(_require_admin)) -> MemberRolesResponse:
    service = get_role_shop_service()
    return MemberRolesResponse(
        account_id=account_id,
        owned=service.list_owned(account_id),
        shared=service.list_shared(account_id),
    )


@router.post("/admin/entitlements/{entitlement_id}/extend", response_model=OperationResponse)
def force_extend(
    entitlement_id: int,
    payload: ForceExtendRequest,
    *,
    current_user=Depends(_require_admin),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.force_extend(current_user.id, entitlement_id, payload.days))


@router.post("/admin/sync", response_model=ReconciliationSummary)
def force_sync(*, current_user=Depends(_require_admin)) -> ReconciliationSummary:
    return get_role_shop_service().force_sync_all()


@router.post("/admin/tick", response_model=TickSummary)
def run_tick(*, current_user=Depends(_require_admin)) -> TickSummary:
    return get_role_shop_service().run_maintenance_tick()


@router.get("/admin/approvals", response_model=ApprovalListResponse)
def list_pending_approvals(*, current_user=Depends(_require_admin)) -> ApprovalListResponse:
    return ApprovalListResponse(approvals=get_role_shop_service().list_pending_approvals())


@router.post("/admin/approvals/{approval_id}/approve", response_model=OperationResponse)
def approve_request(
    approval_id: int,
    *,
    current_user=Depends(_require_admin),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.approve_role(approval_id, current_user.id))


@router.post("/admin/approvals/{approval_id}/reject", response_model=OperationResponse)
def reject_request(
    approval_id: int,
    payload: RejectApprovalRequest,
    *,
    current_user=Depends(_require_admin),
) -> OperationResponse:
    service = get_role_shop_service()
    return _respond(service.reject_role(approval_id, current_user.id, payload.reason))


@router.get("/admin/approvals/stats")
def approval_stats(*, current_user=Depends(_require_admin)) -> Dict[str, int]:
    return get_role_shop_service().approval_stats()


@router.post("/admin/history/purge")
def purge_history(*, current_user=Depends(_require_admin)) -> Dict[str, int]:
    return {"purged": get_role_shop_service().purge_history()}
