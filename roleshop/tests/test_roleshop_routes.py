from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi import HTTPException, Response

from roleshop.app.role_sync import RoleReconciler
from roleshop.app.routes import roleshop as roleshop_routes
from roleshop.app.roles import (
    InMemoryRoleShopStore,
    RoleStats,
    ShopConfig,
    ShopItemType,
    build_role_shop_service,
    load_role_shop_settings,
)
from roleshop.app.schemas.roleshop import (
    BidRequest,
    EntitlementListResponse,
    ForceExtendRequest,
    HealthResponse,
    MemberRolesResponse,
    OperationResponse,
    RejectApprovalRequest,
    RoleAttributesRequest,
    ShareRequest,
    ShopConfigUpdateRequest,
    StartAuctionRequest,
)
from roleshop.app.services.roleshop import LoggingRoleShopNotifier, SandboxRoleSyncAdapter


def _fixed_clock() -> datetime:
    return datetime(2024, 10, 1, tzinfo=timezone.utc)


@pytest.fixture
def store(monkeypatch) -> InMemoryRoleShopStore:
    store = InMemoryRoleShopStore()
    store.configs[ShopItemType.CUSTOM_ROLE] = ShopConfig(price=200, maintenance_cost=20)
    for account_id in (1, 2, 3):
        store.open_account(account_id, 1000)
    adapter = SandboxRoleSyncAdapter()
    service = build_role_shop_service(
        store=store,
        synchronizer_factory=lambda s: RoleReconciler(store=s, adapter=adapter, directory=s),
        notifier=LoggingRoleShopNotifier(),
        settings=load_role_shop_settings({}),
        clock=_fixed_clock,
    )
    monkeypatch.setattr(roleshop_routes, "get_role_shop_service", lambda: service)
    return store


def _purchase(user, label: str = "Gold") -> OperationResponse:
    payload = RoleAttributesRequest(label=label, color="#FFD700")
    return roleshop_routes.purchase_role(payload, current_user=user)


def test_purchase_returns_operation_response(store):
    user = SimpleNamespace(id=1, is_admin=False)

    response = _purchase(user)

    assert isinstance(response, OperationResponse)
    assert response.success is True
    assert response.data["balance"] == 800
    assert response.data["entitlement"].label == "Gold"


def test_rejected_operation_maps_to_http_error(store):
    user = SimpleNamespace(id=1, is_admin=False)
    _purchase(user)

    with pytest.raises(HTTPException) as exc:
        _purchase(SimpleNamespace(id=2, is_admin=False), label="gold")

    assert exc.value.status_code == 409
    assert exc.value.detail["error"] == "label_taken"


def test_insufficient_funds_surface_balance(store):
    store.balances[3] = 50

    with pytest.raises(HTTPException) as exc:
        _purchase(SimpleNamespace(id=3, is_admin=False))

    assert exc.value.status_code == 402
    assert exc.value.detail["balance"] == 50
    assert exc.value.detail["required"] == 200


def test_not_owner_is_forbidden(store):
    owner = SimpleNamespace(id=1, is_admin=False)
    entitlement = _purchase(owner).data["entitlement"]

    with pytest.raises(HTTPException) as exc:
        roleshop_routes.sell_role(entitlement.id, current_user=SimpleNamespace(id=2, is_admin=False))

    assert exc.value.status_code == 403
    assert exc.value.detail["error"] == "not_owner"


def test_share_and_list_shared(store):
    owner = SimpleNamespace(id=1, is_admin=False)
    grantee = SimpleNamespace(id=2, is_admin=False)
    entitlement = _purchase(owner).data["entitlement"]

    roleshop_routes.share_role(entitlement.id, ShareRequest(targetAccountId=2), current_user=owner)
    shared = roleshop_routes.list_shared(current_user=grantee)

    assert [item.entitlement.id for item in shared.shared] == [entitlement.id]

    roleshop_routes.unshare_role(entitlement.id, 2, current_user=owner)
    assert roleshop_routes.list_shared(current_user=grantee).shared == []


def test_auction_flow_through_routes(store):
    owner = SimpleNamespace(id=1, is_admin=False)
    bidder = SimpleNamespace(id=2, is_admin=False)
    entitlement = _purchase(owner).data["entitlement"]

    roleshop_routes.start_auction(
        entitlement.id,
        StartAuctionRequest(startingBid=50, durationDays=2),
        current_user=owner,
    )
    roleshop_routes.place_bid(entitlement.id, BidRequest(amount=75), current_user=bidder)
    auctions = roleshop_routes.list_auctions(current_user=bidder)

    assert isinstance(auctions, EntitlementListResponse)
    assert auctions.entitlements[0].auction.current_bid == 75
    with pytest.raises(HTTPException) as exc:
        roleshop_routes.place_bid(entitlement.id, BidRequest(amount=60), current_user=bidder)
    assert exc.value.detail["error"] == "bid_too_low"


def test_owned_and_history(store):
    owner = SimpleNamespace(id=1, is_admin=False)
    _purchase(owner)
    roleshop_routes.pay_maintenance(1, current_user=owner)

    owned = roleshop_routes.list_owned(current_user=owner)
    history = roleshop_routes.get_history(limit=10, current_user=owner)

    assert [e.label for e in owned.entitlements] == ["Gold"]
    assert [r.action_type.value for r in history.records] == ["maintenance_paid", "purchase"]


def test_role_request_lifecycle(store):
    member = SimpleNamespace(id=1, is_admin=False)
    admin = SimpleNamespace(id=3, is_admin=True)

    created = roleshop_routes.create_role_request(
        RoleAttributesRequest(label="Painter", color="#112233"),
        current_user=member,
    )
    approval_id = created.data["approval"].id
    assert [a.id for a in roleshop_routes.list_own_requests(current_user=member).approvals] == [approval_id]

    pending = roleshop_routes.list_pending_approvals(current_user=admin)
    assert [a.id for a in pending.approvals] == [approval_id]

    approved = roleshop_routes.approve_request(approval_id, current_user=admin)
    assert approved.data["entitlement"].label == "Painter"
    assert roleshop_routes.approval_stats(current_user=admin)["approved"] == 1

    second = roleshop_routes.create_role_request(
        RoleAttributesRequest(label="Sculptor", color="#112233"),
        current_user=member,
    )
    rejected = roleshop_routes.reject_request(
        second.data["approval"].id,
        RejectApprovalRequest(reason="Duplicate"),
        current_user=admin,
    )
    assert rejected.data["approval"].rejection_reason == "Duplicate"


def test_admin_dependency_rejects_members():
    with pytest.raises(HTTPException) as exc:
        roleshop_routes._require_admin(current_user=SimpleNamespace(id=1, is_admin=False))

    assert exc.value.status_code == 403
    admin = SimpleNamespace(id=2, is_admin=True)
    assert roleshop_routes._require_admin(current_user=admin) is admin


def test_admin_config_stats_and_tick(store):
    admin = SimpleNamespace(id=3, is_admin=True)

    updated = roleshop_routes.update_config(
        ShopConfigUpdateRequest(price=300, maxSharingSlots=4),
        current_user=admin,
    )
    assert updated.data["config"].max_sharing_slots == 4
    assert roleshop_routes.get_config(current_user=admin).price == 300

    stats = roleshop_routes.get_stats(current_user=admin)
    assert isinstance(stats, RoleStats)

    summary = roleshop_routes.run_tick(current_user=admin)
    assert summary.completed is True
    assert roleshop_routes.force_sync(current_user=admin).communities == 1
    assert roleshop_routes.purge_history(current_user=admin) == {"purged": 0}


def test_invalid_config_maps_to_bad_request(store):
    admin = SimpleNamespace(id=3, is_admin=True)

    with pytest.raises(HTTPException) as exc:
        roleshop_routes.update_config(ShopConfigUpdateRequest(maxLabelLength=100, price=None), current_user=admin)

    assert exc.value.status_code == 400


def test_health_endpoint_reports_unhealthy_before_first_tick(store):
    response = Response()

    report = roleshop_routes.health(response)

    assert isinstance(report, HealthResponse)
    assert report.is_healthy is False
    assert response.status_code == 503

    roleshop_routes.run_tick(current_user=SimpleNamespace(id=3, is_admin=True))
    healthy_response = Response()
    assert roleshop_routes.health(healthy_response).is_healthy is True
    assert healthy_response.status_code == 200


def test_admin_lists_member_roles(store):
    owner = SimpleNamespace(id=1, is_admin=False)
    admin = SimpleNamespace(id=3, is_admin=True)
    entitlement = _purchase(owner).data["entitlement"]
    roleshop_routes.share_role(entitlement.id, ShareRequest(targetAccountId=2), current_user=owner)

    owned = roleshop_routes.get_member_roles(1, current_user=admin)
    shared = roleshop_routes.get_member_roles(2, current_user=admin)

    assert isinstance(owned, MemberRolesResponse)
    assert [e.label for e in owned.owned] == ["Gold"]
    assert owned.shared == []
    assert shared.owned == []
    assert [item.entitlement.id for item in shared.shared] == [entitlement.id]


def test_admin_force_extend(store):
    owner = SimpleNamespace(id=1, is_admin=False)
    admin = SimpleNamespace(id=3, is_admin=True)
    entitlement = _purchase(owner).data["entitlement"]

    response = roleshop_routes.force_extend(entitlement.id, ForceExtendRequest(days=10), current_user=admin)

    assert response.success is True
    assert store.entitlements[entitlement.id].next_maintenance_date == entitlement.next_maintenance_date + timedelta(days=10)
    assert store.balance_of(1) == 800
    with pytest.raises(HTTPException) as exc:
        roleshop_routes.force_extend(404, ForceExtendRequest(days=10), current_user=admin)
    assert exc.value.status_code == 404
