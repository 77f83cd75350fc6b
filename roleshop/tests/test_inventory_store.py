"""Unit tests for the role inventory state machine."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from threading import Barrier
from typing import List

import pytest

from roleshop.app.roles import (
    CustomRoleAttributes,
    Entitlement,
    EntitlementStatus,
    HistoryActionType,
    InMemoryRoleShopStore,
    InventoryStore,
    SharingRegistry,
    SharingStatus,
    ShopConfig,
    ShopItemType,
)
from roleshop.app.roles.inventory import DeactivationListener, refund_amount


NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingDeactivationListener(DeactivationListener):
    def __init__(self) -> None:
        self.deactivated: List[Entitlement] = []

    def entitlement_deactivated(self, entitlement: Entitlement) -> None:
        self.deactivated.append(entitlement)


def _attributes() -> CustomRoleAttributes:
    return CustomRoleAttributes(color="#ffaa00", description="Shiny")


def _build(**config_overrides):
    store = InMemoryRoleShopStore()
    config = {"price": 1000, "maintenance_cost": 100, "maintenance_interval_days": 14}
    config.update(config_overrides)
    store.configs[ShopItemType.CUSTOM_ROLE] = ShopConfig(**config)
    clock = _Clock(NOW)
    listener = RecordingDeactivationListener()
    inventory = InventoryStore(store=store, clock=clock, deactivation_listener=listener)
    return store, inventory, clock, listener


def _actions(store: InMemoryRoleShopStore) -> List[HistoryActionType]:
    return [record.action_type for record in store.history]


def test_purchase_debits_price_and_schedules_maintenance() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)

    result = inventory.purchase(1, "Gold", _attributes())

    assert result.success is True
    entitlement = result.data["entitlement"]
    assert entitlement.status == EntitlementStatus.ACTIVE
    assert entitlement.owner_account_id == 1
    assert entitlement.purchase_price == 1000
    assert entitlement.maintenance_cost == 100
    assert entitlement.next_maintenance_date == NOW + timedelta(days=14)
    assert entitlement.attributes.color == "#FFAA00"
    assert store.balance_of(1) == 0
    assert result.data["balance"] == 0
    assert _actions(store) == [HistoryActionType.PURCHASE]


def test_purchase_rejects_label_already_in_use_ignoring_case() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    store.open_account(2, 5000)
    assert inventory.purchase(1, "Gold", _attributes()).success

    duplicate = inventory.purchase(2, "  gold ", _attributes())

    assert duplicate.success is False
    assert duplicate.code == "label_taken"
    assert store.balance_of(2) == 5000
    assert len(store.entitlements) == 1


def test_failed_purchase_for_insufficient_funds_leaves_no_trace() -> None:
    store, inventory, _, _ = _build()
    store.open_account(3, 500)

    result = inventory.purchase(3, "Silver", _attributes())

    assert result.success is False
    assert result.code == "insufficient_funds"
    assert result.data == {"balance": 500, "required": 1000}
    assert store.balance_of(3) == 500
    assert store.entitlements == {}
    assert store.history == []


def test_purchase_rejected_while_shop_disabled() -> None:
    store, inventory, _, _ = _build(is_enabled=False)
    store.open_account(1, 1000)

    result = inventory.purchase(1, "Gold", _attributes())

    assert result.code == "shop_disabled"
    assert store.balance_of(1) == 1000


def test_purchase_without_configuration_keeps_shop_closed() -> None:
    store = InMemoryRoleShopStore()
    store.open_account(1, 1000)
    inventory = InventoryStore(store=store, clock=_Clock(NOW))

    assert inventory.purchase(1, "Gold", _attributes()).code == "shop_disabled"


@pytest.mark.parametrize(
    "label",
    ["", "   ", "x" * 33, "Admin"],
)
def test_purchase_rejects_invalid_labels(label: str) -> None:
    store, inventory, _, _ = _build(max_label_length=32, banned_labels=("admin",))
    store.open_account(1, 1000)

    result = inventory.purchase(1, label, _attributes())

    assert result.code == "invalid_label"
    assert store.balance_of(1) == 1000


def test_early_maintenance_extends_from_current_due_date() -> None:
    store, inventory, clock, _ = _build()
    store.open_account(1, 1200)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    clock.advance(days=4)

    result = inventory.pay_maintenance(1, entitlement.id)

    assert result.success is True
    updated = result.data["entitlement"]
    assert updated.next_maintenance_date == NOW + timedelta(days=28)
    assert updated.last_maintenance_date == clock.now
    assert result.data["reactivated"] is False
    assert store.balance_of(1) == 100


def test_maintenance_reactivates_suspended_role() -> None:
    store, inventory, clock, _ = _build()
    store.open_account(1, 1200)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    clock.advance(days=15)
    assert inventory.suspend(entitlement.id, overdue_only=True).data["changed"] is True

    result = inventory.pay_maintenance(1, entitlement.id)

    assert result.success is True
    assert result.data["reactivated"] is True
    updated = store.entitlements[entitlement.id]
    assert updated.status == EntitlementStatus.ACTIVE
    assert updated.next_maintenance_date == clock.now + timedelta(days=14)
    assert _actions(store)[-2:] == [HistoryActionType.MAINTENANCE_PAID, HistoryActionType.REACTIVATED]


def test_maintenance_requires_owner_and_funds() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    store.open_account(2, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]

    assert inventory.pay_maintenance(2, entitlement.id).code == "not_owner"

    short = inventory.pay_maintenance(1, entitlement.id)
    assert short.code == "insufficient_funds"
    assert short.data["balance"] == 0
    assert store.entitlements[entitlement.id].next_maintenance_date == NOW + timedelta(days=14)


def test_unknown_entitlement_is_reported() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)

    assert inventory.pay_maintenance(1, 42).code == "unknown_entitlement"
    assert inventory.sell_slot(1, 42).code == "unknown_entitlement"


def test_sell_slot_refunds_floor_of_rate_and_is_terminal() -> None:
    store, inventory, _, listener = _build(slot_refund_rate=0.5)
    store.open_account(1, 1000)
    store.open_account(2, 0)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    store.entitlements[entitlement.id] = entitlement.model_copy(update={"external_role_ref": "role-1"})
    SharingRegistry(store=store, clock=lambda: NOW).share(1, entitlement.id, 2)

    result = inventory.sell_slot(1, entitlement.id)

    assert result.success is True
    assert result.data["refund"] == 500
    assert result.data["revoked_grants"] == 1
    assert store.balance_of(1) == 500
    sold = store.entitlements[entitlement.id]
    assert sold.status == EntitlementStatus.SOLD
    assert sold.next_maintenance_date is None
    assert all(grant.status == SharingStatus.REVOKED for grant in store.grants.values())
    assert [e.id for e in listener.deactivated] == [entitlement.id]

    assert inventory.pay_maintenance(1, entitlement.id).code == "invalid_state"
    assert inventory.sell_slot(1, entitlement.id).code == "invalid_state"
    assert SharingRegistry(store=store).share(1, entitlement.id, 2).code == "invalid_state"
    assert inventory.list_owned(1) == []


def test_sold_label_can_be_bought_again() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    store.open_account(2, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    inventory.sell_slot(1, entitlement.id)

    assert inventory.purchase(2, "Gold", _attributes()).success is True


def test_refund_amount_avoids_float_rounding() -> None:
    assert refund_amount(1000, 0.5) == 500
    assert refund_amount(999, 0.5) == 499
    assert refund_amount(100, 0.29) == 29
    assert refund_amount(100, 0.0) == 0


def test_suspend_is_idempotent_and_expires_grants() -> None:
    store, inventory, clock, listener = _build()
    store.open_account(1, 1000)
    store.open_account(2, 0)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    store.entitlements[entitlement.id] = entitlement.model_copy(update={"external_role_ref": "role-1"})
    SharingRegistry(store=store, clock=clock).share(1, entitlement.id, 2)
    clock.advance(days=15)

    first = inventory.suspend(entitlement.id, overdue_only=True)
    second = inventory.suspend(entitlement.id, overdue_only=True)

    assert first.data["changed"] is True
    assert first.data["expired_grants"] == 1
    assert second.success is True
    assert second.data["changed"] is False
    assert store.entitlements[entitlement.id].status == EntitlementStatus.SUSPENDED
    assert [grant.status for grant in store.grants.values()] == [SharingStatus.EXPIRED]
    assert _actions(store).count(HistoryActionType.SUSPENDED) == 1
    assert len(listener.deactivated) == 1


def test_suspend_skips_roles_not_yet_overdue() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]

    result = inventory.suspend(entitlement.id, overdue_only=True)

    assert result.data["changed"] is False
    assert store.entitlements[entitlement.id].status == EntitlementStatus.ACTIVE


def test_failing_deactivation_listener_does_not_fail_sale() -> None:
    class ExplodingListener(DeactivationListener):
        def entitlement_deactivated(self, entitlement: Entitlement) -> None:
            raise RuntimeError("platform down")

    store, _, clock, _ = _build()
    inventory = InventoryStore(store=store, clock=clock, deactivation_listener=ExplodingListener())
    store.open_account(1, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    store.entitlements[entitlement.id] = entitlement.model_copy(update={"external_role_ref": "role-1"})

    result = inventory.sell_slot(1, entitlement.id)

    assert result.success is True
    assert store.entitlements[entitlement.id].status == EntitlementStatus.SOLD


def test_list_owned_orders_by_purchase_date() -> None:
    store, inventory, clock, _ = _build(price=10)
    store.open_account(1, 100)
    inventory.purchase(1, "First", _attributes())
    clock.advance(hours=1)
    inventory.purchase(1, "Second", _attributes())

    assert [e.label for e in inventory.list_owned(1)] == ["First", "Second"]
    assert len(inventory.list_by_status(EntitlementStatus.ACTIVE)) == 2


def test_concurrent_purchases_of_one_label_leave_a_single_owner() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    store.open_account(2, 1000)
    barrier = Barrier(2)

    def _buy(account_id: int):
        barrier.wait()
        return inventory.purchase(account_id, "Gold", _attributes())

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(_buy, (1, 2)))

    winners = [result for result in results if result.success]
    losers = [result for result in results if not result.success]
    assert len(winners) == 1
    assert [loser.code for loser in losers] == ["label_taken"]
    assert len(store.entitlements) == 1
    assert sorted(store.balances.values()) == [0, 1000]


def test_force_extend_pushes_due_date_without_charging() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]

    result = inventory.force_extend(99, entitlement.id, 30)

    assert result.success is True
    assert result.data["reactivated"] is False
    assert store.entitlements[entitlement.id].next_maintenance_date == NOW + timedelta(days=44)
    assert store.balance_of(1) == 0
    extension = store.history[-1]
    assert extension.action_type == HistoryActionType.MAINTENANCE_EXTENDED
    assert extension.actor_account_id == 99
    assert extension.counterparty_account_id == 1
    assert extension.amount == 0


def test_force_extend_reactivates_suspended_role() -> None:
    store, inventory, clock, _ = _build()
    store.open_account(1, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    clock.advance(days=20)
    inventory.suspend(entitlement.id, overdue_only=True)

    result = inventory.force_extend(99, entitlement.id)

    assert result.data["reactivated"] is True
    updated = store.entitlements[entitlement.id]
    assert updated.status == EntitlementStatus.ACTIVE
    assert updated.next_maintenance_date == clock.now + timedelta(days=14)
    assert _actions(store)[-2:] == [HistoryActionType.MAINTENANCE_EXTENDED, HistoryActionType.REACTIVATED]


@pytest.mark.parametrize("days", [0, 366])
def test_force_extend_rejects_out_of_range_days(days: int) -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]

    result = inventory.force_extend(99, entitlement.id, days)

    assert result.code == "invalid_amount"
    assert store.entitlements[entitlement.id].next_maintenance_date == NOW + timedelta(days=14)


def test_force_extend_rejects_sold_role() -> None:
    store, inventory, _, _ = _build()
    store.open_account(1, 1000)
    entitlement = inventory.purchase(1, "Gold", _attributes()).data["entitlement"]
    inventory.sell_slot(1, entitlement.id)

    assert inventory.force_extend(99, entitlement.id).code == "invalid_state"
