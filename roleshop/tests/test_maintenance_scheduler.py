"""Unit tests for the recurring maintenance tick."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from roleshop.app.role_sync import RoleReconciler
from roleshop.app.roles import (
    CustomRoleAttributes,
    Entitlement,
    EntitlementStatus,
    HistoryActionType,
    HistoryRecord,
    InMemoryRoleShopStore,
    InventoryStore,
    OperationResult,
    ReconciliationSummary,
    RoleShopNotifier,
    RoleShopService,
    RoleSynchronizer,
    SharingStatus,
    ShopConfig,
    ShopItemType,
    build_role_shop_service,
    load_role_shop_settings,
)
from roleshop.app.roles.scheduler import reminder_due
from roleshop.app.services.roleshop import SandboxRoleSyncAdapter

NOW = datetime(2024, 7, 1, 8, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier(RoleShopNotifier):
    def __init__(self, *, fail_on: Optional[str] = None) -> None:
        self.events: List[Tuple[object, ...]] = []
        self.fail_on = fail_on

    def _record(self, *event: object) -> None:
        if event[0] == self.fail_on:
            raise RuntimeError("notification channel unavailable")
        self.events.append(event)

    def maintenance_due(self, entitlement: Entitlement, days_left: int) -> None:
        self._record("maintenance_due", entitlement.id, days_left)

    def suspended(self, entitlement: Entitlement) -> None:
        self._record("suspended", entitlement.id)

    def auction_settled(self, entitlement: Entitlement, seller_id: int, winner_id: int, price: int) -> None:
        self._record("auction_settled", entitlement.id, seller_id, winner_id, price)


class StubSynchronizer(RoleSynchronizer):
    def __init__(self, *, explode: bool = False) -> None:
        self.explode = explode
        self.passes = 0
        self.deactivated: List[int] = []

    def reconcile_all(self) -> ReconciliationSummary:
        self.passes += 1
        if self.explode:
            raise RuntimeError("platform unreachable")
        return ReconciliationSummary(communities=1)

    def entitlement_deactivated(self, entitlement: Entitlement) -> None:
        self.deactivated.append(entitlement.id)

    def ping(self) -> bool:
        return True


def _build(synchronizer_factory=None, notifier: Optional[RecordingNotifier] = None):
    store = InMemoryRoleShopStore()
    store.configs[ShopItemType.CUSTOM_ROLE] = ShopConfig(
        price=100,
        maintenance_cost=20,
        maintenance_interval_days=14,
    )
    clock = _Clock(NOW)
    notifier = notifier or RecordingNotifier()
    synchronizer = StubSynchronizer()
    service = build_role_shop_service(
        store=store,
        synchronizer_factory=synchronizer_factory or (lambda _store: synchronizer),
        notifier=notifier,
        settings=load_role_shop_settings({}),
        clock=clock,
    )
    return store, service, clock, notifier


def _buy(service: RoleShopService, store: InMemoryRoleShopStore, account_id: int, label: str) -> Entitlement:
    if store.balance_of(account_id) is None:
        store.open_account(account_id, 1000)
    result = service.purchase(account_id, label, CustomRoleAttributes(color="#abcdef"))
    assert result.success, result.message
    return result.data["entitlement"]


def test_overdue_role_is_suspended_and_privilege_withdrawn() -> None:
    adapter = SandboxRoleSyncAdapter()
    store, service, clock, notifier = _build(
        synchronizer_factory=lambda s: RoleReconciler(store=s, adapter=adapter, directory=s),
    )
    entitlement = _buy(service, store, 1, "Gold")
    store.open_account(2, 0)
    assert service.share(1, entitlement.id, 2).success

    first = service.run_maintenance_tick()
    ref = store.entitlements[entitlement.id].external_role_ref
    assert first.reconciliation.materialized == 1
    assert adapter.assignments == {(ref, "1"), (ref, "2")}

    clock.now = NOW + timedelta(days=14, minutes=5)
    summary = service.run_maintenance_tick()

    assert summary.suspended == 1
    assert store.entitlements[entitlement.id].status == EntitlementStatus.SUSPENDED
    assert [grant.status for grant in store.grants.values()] == [SharingStatus.EXPIRED]
    assert adapter.assignments == set()
    assert ("suspended", entitlement.id) in notifier.events


def test_tick_settles_finished_auctions() -> None:
    store, service, clock, notifier = _build()
    entitlement = _buy(service, store, 1, "Gold")
    store.open_account(2, 500)
    service.start_auction(1, entitlement.id, 50, 1)
    service.place_bid(2, entitlement.id, 75)

    clock.now = NOW + timedelta(days=1, seconds=1)
    summary = service.run_maintenance_tick()

    assert summary.auctions_completed == 1
    assert summary.auctions_failed == 0
    assert store.entitlements[entitlement.id].owner_account_id == 2
    assert ("auction_settled", entitlement.id, 1, 2, 75) in notifier.events


def test_failed_settlement_is_counted_not_raised() -> None:
    store, service, clock, _ = _build()
    entitlement = _buy(service, store, 1, "Gold")
    store.open_account(2, 500)
    service.start_auction(1, entitlement.id, 50, 1)
    service.place_bid(2, entitlement.id, 75)
    store.balances[2] = 0

    clock.now = NOW + timedelta(days=2)
    summary = service.run_maintenance_tick()

    assert summary.auctions_failed == 1
    assert summary.auctions_completed == 0
    assert store.entitlements[entitlement.id].status == EntitlementStatus.ACTIVE
    assert store.entitlements[entitlement.id].owner_account_id == 1


def test_reminders_are_sent_once_per_threshold() -> None:
    store, service, clock, notifier = _build()
    entitlement = _buy(service, store, 1, "Gold")

    clock.now = NOW + timedelta(days=10)
    assert service.run_maintenance_tick().reminders_sent == 0

    clock.now = NOW + timedelta(days=11, hours=1)
    assert service.run_maintenance_tick().reminders_sent == 1
    assert service.run_maintenance_tick().reminders_sent == 0

    clock.now = NOW + timedelta(days=13, hours=1)
    assert service.run_maintenance_tick().reminders_sent == 1
    assert service.run_maintenance_tick().reminders_sent == 0

    reminders = [event for event in notifier.events if event[0] == "maintenance_due"]
    assert reminders == [("maintenance_due", entitlement.id, 3), ("maintenance_due", entitlement.id, 1)]
    assert store.entitlements[entitlement.id].last_reminder_days == 1


def test_paying_maintenance_resets_reminder_state() -> None:
    store, service, clock, notifier = _build()
    entitlement = _buy(service, store, 1, "Gold")
    clock.now = NOW + timedelta(days=13, hours=1)
    service.run_maintenance_tick()

    assert service.pay_maintenance(1, entitlement.id).success
    assert store.entitlements[entitlement.id].last_reminder_days is None

    clock.now = NOW + timedelta(days=27, hours=1)
    assert service.run_maintenance_tick().reminders_sent == 1


def test_reminder_due_ignores_inactive_and_overdue_roles() -> None:
    entitlement = Entitlement(
        id=1,
        owner_account_id=1,
        label="Gold",
        attributes=CustomRoleAttributes(color="#000000"),
        purchase_price=100,
        maintenance_cost=10,
        next_maintenance_date=NOW + timedelta(hours=12),
    )

    assert reminder_due(entitlement, NOW, (3, 1)) == 1
    assert reminder_due(entitlement, NOW + timedelta(days=1), (3, 1)) is None
    suspended = entitlement.model_copy(update={"status": EntitlementStatus.SUSPENDED})
    assert reminder_due(suspended, NOW, (3, 1)) is None
    reminded = entitlement.model_copy(update={"last_reminder_days": 1})
    assert reminder_due(reminded, NOW, (3, 1)) is None


def test_failure_on_one_role_does_not_block_the_sweep() -> None:
    class FlakyInventory(InventoryStore):
        def suspend(self, entitlement_id: int, *, overdue_only: bool = False) -> OperationResult:
            if entitlement_id == broken.id:
                raise RuntimeError("row lock timeout")
            return super().suspend(entitlement_id, overdue_only=overdue_only)

    store, service, clock, _ = _build()
    broken = _buy(service, store, 1, "Broken")
    healthy = _buy(service, store, 2, "Healthy")
    flaky = FlakyInventory(store=store, clock=clock)
    service.scheduler.inventory = flaky

    clock.now = NOW + timedelta(days=15)
    summary = service.run_maintenance_tick()

    assert summary.suspended == 1
    assert summary.failures == 1
    assert summary.completed is True
    assert store.entitlements[healthy.id].status == EntitlementStatus.SUSPENDED
    assert store.entitlements[broken.id].status == EntitlementStatus.ACTIVE


def test_notifier_and_reconciliation_failures_are_isolated() -> None:
    synchronizer = StubSynchronizer(explode=True)
    store, service, clock, _ = _build(
        synchronizer_factory=lambda _store: synchronizer,
        notifier=RecordingNotifier(fail_on="suspended"),
    )
    entitlement = _buy(service, store, 1, "Gold")

    clock.now = NOW + timedelta(days=15)
    summary = service.run_maintenance_tick()

    assert synchronizer.passes == 1
    assert summary.suspended == 1
    assert summary.reconciliation.failures == 1
    assert summary.failures == 1
    assert summary.completed is True
    assert store.entitlements[entitlement.id].status == EntitlementStatus.SUSPENDED
    assert service.scheduler.last_tick == summary


def test_tick_purges_history_past_retention() -> None:
    store, service, _, _ = _build()
    _buy(service, store, 1, "Gold")
    store.history.insert(
        0,
        HistoryRecord(
            id=999,
            action_type=HistoryActionType.PURCHASE,
            actor_account_id=1,
            timestamp=NOW - timedelta(days=120),
        ),
    )

    summary = service.run_maintenance_tick()

    assert summary.history_purged == 1
    assert 999 not in [record.id for record in store.history]
    assert all(record.timestamp >= NOW - timedelta(days=90) for record in store.history)
