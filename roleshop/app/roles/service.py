"""Facade composing the role shop components into the caller-facing API."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .approvals import RoleApprovalService
from .auctions import AuctionEngine
from .config import ShopConfigManager
from .history import HistoryLog
from .inventory import InventoryStore
from .models import (
    CustomRoleAttributes,
    Entitlement,
    EntitlementStatus,
    HealthReport,
    HistoryRecord,
    OperationResult,
    ReconciliationSummary,
    RoleApproval,
    RoleStats,
    SharedEntitlement,
    ShopConfig,
    TickSummary,
    current_time,
)
from .scheduler import MaintenanceScheduler, RoleShopNotifier, RoleSynchronizer
from .settings import RoleShopSettings
from .sharing import SharingRegistry
from .store import RoleShopStore

logger = logging.getLogger(__name__)


@dataclass
class RoleShopService:
    """Single entry point used by the HTTP layer and chat commands."""

    store: RoleShopStore
    inventory: InventoryStore
    sharing: SharingRegistry
    auctions: AuctionEngine
    approvals: RoleApprovalService
    config: ShopConfigManager
    history: HistoryLog
    scheduler: MaintenanceScheduler
    synchronizer: RoleSynchronizer
    upcoming_payment_days: int = 7
    clock: Optional[Callable[[], datetime]] = None

    # Inventory

    def purchase(self, account_id: int, label: str, attributes: CustomRoleAttributes) -> OperationResult:
        return self.inventory.purchase(account_id, label, attributes)

    def pay_maintenance(self, account_id: int, entitlement_id: int) -> OperationResult:
        return self.inventory.pay_maintenance(account_id, entitlement_id)

    def sell_slot(self, account_id: int, entitlement_id: int) -> OperationResult:
        return self.inventory.sell_slot(account_id, entitlement_id)

    def force_extend(self, admin_account_id: int, entitlement_id: int, days: int = 14) -> OperationResult:
        return self.inventory.force_extend(admin_account_id, entitlement_id, days)

    def list_owned(self, account_id: int) -> List[Entitlement]:
        return self.inventory.list_owned(account_id)

    # Sharing

    def share(self, owner_account_id: int, entitlement_id: int, target_account_id: int) -> OperationResult:
        return self.sharing.share(owner_account_id, entitlement_id, target_account_id)

    def unshare(self, owner_account_id: int, entitlement_id: int, target_account_id: int) -> OperationResult:
        return self.sharing.unshare(owner_account_id, entitlement_id, target_account_id)

    def list_shared(self, account_id: int) -> List[SharedEntitlement]:
        return self.sharing.list_shared(account_id)

    # Auctions

    def start_auction(
        self,
        owner_account_id: int,
        entitlement_id: int,
        starting_bid: int,
        duration_days: int,
    ) -> OperationResult:
        return self.auctions.start(owner_account_id, entitlement_id, starting_bid, duration_days)

    def place_bid(self, account_id: int, entitlement_id: int, amount: int) -> OperationResult:
        return self.auctions.bid(account_id, entitlement_id, amount)

    def list_active_auctions(self) -> List[Entitlement]:
        return self.auctions.list_active_auctions()

    # Creation requests

    def create_role_request(
        self,
        account_id: int,
        label: str,
        attributes: CustomRoleAttributes,
        *,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        return self.approvals.create_request(account_id, label, attributes, metadata=metadata)

    def approve_role(self, approval_id: int, moderator_account_id: int) -> OperationResult:
        return self.approvals.approve(approval_id, moderator_account_id)

    def reject_role(self, approval_id: int, moderator_account_id: int, reason: str) -> OperationResult:
        return self.approvals.reject(approval_id, moderator_account_id, reason)

    def cancel_role_request(self, account_id: int, approval_id: int) -> OperationResult:
        return self.approvals.cancel(account_id, approval_id)

    def list_pending_approvals(self, account_id: Optional[int] = None) -> List[RoleApproval]:
        return self.approvals.list_pending(account_id)

    def approval_stats(self) -> Dict[str, int]:
        return self.approvals.stats()

    # History and administration

    def get_history(self, account_id: int, limit: int = 50) -> Sequence[HistoryRecord]:
        return self.history.for_account(account_id, limit)

    def get_stats(self) -> RoleStats:
        now = current_time(self.clock)
        horizon = now + timedelta(days=self.upcoming_payment_days)
        with self.store.unit_of_work() as uow:
            counts = uow.entitlements.count_by_status()
            active_grants = uow.grants.count_active()
            upcoming = sum(
                1
                for entitlement in uow.entitlements.list_by_status(EntitlementStatus.ACTIVE)
                if entitlement.next_maintenance_date is not None
                and now <= entitlement.next_maintenance_date <= horizon
            )
        return RoleStats(
            active=counts.get(EntitlementStatus.ACTIVE, 0),
            suspended=counts.get(EntitlementStatus.SUSPENDED, 0),
            transferring=counts.get(EntitlementStatus.TRANSFERRING, 0),
            sold=counts.get(EntitlementStatus.SOLD, 0),
            active_grants=active_grants,
            upcoming_payments=upcoming,
        )

    def force_sync_all(self) -> ReconciliationSummary:
        logger.info("Forced role synchronisation requested")
        return self.synchronizer.reconcile_all()

    def run_maintenance_tick(self) -> TickSummary:
        return self.scheduler.run_tick()

    def health_check(self) -> HealthReport:
        try:
            storage_ok = bool(self.store.ping())
        except Exception:
            logger.warning("Role shop storage ping failed", exc_info=True)
            storage_ok = False
        adapter_ok = self.synchronizer.ping()
        last_tick = self.scheduler.last_tick
        tick_ok = last_tick is not None and last_tick.completed
        checks = {"storage": storage_ok, "role_sync": adapter_ok, "scheduler": tick_ok}
        return HealthReport(
            is_healthy=all(checks.values()),
            checks=checks,
            last_tick_completed_at=last_tick.completed_at if last_tick else None,
        )

    def get_config(self) -> ShopConfig:
        return self.config.get()

    def update_config(self, admin_account_id: int, changes: Mapping[str, Any]) -> OperationResult:
        return self.config.update(admin_account_id, changes)

    def purge_history(self) -> int:
        return self.history.purge_expired()


def build_role_shop_service(
    *,
    store: RoleShopStore,
    synchronizer_factory: Callable[[RoleShopStore], RoleSynchronizer],
    notifier: RoleShopNotifier,
    settings: RoleShopSettings,
    clock: Optional[Callable[[], datetime]] = None,
) -> RoleShopService:
    """Construct every component once and wire them together."""

    synchronizer = synchronizer_factory(store)
    inventory = InventoryStore(store=store, clock=clock, deactivation_listener=synchronizer)
    auctions = AuctionEngine(store=store, clock=clock)
    history = HistoryLog(
        store=store,
        retention=timedelta(days=settings.history_retention_days),
        clock=clock,
    )
    scheduler = MaintenanceScheduler(
        store=store,
        inventory=inventory,
        auctions=auctions,
        synchronizer=synchronizer,
        notifier=notifier,
        history=history,
        reminder_days=settings.reminder_days,
        clock=clock,
    )
    return RoleShopService(
        store=store,
        inventory=inventory,
        sharing=SharingRegistry(store=store, clock=clock),
        auctions=auctions,
        approvals=RoleApprovalService(store=store, clock=clock),
        config=ShopConfigManager(store=store, clock=clock),
        history=history,
        scheduler=scheduler,
        synchronizer=synchronizer,
        upcoming_payment_days=settings.upcoming_payment_days,
        clock=clock,
    )


__all__ = ["RoleShopService", "build_role_shop_service"]
