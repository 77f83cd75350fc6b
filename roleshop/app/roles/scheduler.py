"""Recurring maintenance tick: expiry, auction settlement, role sync, reminders."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Sequence, Tuple

from .auctions import AuctionEngine
from .history import HistoryLog
from .inventory import InventoryStore
from .models import (
    Entitlement,
    EntitlementStatus,
    ReconciliationSummary,
    TickSummary,
    current_time,
)
from .store import RoleShopStore

logger = logging.getLogger(__name__)

_ONE_DAY = timedelta(days=1)


class RoleShopNotifier(Protocol):
    """Delivers member-facing notifications produced by the scheduler."""

    def maintenance_due(self, entitlement: Entitlement, days_left: int) -> None:
        ...

    def suspended(self, entitlement: Entitlement) -> None:
        ...

    def auction_settled(self, entitlement: Entitlement, seller_id: int, winner_id: int, price: int) -> None:
        ...


class RoleSynchronizer(Protocol):
    """Keeps external role assignments in line with the inventory."""

    def reconcile_all(self) -> ReconciliationSummary:
        ...

    def entitlement_deactivated(self, entitlement: Entitlement) -> None:
        ...

    def ping(self) -> bool:
        ...


def reminder_threshold(remaining: timedelta, thresholds: Sequence[int]) -> Optional[int]:
    """Smallest threshold (in days) that ``remaining`` has crossed, if any."""

    for days in sorted(thresholds):
        if remaining <= timedelta(days=days):
            return days
    return None


def reminder_due(entitlement: Entitlement, now: datetime, thresholds: Sequence[int]) -> Optional[int]:
    """Threshold to remind about now, or ``None`` when nothing new was crossed."""

    if entitlement.status != EntitlementStatus.ACTIVE or entitlement.next_maintenance_date is None:
        return None
    remaining = entitlement.next_maintenance_date - now
    if remaining < timedelta(0):
        return None
    threshold = reminder_threshold(remaining, thresholds)
    if threshold is None:
        return None
    if entitlement.last_reminder_days is not None and entitlement.last_reminder_days <= threshold:
        return None
    return threshold


@dataclass
class MaintenanceScheduler:
    """Runs the sweeps of one tick in order; each item is processed independently."""

    store: RoleShopStore
    inventory: InventoryStore
    auctions: AuctionEngine
    synchronizer: RoleSynchronizer
    notifier: RoleShopNotifier
    history: HistoryLog
    reminder_days: Tuple[int, ...] = (3, 1)
    clock: Optional[Callable[[], datetime]] = None
    last_tick: Optional[TickSummary] = field(default=None, init=False)

    def run_tick(self) -> TickSummary:
        started_at = current_time(self.clock)
        failures = 0

        suspended, sweep_failures = self._expiry_sweep(started_at)
        failures += sweep_failures

        auctions_completed, auctions_failed, sweep_failures = self._auction_sweep(started_at)
        failures += sweep_failures

        try:
            reconciliation = self.synchronizer.reconcile_all()
        except Exception:
            logger.exception("Role reconciliation crashed")
            reconciliation = ReconciliationSummary(failures=1)
            failures += 1

        reminders_sent, sweep_failures = self._reminder_sweep(started_at)
        failures += sweep_failures

        history_purged = 0
        try:
            history_purged = self.history.purge_expired()
        except Exception:
            logger.exception("History retention sweep failed")
            failures += 1

        summary = TickSummary(
            started_at=started_at,
            completed_at=current_time(self.clock),
            suspended=suspended,
            auctions_completed=auctions_completed,
            auctions_failed=auctions_failed,
            reconciliation=reconciliation,
            reminders_sent=reminders_sent,
            history_purged=history_purged,
            failures=failures,
        )
        self.last_tick = summary
        logger.info(
            "Role maintenance tick completed",
            extra={
                "suspended": suspended,
                "auctions_completed": auctions_completed,
                "auctions_failed": auctions_failed,
                "reminders_sent": reminders_sent,
                "history_purged": history_purged,
                "failures": failures,
            },
        )
        return summary

    def _expiry_sweep(self, now: datetime) -> Tuple[int, int]:
        with self.store.unit_of_work() as uow:
            overdue = [
                entitlement.id
                for entitlement in uow.entitlements.list_by_status(EntitlementStatus.ACTIVE)
                if entitlement.is_overdue(now)
            ]

        suspended = failures = 0
        for entitlement_id in overdue:
            try:
                result = self.inventory.suspend(entitlement_id, overdue_only=True)
            except Exception:
                logger.exception("Failed to suspend role", extra={"entitlement_id": entitlement_id})
                failures += 1
                continue
            if not result.success:
                failures += 1
                continue
            if result.data.get("changed"):
                suspended += 1
                self._notify("suspended", result.data["entitlement"])
        return suspended, failures

    def _auction_sweep(self, now: datetime) -> Tuple[int, int, int]:
        with self.store.unit_of_work() as uow:
            finished = [
                entitlement.id
                for entitlement in uow.entitlements.list_by_status(EntitlementStatus.TRANSFERRING)
                if entitlement.auction is not None and entitlement.auction.end_time < now
            ]

        completed = settlement_failures = failures = 0
        for entitlement_id in finished:
            try:
                result = self.auctions.complete(entitlement_id)
            except Exception:
                logger.exception("Failed to complete auction", extra={"entitlement_id": entitlement_id})
                failures += 1
                continue
            if not result.success:
                settlement_failures += 1
                continue
            if not result.data.get("changed"):
                continue
            completed += 1
            if result.data.get("transferred"):
                self._notify(
                    "auction_settled",
                    result.data["entitlement"],
                    result.data["seller_account_id"],
                    result.data["winner_account_id"],
                    result.data["price"],
                )
        return completed, settlement_failures, failures

    def _reminder_sweep(self, now: datetime) -> Tuple[int, int]:
        if not self.reminder_days:
            return 0, 0
        with self.store.unit_of_work() as uow:
            candidates = [
                entitlement.id
                for entitlement in uow.entitlements.list_by_status(EntitlementStatus.ACTIVE)
                if reminder_due(entitlement, now, self.reminder_days) is not None
            ]

        sent = failures = 0
        for entitlement_id in candidates:
            try:
                reminded = self._mark_reminded(entitlement_id, now)
            except Exception:
                logger.exception("Failed to record maintenance reminder", extra={"entitlement_id": entitlement_id})
                failures += 1
                continue
            if reminded is None:
                continue
            remaining = reminded.next_maintenance_date - now
            days_left = max(0, math.ceil(remaining / _ONE_DAY))
            if self._notify("maintenance_due", reminded, days_left):
                sent += 1
            else:
                failures += 1
        return sent, failures

    def _mark_reminded(self, entitlement_id: int, now: datetime) -> Optional[Entitlement]:
        with self.store.unit_of_work() as uow:
            entitlement = uow.entitlements.get(entitlement_id, for_update=True)
            if entitlement is None:
                return None
            threshold = reminder_due(entitlement, now, self.reminder_days)
            if threshold is None:
                return None
            return uow.entitlements.save(entitlement.model_copy(update={"last_reminder_days": threshold}))

    def _notify(self, event: str, *args: object) -> bool:
        try:
            getattr(self.notifier, event)(*args)
        except Exception:
            logger.warning("Role shop notification failed", exc_info=True, extra={"event": event})
            return False
        return True


__all__ = ["MaintenanceScheduler", "RoleShopNotifier", "RoleSynchronizer", "reminder_due", "reminder_threshold"]
