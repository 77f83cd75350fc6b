"""Entitlement state machine: purchase, maintenance, sale and suspension."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Protocol, Sequence

from .config import load_config, validate_label
from .exceptions import ErrorCode, InsufficientFundsError, RoleShopError
from .history import record
from .models import (
    CustomRoleAttributes,
    Entitlement,
    EntitlementStatus,
    HistoryActionType,
    OperationResult,
    SharingStatus,
    ShopConfig,
    current_time,
)
from .store import RoleShopStore, RoleShopUnitOfWork, run_in_transaction

logger = logging.getLogger(__name__)

MAX_FORCED_EXTENSION_DAYS = 365


class DeactivationListener(Protocol):
    """Receives entitlements whose external privilege must be withdrawn."""

    def entitlement_deactivated(self, entitlement: Entitlement) -> None:
        ...


def require_entitlement(uow: RoleShopUnitOfWork, entitlement_id: int) -> Entitlement:
    """Lock and return the entitlement or raise ``unknown_entitlement``."""

    entitlement = uow.entitlements.get(entitlement_id, for_update=True)
    if entitlement is None:
        raise RoleShopError(ErrorCode.UNKNOWN_ENTITLEMENT, f"Role {entitlement_id} does not exist")
    return entitlement


def require_owner(entitlement: Entitlement, account_id: int) -> None:
    if entitlement.owner_account_id != account_id:
        raise RoleShopError(ErrorCode.NOT_OWNER, "You do not own this role")


def require_status(entitlement: Entitlement, *allowed: EntitlementStatus) -> None:
    if entitlement.status not in allowed:
        raise RoleShopError(
            ErrorCode.INVALID_STATE,
            f"Role is {entitlement.status.value}",
            detail={"status": entitlement.status.value},
        )


def require_account(uow: RoleShopUnitOfWork, account_id: int) -> int:
    """Return the account balance or raise ``unknown_account``."""

    balance = uow.ledger.balance(account_id)
    if balance is None:
        raise RoleShopError(ErrorCode.UNKNOWN_ACCOUNT, f"Account {account_id} does not exist")
    return balance


def debit_or_raise(uow: RoleShopUnitOfWork, account_id: int, amount: int) -> None:
    """Debit ``amount`` or raise :class:`InsufficientFundsError` carrying the balance."""

    balance = require_account(uow, account_id)
    if amount <= 0:
        return
    if not uow.ledger.debit(account_id, amount):
        raise InsufficientFundsError(balance=balance, required=amount)


def refund_amount(purchase_price: int, rate: float) -> int:
    """``floor(purchase_price * rate)`` without binary float rounding."""

    return math.floor(Decimal(purchase_price) * Decimal(str(rate)))


def create_entitlement(
    uow: RoleShopUnitOfWork,
    config: ShopConfig,
    *,
    account_id: int,
    label: str,
    attributes: CustomRoleAttributes,
    now: datetime,
) -> Entitlement:
    """Validate the label, debit the price and insert an ACTIVE entitlement."""

    if not config.is_enabled:
        raise RoleShopError(ErrorCode.SHOP_DISABLED, "The role shop is currently closed")
    normalized = validate_label(config, label)
    if uow.entitlements.find_by_label(normalized) is not None:
        raise RoleShopError(ErrorCode.LABEL_TAKEN, f"A role named {normalized!r} already exists")
    debit_or_raise(uow, account_id, config.price)
    return uow.entitlements.add(
        Entitlement(
            owner_account_id=account_id,
            label=normalized,
            attributes=attributes,
            purchase_price=config.price,
            maintenance_cost=config.effective_maintenance_cost,
            purchase_date=now,
            last_maintenance_date=now,
            next_maintenance_date=now + timedelta(days=config.maintenance_interval_days),
            updated_at=now,
        )
    )


@dataclass
class InventoryStore:
    """System of record for purchased role slots."""

    store: RoleShopStore
    clock: Optional[Callable[[], datetime]] = None
    deactivation_listener: Optional[DeactivationListener] = None

    def purchase(self, account_id: int, label: str, attributes: CustomRoleAttributes) -> OperationResult:
        now = current_time(self.clock)

        def _purchase(uow: RoleShopUnitOfWork) -> OperationResult:
            config = load_config(uow)
            entitlement = create_entitlement(
                uow,
                config,
                account_id=account_id,
                label=label,
                attributes=attributes,
                now=now,
            )
            record(
                uow,
                HistoryActionType.PURCHASE,
                actor_account_id=account_id,
                entitlement_id=entitlement.id,
                amount=config.price,
                details=f"Purchased role {entitlement.label}",
                timestamp=now,
            )
            logger.info(
                "Role purchased",
                extra={"entitlement_id": entitlement.id, "account_id": account_id, "price": config.price},
            )
            return OperationResult.ok(
                f"Role {entitlement.label} purchased",
                entitlement=entitlement,
                balance=uow.ledger.balance(account_id),
            )

        return run_in_transaction(self.store, _purchase, operation="purchase")

    def pay_maintenance(self, account_id: int, entitlement_id: int) -> OperationResult:
        now = current_time(self.clock)

        def _pay(uow: RoleShopUnitOfWork) -> OperationResult:
            entitlement = require_entitlement(uow, entitlement_id)
            require_owner(entitlement, account_id)
            require_status(entitlement, EntitlementStatus.ACTIVE, EntitlementStatus.SUSPENDED)
            config = load_config(uow)
            fee = entitlement.maintenance_cost
            debit_or_raise(uow, account_id, fee)

            anchor = entitlement.next_maintenance_date or now
            next_due = max(now, anchor) + timedelta(days=config.maintenance_interval_days)
            was_suspended = entitlement.status == EntitlementStatus.SUSPENDED
            updated = uow.entitlements.save(
                entitlement.model_copy(
                    update={
                        "status": EntitlementStatus.ACTIVE,
                        "last_maintenance_date": now,
                        "next_maintenance_date": next_due,
                        "last_reminder_days": None,
                        "updated_at": now,
                    }
                )
            )
            record(
                uow,
                HistoryActionType.MAINTENANCE_PAID,
                actor_account_id=account_id,
                entitlement_id=entitlement_id,
                amount=fee,
                details=f"Maintenance paid until {next_due.date().isoformat()}",
                timestamp=now,
            )
            if was_suspended:
                record(
                    uow,
                    HistoryActionType.REACTIVATED,
                    actor_account_id=account_id,
                    entitlement_id=entitlement_id,
                    timestamp=now,
                )
            return OperationResult.ok(
                "Maintenance paid",
                entitlement=updated,
                reactivated=was_suspended,
                balance=uow.ledger.balance(account_id),
            )

        return run_in_transaction(self.store, _pay, operation="pay_maintenance")

    def force_extend(self, admin_account_id: int, entitlement_id: int, days: int = 14) -> OperationResult:
        """Push the next maintenance date out by ``days`` without charging the owner.

        A SUSPENDED entitlement is reactivated.
        """

        now = current_time(self.clock)

        def _extend(uow: RoleShopUnitOfWork) -> OperationResult:
            if not 1 <= days <= MAX_FORCED_EXTENSION_DAYS:
                raise RoleShopError(
                    ErrorCode.INVALID_AMOUNT,
                    f"Extension must be between 1 and {MAX_FORCED_EXTENSION_DAYS} days",
                    detail={"days": days},
                )
            entitlement = require_entitlement(uow, entitlement_id)
            require_status(entitlement, EntitlementStatus.ACTIVE, EntitlementStatus.SUSPENDED)

            anchor = entitlement.next_maintenance_date or now
            next_due = max(now, anchor) + timedelta(days=days)
            was_suspended = entitlement.status == EntitlementStatus.SUSPENDED
            updated = uow.entitlements.save(
                entitlement.model_copy(
                    update={
                        "status": EntitlementStatus.ACTIVE,
                        "next_maintenance_date": next_due,
                        "last_reminder_days": None,
                        "updated_at": now,
                    }
                )
            )
            record(
                uow,
                HistoryActionType.MAINTENANCE_EXTENDED,
                actor_account_id=admin_account_id,
                counterparty_account_id=entitlement.owner_account_id,
                entitlement_id=entitlement_id,
                amount=0,
                details=f"Extended by {days} days until {next_due.date().isoformat()}",
                timestamp=now,
            )
            if was_suspended:
                record(
                    uow,
                    HistoryActionType.REACTIVATED,
                    actor_account_id=admin_account_id,
                    counterparty_account_id=entitlement.owner_account_id,
                    entitlement_id=entitlement_id,
                    timestamp=now,
                )
            logger.info(
                "Role maintenance extended by administrator",
                extra={"entitlement_id": entitlement_id, "admin_account_id": admin_account_id, "days": days},
            )
            return OperationResult.ok(
                f"Role {entitlement.label} extended by {days} days",
                entitlement=updated,
                reactivated=was_suspended,
            )

        return run_in_transaction(self.store, _extend, operation="force_extend")

    def sell_slot(self, account_id: int, entitlement_id: int) -> OperationResult:
        now = current_time(self.clock)

        def _sell(uow: RoleShopUnitOfWork) -> OperationResult:
            entitlement = require_entitlement(uow, entitlement_id)
            require_owner(entitlement, account_id)
            require_status(entitlement, EntitlementStatus.ACTIVE)
            config = load_config(uow)
            refund = refund_amount(entitlement.purchase_price, config.slot_refund_rate)
            if refund > 0:
                uow.ledger.credit(account_id, refund)
            revoked = uow.grants.close_all(entitlement_id, SharingStatus.REVOKED, now)
            updated = uow.entitlements.save(
                entitlement.model_copy(
                    update={
                        "status": EntitlementStatus.SOLD,
                        "next_maintenance_date": None,
                        "last_reminder_days": None,
                        "updated_at": now,
                    }
                )
            )
            record(
                uow,
                HistoryActionType.SLOT_SOLD,
                actor_account_id=account_id,
                entitlement_id=entitlement_id,
                amount=refund,
                details=f"Sold role {entitlement.label}",
                timestamp=now,
            )
            return OperationResult.ok(
                f"Role {entitlement.label} sold",
                entitlement=updated,
                refund=refund,
                revoked_grants=revoked,
                balance=uow.ledger.balance(account_id),
            )

        result = run_in_transaction(self.store, _sell, operation="sell_slot")
        if result.success:
            self._notify_deactivated(result.data["entitlement"])
        return result

    def suspend(self, entitlement_id: int, *, overdue_only: bool = False) -> OperationResult:
        """Move an ACTIVE entitlement to SUSPENDED; repeated calls change nothing."""

        now = current_time(self.clock)

        def _suspend(uow: RoleShopUnitOfWork) -> OperationResult:
            entitlement = require_entitlement(uow, entitlement_id)
            if entitlement.status == EntitlementStatus.SUSPENDED:
                return OperationResult.ok("Role already suspended", entitlement=entitlement, changed=False)
            require_status(entitlement, EntitlementStatus.ACTIVE)
            if overdue_only and not entitlement.is_overdue(now):
                return OperationResult.ok("Maintenance is not overdue", entitlement=entitlement, changed=False)
            expired = uow.grants.close_all(entitlement_id, SharingStatus.EXPIRED, now)
            updated = uow.entitlements.save(
                entitlement.model_copy(update={"status": EntitlementStatus.SUSPENDED, "updated_at": now})
            )
            record(
                uow,
                HistoryActionType.SUSPENDED,
                actor_account_id=entitlement.owner_account_id,
                entitlement_id=entitlement_id,
                details="Maintenance payment overdue",
                timestamp=now,
            )
            return OperationResult.ok("Role suspended", entitlement=updated, changed=True, expired_grants=expired)

        result = run_in_transaction(self.store, _suspend, operation="suspend")
        if result.success and result.data.get("changed"):
            logger.info("Role suspended", extra={"entitlement_id": entitlement_id})
            self._notify_deactivated(result.data["entitlement"])
        return result

    def get(self, entitlement_id: int) -> Optional[Entitlement]:
        with self.store.unit_of_work() as uow:
            return uow.entitlements.get(entitlement_id)

    def list_owned(self, account_id: int) -> List[Entitlement]:
        with self.store.unit_of_work() as uow:
            owned = [e for e in uow.entitlements.list_by_owner(account_id) if not e.is_terminal]
        return sorted(owned, key=lambda entitlement: entitlement.purchase_date)

    def list_by_status(self, status: EntitlementStatus) -> Sequence[Entitlement]:
        with self.store.unit_of_work() as uow:
            return list(uow.entitlements.list_by_status(status))

    def _notify_deactivated(self, entitlement: Entitlement) -> None:
        if self.deactivation_listener is None or not entitlement.external_role_ref:
            return
        try:
            self.deactivation_listener.entitlement_deactivated(entitlement)
        except Exception:
            logger.warning(
                "Failed to withdraw external role",
                exc_info=True,
                extra={"entitlement_id": entitlement.id},
            )


__all__ = [
    "DeactivationListener",
    "MAX_FORCED_EXTENSION_DAYS",
    "InventoryStore",
    "create_entitlement",
    "debit_or_raise",
    "refund_amount",
    "require_account",
    "require_entitlement",
    "require_owner",
    "require_status",
]
