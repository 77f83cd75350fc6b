"""Persistence interfaces shared by the role shop components."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, ContextManager, Dict, Iterable, List, Optional, Protocol, Sequence

from .exceptions import RoleShopError
from .models import (
    ApprovalStatus,
    Entitlement,
    EntitlementStatus,
    HistoryRecord,
    OperationResult,
    RoleApproval,
    SharingGrant,
    SharingStatus,
    ShopConfig,
    ShopItemType,
)

logger = logging.getLogger(__name__)


class EntitlementRepository(Protocol):
    """Rows of purchased slots."""

    def get(self, entitlement_id: int, *, for_update: bool = False) -> Optional[Entitlement]:
        """Return the entitlement, locking it for the transaction when requested."""

    def find_by_label(self, label: str) -> Optional[Entitlement]:
        """Return the non-terminal entitlement using ``label`` (case-insensitive)."""

    def add(self, entitlement: Entitlement) -> Entitlement:
        """Insert a new entitlement and return it with its id."""

    def save(self, entitlement: Entitlement) -> Entitlement:
        """Persist changes to an existing entitlement."""

    def list_by_owner(self, account_id: int) -> Sequence[Entitlement]:
        ...

    def list_by_status(self, status: EntitlementStatus) -> Sequence[Entitlement]:
        ...

    def count_by_status(self) -> Dict[EntitlementStatus, int]:
        ...


class SharingGrantRepository(Protocol):
    """Delegations of an entitlement to non-owners."""

    def add(self, grant: SharingGrant) -> SharingGrant:
        ...

    def save(self, grant: SharingGrant) -> SharingGrant:
        ...

    def get_active(self, entitlement_id: int, grantee_account_id: int) -> Optional[SharingGrant]:
        ...

    def list_active(self, entitlement_id: int) -> Sequence[SharingGrant]:
        ...

    def list_active_for_grantee(self, account_id: int) -> Sequence[SharingGrant]:
        ...

    def list_all_active(self) -> Sequence[SharingGrant]:
        ...

    def close_all(self, entitlement_id: int, status: SharingStatus, closed_at: datetime) -> int:
        """Close every active grant of an entitlement and return how many changed."""

    def count_active(self) -> int:
        ...


class HistoryRepository(Protocol):
    """Append-only audit trail."""

    def append(self, record: HistoryRecord) -> HistoryRecord:
        ...

    def list_for_account(self, account_id: int, limit: int) -> Sequence[HistoryRecord]:
        """Records where the account acted or was the counterparty, newest first."""

    def list_for_entitlement(self, entitlement_id: int) -> Sequence[HistoryRecord]:
        ...

    def purge_before(self, cutoff: datetime) -> int:
        ...


class ShopConfigRepository(Protocol):
    def get(self, item_type: ShopItemType) -> Optional[ShopConfig]:
        ...

    def save(self, config: ShopConfig) -> ShopConfig:
        ...


class ApprovalRepository(Protocol):
    """Pending role creation requests."""

    def add(self, approval: RoleApproval) -> RoleApproval:
        ...

    def get(self, approval_id: int, *, for_update: bool = False) -> Optional[RoleApproval]:
        ...

    def save(self, approval: RoleApproval) -> RoleApproval:
        ...

    def list_pending(self, account_id: Optional[int] = None) -> Sequence[RoleApproval]:
        ...

    def find_pending_for_account(self, account_id: int) -> Optional[RoleApproval]:
        ...

    def count_by_status(self) -> Dict[ApprovalStatus, int]:
        ...


class Ledger(Protocol):
    """Currency balances, usable inside the same transaction as the shop's writes."""

    def balance(self, account_id: int) -> Optional[int]:
        """Current balance, or ``None`` when the account does not exist."""

    def debit(self, account_id: int, amount: int) -> bool:
        """Remove ``amount``; returns ``False`` without changes when funds are short."""

    def credit(self, account_id: int, amount: int) -> None:
        ...


class RoleShopUnitOfWork(Protocol):
    """Repositories bound to one open transaction."""

    entitlements: EntitlementRepository
    grants: SharingGrantRepository
    history: HistoryRepository
    configs: ShopConfigRepository
    approvals: ApprovalRepository
    ledger: Ledger


class RoleShopStore(Protocol):
    """Transactional access to the role shop state."""

    def unit_of_work(self) -> ContextManager[RoleShopUnitOfWork]:
        """Open a transaction that commits on exit and rolls back on error."""

    def ping(self) -> bool:
        """Report whether the backing storage is reachable."""

    def resolve_many(self, account_ids: Iterable[int]) -> Dict[int, str]:
        """External identities of accounts, used to address role sync calls."""


def run_in_transaction(
    store: RoleShopStore,
    action: Callable[[RoleShopUnitOfWork], OperationResult],
    *,
    operation: str,
) -> OperationResult:
    """Run ``action`` in one unit of work, turning rejections into failed results.

    A :class:`RoleShopError` raised inside ``action`` leaves the unit of work
    and therefore rolls back every write made so far.
    """

    try:
        with store.unit_of_work() as uow:
            return action(uow)
    except RoleShopError as exc:
        logger.info(
            "Role shop operation rejected",
            extra={"operation": operation, "error_code": exc.code.value},
        )
        return OperationResult.failure(exc)


def active_holders(uow: RoleShopUnitOfWork, entitlement: Entitlement) -> List[int]:
    """Owner followed by every active grantee of the entitlement."""

    holders = [entitlement.owner_account_id]
    if entitlement.id is None:
        return holders
    for grant in uow.grants.list_active(entitlement.id):
        if grant.grantee_account_id not in holders:
            holders.append(grant.grantee_account_id)
    return holders


__all__ = [
    "ApprovalRepository",
    "EntitlementRepository",
    "HistoryRepository",
    "Ledger",
    "RoleShopStore",
    "RoleShopUnitOfWork",
    "SharingGrantRepository",
    "ShopConfigRepository",
    "active_holders",
    "run_in_transaction",
]
