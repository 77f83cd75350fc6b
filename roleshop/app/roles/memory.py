"""In-process role shop store used by tests and local development."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from itertools import count
from threading import RLock
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from .exceptions import ErrorCode, RoleShopError
from .models import (
    ApprovalStatus,
    Entitlement,
    EntitlementStatus,
    HistoryRecord,
    RoleApproval,
    SharingGrant,
    SharingStatus,
    ShopConfig,
    ShopItemType,
    label_key,
)


class _MemoryEntitlements:
    def __init__(self, store: "InMemoryRoleShopStore") -> None:
        self._store = store

    def get(self, entitlement_id: int, *, for_update: bool = False) -> Optional[Entitlement]:
        return self._store.entitlements.get(entitlement_id)

    def find_by_label(self, label: str) -> Optional[Entitlement]:
        key = label_key(label)
        for entitlement in self._store.entitlements.values():
            if not entitlement.is_terminal and entitlement.label_key == key:
                return entitlement
        return None

    def add(self, entitlement: Entitlement) -> Entitlement:
        stored = entitlement.model_copy(update={"id": next(self._store._entitlement_ids)})
        self._store.entitlements[stored.id] = stored
        return stored

    def save(self, entitlement: Entitlement) -> Entitlement:
        if entitlement.id not in self._store.entitlements:
            raise KeyError(f"Unknown entitlement {entitlement.id}")
        self._store.entitlements[entitlement.id] = entitlement
        return entitlement

    def list_by_owner(self, account_id: int) -> Sequence[Entitlement]:
        return [e for e in self._store.entitlements.values() if e.owner_account_id == account_id]

    def list_by_status(self, status: EntitlementStatus) -> Sequence[Entitlement]:
        return [e for e in self._store.entitlements.values() if e.status == status]

    def count_by_status(self) -> Dict[EntitlementStatus, int]:
        counts = {status: 0 for status in EntitlementStatus}
        for entitlement in self._store.entitlements.values():
            counts[entitlement.status] += 1
        return counts


class _MemoryGrants:
    def __init__(self, store: "InMemoryRoleShopStore") -> None:
        self._store = store

    def add(self, grant: SharingGrant) -> SharingGrant:
        stored = grant.model_copy(update={"id": next(self._store._grant_ids)})
        self._store.grants[stored.id] = stored
        return stored

    def save(self, grant: SharingGrant) -> SharingGrant:
        self._store.grants[grant.id] = grant
        return grant

    def get_active(self, entitlement_id: int, grantee_account_id: int) -> Optional[SharingGrant]:
        for grant in self._active():
            if grant.entitlement_id == entitlement_id and grant.grantee_account_id == grantee_account_id:
                return grant
        return None

    def list_active(self, entitlement_id: int) -> Sequence[SharingGrant]:
        return [g for g in self._active() if g.entitlement_id == entitlement_id]

    def list_active_for_grantee(self, account_id: int) -> Sequence[SharingGrant]:
        return [g for g in self._active() if g.grantee_account_id == account_id]

    def list_all_active(self) -> Sequence[SharingGrant]:
        return list(self._active())

    def close_all(self, entitlement_id: int, status: SharingStatus, closed_at: datetime) -> int:
        closed = 0
        for grant in self.list_active(entitlement_id):
            self._store.grants[grant.id] = grant.model_copy(
                update={"status": status, "revoked_date": closed_at}
            )
            closed += 1
        return closed

    def count_active(self) -> int:
        return len(list(self._active()))

    def _active(self) -> Iterator[SharingGrant]:
        return (g for g in self._store.grants.values() if g.status == SharingStatus.ACTIVE)


class _MemoryHistory:
    def __init__(self, store: "InMemoryRoleShopStore") -> None:
        self._store = store

    def append(self, record: HistoryRecord) -> HistoryRecord:
        stored = record.model_copy(update={"id": next(self._store._history_ids)})
        self._store.history.append(stored)
        return stored

    def list_for_account(self, account_id: int, limit: int) -> Sequence[HistoryRecord]:
        matching = [
            record
            for record in self._store.history
            if record.actor_account_id == account_id or record.counterparty_account_id == account_id
        ]
        matching.sort(key=lambda record: (record.timestamp, record.id), reverse=True)
        return matching[:limit]

    def list_for_entitlement(self, entitlement_id: int) -> Sequence[HistoryRecord]:
        return [record for record in self._store.history if record.entitlement_id == entitlement_id]

    def purge_before(self, cutoff: datetime) -> int:
        kept = [record for record in self._store.history if record.timestamp >= cutoff]
        purged = len(self._store.history) - len(kept)
        self._store.history = kept
        return purged


class _MemoryConfigs:
    def __init__(self, store: "InMemoryRoleShopStore") -> None:
        self._store = store

    def get(self, item_type: ShopItemType) -> Optional[ShopConfig]:
        return self._store.configs.get(item_type)

    def save(self, config: ShopConfig) -> ShopConfig:
        self._store.configs[config.item_type] = config
        return config


class _MemoryApprovals:
    def __init__(self, store: "InMemoryRoleShopStore") -> None:
        self._store = store

    def add(self, approval: RoleApproval) -> RoleApproval:
        stored = approval.model_copy(update={"id": next(self._store._approval_ids)})
        self._store.approvals[stored.id] = stored
        return stored

    def get(self, approval_id: int, *, for_update: bool = False) -> Optional[RoleApproval]:
        return self._store.approvals.get(approval_id)

    def save(self, approval: RoleApproval) -> RoleApproval:
        self._store.approvals[approval.id] = approval
        return approval

    def list_pending(self, account_id: Optional[int] = None) -> Sequence[RoleApproval]:
        pending = [
            approval
            for approval in self._store.approvals.values()
            if approval.status == ApprovalStatus.PENDING
            and (account_id is None or approval.account_id == account_id)
        ]
        return sorted(pending, key=lambda approval: approval.created_at)

    def find_pending_for_account(self, account_id: int) -> Optional[RoleApproval]:
        pending = self.list_pending(account_id)
        return pending[0] if pending else None

    def count_by_status(self) -> Dict[ApprovalStatus, int]:
        counts = {status: 0 for status in ApprovalStatus}
        for approval in self._store.approvals.values():
            counts[approval.status] += 1
        return counts


class _MemoryLedger:
    def __init__(self, store: "InMemoryRoleShopStore") -> None:
        self._store = store

    def balance(self, account_id: int) -> Optional[int]:
        return self._store.balances.get(account_id)

    def debit(self, account_id: int, amount: int) -> bool:
        current = self._store.balances.get(account_id)
        if current is None or current < amount:
            return False
        self._store.balances[account_id] = current - amount
        return True

    def credit(self, account_id: int, amount: int) -> None:
        if account_id not in self._store.balances:
            raise RoleShopError(ErrorCode.UNKNOWN_ACCOUNT, f"Account {account_id} does not exist")
        self._store.balances[account_id] += amount


class _MemoryUnitOfWork:
    def __init__(self, store: "InMemoryRoleShopStore") -> None:
        self.entitlements = _MemoryEntitlements(store)
        self.grants = _MemoryGrants(store)
        self.history = _MemoryHistory(store)
        self.configs = _MemoryConfigs(store)
        self.approvals = _MemoryApprovals(store)
        self.ledger = _MemoryLedger(store)


class InMemoryRoleShopStore:
    """Store keeping every table in dictionaries guarded by one lock.

    Units of work are serialized; an exception inside one restores the
    snapshot taken when it opened.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self.entitlements: Dict[int, Entitlement] = {}
        self.grants: Dict[int, SharingGrant] = {}
        self.history: List[HistoryRecord] = []
        self.configs: Dict[ShopItemType, ShopConfig] = {}
        self.approvals: Dict[int, RoleApproval] = {}
        self.balances: Dict[int, int] = {}
        self.external_ids: Dict[int, str] = {}
        self.available = True
        self._entitlement_ids = count(1)
        self._grant_ids = count(1)
        self._history_ids = count(1)
        self._approval_ids = count(1)

    def open_account(self, account_id: int, balance: int = 0, *, external_id: Optional[str] = None) -> None:
        with self._lock:
            self.balances[account_id] = balance
            self.external_ids[account_id] = external_id or str(account_id)

    def balance_of(self, account_id: int) -> Optional[int]:
        return self.balances.get(account_id)

    @contextmanager
    def unit_of_work(self) -> Iterator[_MemoryUnitOfWork]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield _MemoryUnitOfWork(self)
            except Exception:
                self._restore(snapshot)
                raise

    def ping(self) -> bool:
        return self.available

    def resolve_many(self, account_ids: Iterable[int]) -> Dict[int, str]:
        with self._lock:
            return {account_id: self.external_ids[account_id] for account_id in account_ids if account_id in self.external_ids}

    def _snapshot(self) -> Dict[str, object]:
        return {
            "entitlements": dict(self.entitlements),
            "grants": dict(self.grants),
            "history": list(self.history),
            "configs": dict(self.configs),
            "approvals": dict(self.approvals),
            "balances": dict(self.balances),
        }

    def _restore(self, snapshot: Dict[str, object]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)


__all__ = ["InMemoryRoleShopStore"]
