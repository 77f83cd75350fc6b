"""Sharing slots: delegating an entitlement to accounts beyond its owner."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .config import load_config
from .exceptions import ErrorCode, RoleShopError
from .history import record
from .inventory import require_account, require_entitlement, require_owner, require_status
from .models import (
    EntitlementStatus,
    HistoryActionType,
    OperationResult,
    SharedEntitlement,
    SharingGrant,
    SharingStatus,
    current_time,
)
from .store import RoleShopStore, RoleShopUnitOfWork, run_in_transaction

logger = logging.getLogger(__name__)


@dataclass
class SharingRegistry:
    """Tracks and bounds the active grants of every entitlement."""

    store: RoleShopStore
    clock: Optional[Callable[[], datetime]] = None

    def share(self, owner_account_id: int, entitlement_id: int, target_account_id: int) -> OperationResult:
        now = current_time(self.clock)

        def _share(uow: RoleShopUnitOfWork) -> OperationResult:
            entitlement = require_entitlement(uow, entitlement_id)
            require_owner(entitlement, owner_account_id)
            require_status(entitlement, EntitlementStatus.ACTIVE)
            if target_account_id == owner_account_id:
                raise RoleShopError(ErrorCode.SELF_TARGET, "You cannot share a role with yourself")
            require_account(uow, target_account_id)
            if uow.grants.get_active(entitlement_id, target_account_id) is not None:
                raise RoleShopError(ErrorCode.ALREADY_SHARED, "This member already has the role")

            config = load_config(uow)
            active = uow.grants.list_active(entitlement_id)
            if len(active) >= config.max_sharing_slots:
                raise RoleShopError(
                    ErrorCode.SLOT_LIMIT_REACHED,
                    f"All {config.max_sharing_slots} sharing slots are in use",
                    detail={"max_sharing_slots": config.max_sharing_slots},
                )

            grant = uow.grants.add(
                SharingGrant(
                    entitlement_id=entitlement_id,
                    owner_account_id=owner_account_id,
                    grantee_account_id=target_account_id,
                    granted_date=now,
                )
            )
            record(
                uow,
                HistoryActionType.SHARED,
                actor_account_id=owner_account_id,
                counterparty_account_id=target_account_id,
                entitlement_id=entitlement_id,
                timestamp=now,
            )
            return OperationResult.ok(
                f"Role {entitlement.label} shared",
                grant=grant,
                slots_used=len(active) + 1,
                slots_total=config.max_sharing_slots,
            )

        return run_in_transaction(self.store, _share, operation="share")

    def unshare(self, owner_account_id: int, entitlement_id: int, target_account_id: int) -> OperationResult:
        now = current_time(self.clock)

        def _unshare(uow: RoleShopUnitOfWork) -> OperationResult:
            require_entitlement(uow, entitlement_id)
            grant = uow.grants.get_active(entitlement_id, target_account_id)
            if grant is None or grant.owner_account_id != owner_account_id:
                raise RoleShopError(ErrorCode.NOT_SHARED, "This member does not hold a share of the role")
            revoked = uow.grants.save(
                grant.model_copy(update={"status": SharingStatus.REVOKED, "revoked_date": now})
            )
            record(
                uow,
                HistoryActionType.UNSHARED,
                actor_account_id=owner_account_id,
                counterparty_account_id=target_account_id,
                entitlement_id=entitlement_id,
                timestamp=now,
            )
            return OperationResult.ok("Role share revoked", grant=revoked)

        return run_in_transaction(self.store, _unshare, operation="unshare")

    def active_grants_for(self, entitlement_id: int) -> Sequence[SharingGrant]:
        with self.store.unit_of_work() as uow:
            return list(uow.grants.list_active(entitlement_id))

    def list_shared(self, account_id: int) -> List[SharedEntitlement]:
        """Entitlements other accounts currently share with ``account_id``."""

        shared: List[SharedEntitlement] = []
        with self.store.unit_of_work() as uow:
            for grant in uow.grants.list_active_for_grantee(account_id):
                entitlement = uow.entitlements.get(grant.entitlement_id)
                if entitlement is None:
                    logger.warning("Sharing grant without entitlement", extra={"grant_id": grant.id})
                    continue
                shared.append(SharedEntitlement(grant=grant, entitlement=entitlement))
        return shared


__all__ = ["SharingRegistry"]
