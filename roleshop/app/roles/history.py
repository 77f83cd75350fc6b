"""Append-only audit trail of role shop operations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from .models import HistoryActionType, HistoryRecord, current_time
from .store import RoleShopStore, RoleShopUnitOfWork

logger = logging.getLogger(__name__)


def record(
    uow: RoleShopUnitOfWork,
    action_type: HistoryActionType,
    *,
    actor_account_id: int,
    timestamp: datetime,
    entitlement_id: Optional[int] = None,
    counterparty_account_id: Optional[int] = None,
    amount: Optional[int] = None,
    details: Optional[str] = None,
) -> HistoryRecord:
    """Append one record inside the caller's transaction."""

    return uow.history.append(
        HistoryRecord(
            entitlement_id=entitlement_id,
            action_type=action_type,
            actor_account_id=actor_account_id,
            counterparty_account_id=counterparty_account_id,
            amount=amount,
            details=details,
            timestamp=timestamp,
        )
    )


@dataclass
class HistoryLog:
    """Query and retention operations over the audit trail."""

    store: RoleShopStore
    retention: timedelta = timedelta(days=90)
    clock: Optional[Callable[[], datetime]] = None

    def for_account(self, account_id: int, limit: int = 50) -> Sequence[HistoryRecord]:
        with self.store.unit_of_work() as uow:
            return list(uow.history.list_for_account(account_id, max(1, limit)))

    def for_entitlement(self, entitlement_id: int) -> Sequence[HistoryRecord]:
        with self.store.unit_of_work() as uow:
            return list(uow.history.list_for_entitlement(entitlement_id))

    def purge_expired(self) -> int:
        """Delete records older than the retention horizon."""

        cutoff = current_time(self.clock) - self.retention
        with self.store.unit_of_work() as uow:
            purged = uow.history.purge_before(cutoff)
        if purged:
            logger.info("Purged role shop history", extra={"purged": purged, "cutoff": cutoff.isoformat()})
        return purged


__all__ = ["HistoryLog", "record"]
