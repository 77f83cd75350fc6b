"""Diff-based synchronisation of external role assignments."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Set, Tuple

from ..roles.models import Entitlement, EntitlementStatus, ReconciliationSummary
from ..roles.store import RoleShopStore, active_holders
from .adapters import AccountDirectory, Assignment, RoleSyncAdapter

logger = logging.getLogger(__name__)

# Roles of these entitlements must be held by nobody.
_WITHDRAWN_STATUSES = (EntitlementStatus.SUSPENDED, EntitlementStatus.SOLD)


@dataclass
class RoleReconciler:
    """Computes who should hold each external role and pushes the difference.

    Every pass recomputes the full desired state, so anything a previous pass
    failed to apply is retried on the next one.
    """

    store: RoleShopStore
    adapter: RoleSyncAdapter
    directory: AccountDirectory

    def materialize_missing(self) -> Tuple[int, int]:
        """Create external roles for ACTIVE entitlements lacking one.

        Returns ``(materialized, failures)``.
        """

        with self.store.unit_of_work() as uow:
            pending = [
                entitlement
                for entitlement in uow.entitlements.list_by_status(EntitlementStatus.ACTIVE)
                if not entitlement.external_role_ref
            ]

        materialized = failures = 0
        for entitlement in pending:
            try:
                ref = self.adapter.materialize(entitlement.label, entitlement.attributes)
            except Exception:
                failures += 1
                logger.warning(
                    "Failed to create external role",
                    exc_info=True,
                    extra={"entitlement_id": entitlement.id},
                )
                continue
            with self.store.unit_of_work() as uow:
                current = uow.entitlements.get(entitlement.id, for_update=True)
                if current is None or current.external_role_ref:
                    continue
                uow.entitlements.save(current.model_copy(update={"external_role_ref": ref}))
            materialized += 1
            logger.info(
                "External role created",
                extra={"entitlement_id": entitlement.id, "external_role_ref": ref},
            )
        return materialized, failures

    def desired_state(self) -> Tuple[Set[Assignment], Set[str]]:
        """Desired assignments and the set of role references this engine manages.

        TRANSFERRING entitlements are excluded from both, leaving their
        assignments as they are until the auction settles.
        """

        holders: List[Tuple[int, str, int]] = []
        managed: Set[str] = set()
        with self.store.unit_of_work() as uow:
            for entitlement in uow.entitlements.list_by_status(EntitlementStatus.ACTIVE):
                ref = entitlement.external_role_ref
                if not ref:
                    continue
                managed.add(ref)
                holders.extend((entitlement.id, ref, account_id) for account_id in active_holders(uow, entitlement))
            for status in _WITHDRAWN_STATUSES:
                for entitlement in uow.entitlements.list_by_status(status):
                    if entitlement.external_role_ref:
                        managed.add(entitlement.external_role_ref)

        # One lookup for every holder of every role.
        members = self.directory.resolve_many({account_id for _, _, account_id in holders})
        desired: Set[Assignment] = set()
        for entitlement_id, ref, account_id in holders:
            member = members.get(account_id)
            if member is None:
                logger.warning(
                    "No external identity for account",
                    extra={"account_id": account_id, "entitlement_id": entitlement_id},
                )
                continue
            desired.add((ref, member))
        return desired, managed

    def reconcile_all(self) -> ReconciliationSummary:
        materialized, failures = self.materialize_missing()
        desired, managed = self.desired_state()

        try:
            communities = list(self.adapter.communities())
        except Exception:
            logger.warning("Failed to list communities for role sync", exc_info=True)
            return ReconciliationSummary(materialized=materialized, failures=failures + 1)

        granted = revoked = 0
        for community_id in communities:
            try:
                delta = self.adapter.reconcile(community_id, desired, managed)
            except Exception:
                failures += 1
                logger.warning(
                    "Role reconciliation failed",
                    exc_info=True,
                    extra={"community_id": community_id},
                )
                continue
            granted += delta.granted
            revoked += delta.revoked
            failures += delta.failures

        summary = ReconciliationSummary(
            communities=len(communities),
            materialized=materialized,
            granted=granted,
            revoked=revoked,
            failures=failures,
        )
        logger.info("Role reconciliation finished", extra=summary.model_dump())
        return summary

    def ping(self) -> bool:
        try:
            return bool(self.adapter.ping())
        except Exception:
            logger.warning("Role sync adapter ping failed", exc_info=True)
            return False

    def entitlement_deactivated(self, entitlement: Entitlement) -> None:
        """Remove the entitlement's external role from every member right away."""

        ref = entitlement.external_role_ref
        if not ref:
            return
        for community_id in self.adapter.communities():
            try:
                self.adapter.reconcile(community_id, set(), {ref})
            except Exception:
                logger.warning(
                    "Failed to withdraw external role; next reconciliation will retry",
                    exc_info=True,
                    extra={"community_id": community_id, "entitlement_id": entitlement.id},
                )


__all__ = ["RoleReconciler"]
