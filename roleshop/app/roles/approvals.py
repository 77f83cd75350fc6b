"""Moderated role creation requests."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from .config import load_config, validate_label
from .exceptions import ErrorCode, InsufficientFundsError, RoleShopError
from .history import record
from .inventory import create_entitlement, require_account
from .models import (
    ApprovalStatus,
    CustomRoleAttributes,
    HistoryActionType,
    OperationResult,
    RoleApproval,
    current_time,
)
from .store import RoleShopStore, RoleShopUnitOfWork, run_in_transaction

logger = logging.getLogger(__name__)


def _require_pending(uow: RoleShopUnitOfWork, approval_id: int) -> RoleApproval:
    approval = uow.approvals.get(approval_id, for_update=True)
    if approval is None:
        raise RoleShopError(ErrorCode.UNKNOWN_APPROVAL, f"Request {approval_id} does not exist")
    if approval.status != ApprovalStatus.PENDING:
        raise RoleShopError(
            ErrorCode.APPROVAL_PROCESSED,
            "This request has already been processed",
            detail={"status": approval.status.value},
        )
    return approval


@dataclass
class RoleApprovalService:
    """Members request a role; moderators approve (and charge) or reject it."""

    store: RoleShopStore
    clock: Optional[Callable[[], datetime]] = None

    def create_request(
        self,
        account_id: int,
        label: str,
        attributes: CustomRoleAttributes,
        *,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        now = current_time(self.clock)

        def _create(uow: RoleShopUnitOfWork) -> OperationResult:
            config = load_config(uow)
            if not config.is_enabled:
                raise RoleShopError(ErrorCode.SHOP_DISABLED, "The role shop is currently closed")
            normalized = validate_label(config, label)
            if uow.entitlements.find_by_label(normalized) is not None:
                raise RoleShopError(ErrorCode.LABEL_TAKEN, f"A role named {normalized!r} already exists")
            if uow.approvals.find_pending_for_account(account_id) is not None:
                raise RoleShopError(ErrorCode.APPROVAL_PENDING, "You already have a pending role request")
            balance = require_account(uow, account_id)
            if balance < config.price:
                raise InsufficientFundsError(balance=balance, required=config.price)

            approval = uow.approvals.add(
                RoleApproval(
                    account_id=account_id,
                    label=normalized,
                    attributes=attributes,
                    metadata={
                        **dict(metadata or {}),
                        "quoted_price": str(config.price),
                        "balance_at_request": str(balance),
                    },
                    created_at=now,
                )
            )
            logger.info(
                "Role request created",
                extra={"approval_id": approval.id, "account_id": account_id},
            )
            return OperationResult.ok("Role request submitted for moderation", approval=approval)

        return run_in_transaction(self.store, _create, operation="create_role_request")

    def approve(self, approval_id: int, moderator_account_id: int) -> OperationResult:
        now = current_time(self.clock)

        def _approve(uow: RoleShopUnitOfWork) -> OperationResult:
            approval = _require_pending(uow, approval_id)
            config = load_config(uow)

            rejection: Optional[RoleShopError] = None
            if uow.entitlements.find_by_label(approval.label) is not None:
                rejection = RoleShopError(ErrorCode.LABEL_TAKEN, "A role with this name has already been created")
            else:
                balance = require_account(uow, approval.account_id)
                if balance < config.price:
                    rejection = InsufficientFundsError(
                        balance=balance,
                        required=config.price,
                        message="The member can no longer afford this role",
                    )
            if rejection is not None:
                # Returned rather than raised so that the rejection is committed.
                uow.approvals.save(
                    approval.model_copy(
                        update={
                            "status": ApprovalStatus.REJECTED,
                            "moderator_account_id": moderator_account_id,
                            "rejection_reason": rejection.message,
                            "processed_at": now,
                        }
                    )
                )
                return OperationResult.failure(rejection)

            entitlement = create_entitlement(
                uow,
                config,
                account_id=approval.account_id,
                label=approval.label,
                attributes=approval.attributes,
                now=now,
            )
            updated = uow.approvals.save(
                approval.model_copy(
                    update={
                        "status": ApprovalStatus.APPROVED,
                        "moderator_account_id": moderator_account_id,
                        "processed_at": now,
                    }
                )
            )
            record(
                uow,
                HistoryActionType.ROLE_CREATED,
                actor_account_id=approval.account_id,
                counterparty_account_id=moderator_account_id,
                entitlement_id=entitlement.id,
                amount=config.price,
                details=f"Role {entitlement.label} approved by moderator {moderator_account_id}",
                timestamp=now,
            )
            logger.info(
                "Role request approved",
                extra={"approval_id": approval_id, "moderator_account_id": moderator_account_id},
            )
            return OperationResult.ok("Role approved and created", approval=updated, entitlement=entitlement)

        return run_in_transaction(self.store, _approve, operation="approve_role")

    def reject(self, approval_id: int, moderator_account_id: int, reason: str) -> OperationResult:
        now = current_time(self.clock)

        def _reject(uow: RoleShopUnitOfWork) -> OperationResult:
            approval = _require_pending(uow, approval_id)
            updated = uow.approvals.save(
                approval.model_copy(
                    update={
                        "status": ApprovalStatus.REJECTED,
                        "moderator_account_id": moderator_account_id,
                        "rejection_reason": reason.strip() or None,
                        "processed_at": now,
                    }
                )
            )
            logger.info(
                "Role request rejected",
                extra={"approval_id": approval_id, "moderator_account_id": moderator_account_id},
            )
            return OperationResult.ok("Role request rejected", approval=updated)

        return run_in_transaction(self.store, _reject, operation="reject_role")

    def cancel(self, account_id: int, approval_id: int) -> OperationResult:
        now = current_time(self.clock)

        def _cancel(uow: RoleShopUnitOfWork) -> OperationResult:
            approval = uow.approvals.get(approval_id, for_update=True)
            if approval is None or approval.account_id != account_id:
                raise RoleShopError(ErrorCode.UNKNOWN_APPROVAL, f"Request {approval_id} does not exist")
            approval = _require_pending(uow, approval_id)
            updated = uow.approvals.save(
                approval.model_copy(update={"status": ApprovalStatus.CANCELLED, "processed_at": now})
            )
            return OperationResult.ok("Role request cancelled", approval=updated)

        return run_in_transaction(self.store, _cancel, operation="cancel_role_request")

    def list_pending(self, account_id: Optional[int] = None) -> List[RoleApproval]:
        with self.store.unit_of_work() as uow:
            return list(uow.approvals.list_pending(account_id))

    def stats(self) -> Dict[str, int]:
        with self.store.unit_of_work() as uow:
            counts = uow.approvals.count_by_status()
        return {status.value: counts.get(status, 0) for status in ApprovalStatus}


__all__ = ["RoleApprovalService"]
