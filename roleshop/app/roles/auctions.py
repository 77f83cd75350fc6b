"""Timed auctions transferring an entitlement to the highest bidder."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import load_config
from .exceptions import ErrorCode, InsufficientFundsError, RoleShopError
from .history import record
from .inventory import require_account, require_entitlement, require_owner, require_status
from .models import (
    Auction,
    Entitlement,
    EntitlementStatus,
    HistoryActionType,
    OperationResult,
    SharingStatus,
    current_time,
)
from .store import RoleShopStore, RoleShopUnitOfWork, run_in_transaction

logger = logging.getLogger(__name__)


@dataclass
class AuctionEngine:
    """Starts auctions, accepts bids and settles finished auctions.

    Bids are not escrowed. The winner's balance is checked when the bid is
    placed and debited only when the auction is completed.
    """

    store: RoleShopStore
    clock: Optional[Callable[[], datetime]] = None

    def start(
        self,
        owner_account_id: int,
        entitlement_id: int,
        starting_bid: int,
        duration_days: int,
    ) -> OperationResult:
        now = current_time(self.clock)

        def _start(uow: RoleShopUnitOfWork) -> OperationResult:
            entitlement = require_entitlement(uow, entitlement_id)
            require_owner(entitlement, owner_account_id)
            require_status(entitlement, EntitlementStatus.ACTIVE)
            config = load_config(uow)
            if starting_bid < config.min_starting_bid:
                raise RoleShopError(
                    ErrorCode.INVALID_AMOUNT,
                    f"Starting bid must be at least {config.min_starting_bid}",
                    detail={"min_starting_bid": config.min_starting_bid},
                )
            if duration_days < 1:
                raise RoleShopError(ErrorCode.INVALID_AMOUNT, "Auction must last at least one day")
            if duration_days > config.max_auction_days:
                raise RoleShopError(
                    ErrorCode.AUCTION_TOO_LONG,
                    f"Auctions can last at most {config.max_auction_days} days",
                    detail={"max_auction_days": config.max_auction_days},
                )

            auction = Auction(
                start_time=now,
                end_time=now + timedelta(days=duration_days),
                starting_bid=starting_bid,
                current_bid=starting_bid,
            )
            updated = uow.entitlements.save(
                entitlement.model_copy(
                    update={"status": EntitlementStatus.TRANSFERRING, "auction": auction, "updated_at": now}
                )
            )
            record(
                uow,
                HistoryActionType.AUCTION_STARTED,
                actor_account_id=owner_account_id,
                entitlement_id=entitlement_id,
                amount=starting_bid,
                details=f"Auction ends {auction.end_time.isoformat()}",
                timestamp=now,
            )
            return OperationResult.ok(f"Auction for {entitlement.label} started", entitlement=updated)

        return run_in_transaction(self.store, _start, operation="start_auction")

    def bid(self, account_id: int, entitlement_id: int, amount: int) -> OperationResult:
        now = current_time(self.clock)

        def _bid(uow: RoleShopUnitOfWork) -> OperationResult:
            entitlement = require_entitlement(uow, entitlement_id)
            require_status(entitlement, EntitlementStatus.TRANSFERRING)
            auction = entitlement.auction
            if auction is None or not auction.is_open(now):
                raise RoleShopError(ErrorCode.AUCTION_CLOSED, "This auction has ended")
            if account_id == entitlement.owner_account_id:
                raise RoleShopError(ErrorCode.SELF_TARGET, "You cannot bid on your own role")
            if amount <= auction.current_bid:
                raise RoleShopError(
                    ErrorCode.BID_TOO_LOW,
                    f"Bid must be greater than {auction.current_bid}",
                    detail={"current_bid": auction.current_bid},
                )
            balance = require_account(uow, account_id)
            if balance < amount:
                raise InsufficientFundsError(balance=balance, required=amount)

            updated = uow.entitlements.save(
                entitlement.model_copy(
                    update={
                        "auction": auction.model_copy(
                            update={"current_bid": amount, "current_bidder_account_id": account_id}
                        ),
                        "updated_at": now,
                    }
                )
            )
            record(
                uow,
                HistoryActionType.AUCTION_BID,
                actor_account_id=account_id,
                counterparty_account_id=entitlement.owner_account_id,
                entitlement_id=entitlement_id,
                amount=amount,
                timestamp=now,
            )
            return OperationResult.ok(f"Bid of {amount} accepted", entitlement=updated)

        return run_in_transaction(self.store, _bid, operation="place_bid")

    def complete(self, entitlement_id: int) -> OperationResult:
        """Settle the auction of a TRANSFERRING entitlement.

        Settlement either moves the final bid from winner to seller and hands
        over ownership, or returns the entitlement ACTIVE to its owner.
        """

        now = current_time(self.clock)

        def _complete(uow: RoleShopUnitOfWork) -> OperationResult:
            entitlement = require_entitlement(uow, entitlement_id)
            auction = entitlement.auction
            if entitlement.status != EntitlementStatus.TRANSFERRING or auction is None or not auction.is_active:
                return OperationResult.ok("No auction to complete", entitlement=entitlement, changed=False)

            seller_id = entitlement.owner_account_id
            returned = entitlement.model_copy(
                update={"status": EntitlementStatus.ACTIVE, "auction": None, "updated_at": now}
            )
            if not auction.has_bidder:
                updated = uow.entitlements.save(returned)
                record(
                    uow,
                    HistoryActionType.AUCTION_CANCELLED,
                    actor_account_id=seller_id,
                    entitlement_id=entitlement_id,
                    details="Auction ended without bids",
                    timestamp=now,
                )
                return OperationResult.ok(
                    "Auction ended without bids", entitlement=updated, changed=True, transferred=False
                )

            winner_id = auction.current_bidder_account_id
            price = auction.current_bid
            winner_balance = uow.ledger.balance(winner_id)
            if winner_balance is None or not uow.ledger.debit(winner_id, price):
                updated = uow.entitlements.save(returned)
                record(
                    uow,
                    HistoryActionType.AUCTION_CANCELLED,
                    actor_account_id=seller_id,
                    counterparty_account_id=winner_id,
                    entitlement_id=entitlement_id,
                    amount=price,
                    details="Winning bidder could not pay the final bid",
                    timestamp=now,
                )
                logger.warning(
                    "Auction settlement failed",
                    extra={"entitlement_id": entitlement_id, "winner_account_id": winner_id, "price": price},
                )
                # Not raised: the return to ACTIVE must be committed.
                return OperationResult(
                    success=False,
                    message="The winning bidder can no longer pay; the role was returned to its owner",
                    code=ErrorCode.SETTLEMENT_FAILED.value,
                    data={
                        "entitlement": updated,
                        "changed": True,
                        "transferred": False,
                        "winner_account_id": winner_id,
                        "balance": winner_balance,
                        "required": price,
                    },
                )

            uow.ledger.credit(seller_id, price)
            revoked = uow.grants.close_all(entitlement_id, SharingStatus.REVOKED, now)
            updated = uow.entitlements.save(
                returned.model_copy(update={"owner_account_id": winner_id, "last_reminder_days": None})
            )
            record(
                uow,
                HistoryActionType.TRANSFER_COMPLETED,
                actor_account_id=winner_id,
                counterparty_account_id=seller_id,
                entitlement_id=entitlement_id,
                amount=price,
                details=f"Auction won for {price}",
                timestamp=now,
            )
            logger.info(
                "Auction settled",
                extra={
                    "entitlement_id": entitlement_id,
                    "seller_account_id": seller_id,
                    "winner_account_id": winner_id,
                    "price": price,
                },
            )
            return OperationResult.ok(
                f"Role {entitlement.label} transferred",
                entitlement=updated,
                changed=True,
                transferred=True,
                seller_account_id=seller_id,
                winner_account_id=winner_id,
                price=price,
                revoked_grants=revoked,
            )

        return run_in_transaction(self.store, _complete, operation="complete_auction")

    def list_active_auctions(self) -> List[Entitlement]:
        with self.store.unit_of_work() as uow:
            transferring = uow.entitlements.list_by_status(EntitlementStatus.TRANSFERRING)
        active = [e for e in transferring if e.auction is not None and e.auction.is_active]
        return sorted(active, key=lambda entitlement: entitlement.auction.end_time)


__all__ = ["AuctionEngine"]
