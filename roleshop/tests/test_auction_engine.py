"""Unit tests for role auctions."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from threading import Barrier

from roleshop.app.roles import (
    AuctionEngine,
    CustomRoleAttributes,
    EntitlementStatus,
    HistoryActionType,
    InMemoryRoleShopStore,
    InventoryStore,
    SharingRegistry,
    SharingStatus,
    ShopConfig,
    ShopItemType,
)

NOW = datetime(2024, 5, 10, 9, tzinfo=timezone.utc)

SELLER = 1
BIDDER_A = 2
BIDDER_B = 3


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _setup():
    store = InMemoryRoleShopStore()
    store.configs[ShopItemType.CUSTOM_ROLE] = ShopConfig(
        price=1000,
        maintenance_cost=50,
        max_auction_days=7,
        min_starting_bid=10,
    )
    store.open_account(SELLER, 1000)
    store.open_account(BIDDER_A, 500)
    store.open_account(BIDDER_B, 500)
    clock = _Clock(NOW)
    inventory = InventoryStore(store=store, clock=clock)
    engine = AuctionEngine(store=store, clock=clock)
    entitlement = inventory.purchase(SELLER, "Royal", CustomRoleAttributes(color="#123456")).data["entitlement"]
    return store, engine, clock, entitlement


def test_auction_transfers_ownership_to_highest_bidder() -> None:
    store, engine, clock, entitlement = _setup()

    started = engine.start(SELLER, entitlement.id, 100, 3)
    assert started.success is True
    assert started.data["entitlement"].status == EntitlementStatus.TRANSFERRING
    assert started.data["entitlement"].auction.current_bid == 100

    assert engine.bid(BIDDER_A, entitlement.id, 150).success is True

    low = engine.bid(BIDDER_B, entitlement.id, 120)
    assert low.success is False
    assert low.code == "bid_too_low"
    assert low.data["current_bid"] == 150
    auction = store.entitlements[entitlement.id].auction
    assert auction.current_bid == 150
    assert auction.current_bidder_account_id == BIDDER_A
    assert store.balance_of(BIDDER_B) == 500

    clock.now = NOW + timedelta(days=3, seconds=1)
    completed = engine.complete(entitlement.id)

    assert completed.success is True
    assert completed.data["transferred"] is True
    assert completed.data["price"] == 150
    transferred = store.entitlements[entitlement.id]
    assert transferred.owner_account_id == BIDDER_A
    assert transferred.status == EntitlementStatus.ACTIVE
    assert transferred.auction is None
    assert store.balance_of(SELLER) == 150
    assert store.balance_of(BIDDER_A) == 350
    assert store.balance_of(BIDDER_B) == 500
    transfer_record = store.history[-1]
    assert transfer_record.action_type == HistoryActionType.TRANSFER_COMPLETED
    assert transfer_record.actor_account_id == BIDDER_A
    assert transfer_record.counterparty_account_id == SELLER
    assert transfer_record.amount == 150


def test_settlement_conserves_currency() -> None:
    store, engine, clock, entitlement = _setup()
    engine.start(SELLER, entitlement.id, 100, 1)
    engine.bid(BIDDER_B, entitlement.id, 300)
    before = sum(store.balances.values())

    clock.now = NOW + timedelta(days=2)
    engine.complete(entitlement.id)

    assert sum(store.balances.values()) == before


def test_accepted_bids_strictly_increase() -> None:
    store, engine, _, entitlement = _setup()
    engine.start(SELLER, entitlement.id, 100, 2)

    assert engine.bid(BIDDER_A, entitlement.id, 100).code == "bid_too_low"
    assert engine.bid(BIDDER_A, entitlement.id, 101).success is True
    assert engine.bid(BIDDER_B, entitlement.id, 101).code == "bid_too_low"
    assert engine.bid(BIDDER_B, entitlement.id, 200).success is True

    bids = [r.amount for r in store.history if r.action_type == HistoryActionType.AUCTION_BID]
    assert bids == [101, 200]


def test_bid_rejections() -> None:
    store, engine, clock, entitlement = _setup()

    assert engine.bid(BIDDER_A, entitlement.id, 150).code == "invalid_state"

    engine.start(SELLER, entitlement.id, 100, 2)
    assert engine.bid(SELLER, entitlement.id, 150).code == "self_target"
    assert engine.bid(99, entitlement.id, 150).code == "unknown_account"
    broke = engine.bid(BIDDER_A, entitlement.id, 600)
    assert broke.code == "insufficient_funds"
    assert broke.data == {"balance": 500, "required": 600}

    clock.now = NOW + timedelta(days=2)
    assert engine.bid(BIDDER_A, entitlement.id, 150).code == "auction_closed"


def test_start_validates_owner_and_duration() -> None:
    store, engine, _, entitlement = _setup()

    assert engine.start(BIDDER_A, entitlement.id, 100, 3).code == "not_owner"
    assert engine.start(SELLER, entitlement.id, 100, 8).code == "auction_too_long"
    assert engine.start(SELLER, entitlement.id, 100, 0).code == "invalid_amount"
    assert engine.start(SELLER, entitlement.id, 5, 3).code == "invalid_amount"
    assert store.entitlements[entitlement.id].status == EntitlementStatus.ACTIVE

    assert engine.start(SELLER, entitlement.id, 100, 7).success is True
    assert engine.start(SELLER, entitlement.id, 100, 3).code == "invalid_state"


def test_auction_without_bids_returns_role_to_owner() -> None:
    store, engine, clock, entitlement = _setup()
    engine.start(SELLER, entitlement.id, 100, 1)
    clock.now = NOW + timedelta(days=1, minutes=1)

    result = engine.complete(entitlement.id)

    assert result.success is True
    assert result.data["transferred"] is False
    returned = store.entitlements[entitlement.id]
    assert returned.status == EntitlementStatus.ACTIVE
    assert returned.owner_account_id == SELLER
    assert returned.auction is None
    assert store.history[-1].action_type == HistoryActionType.AUCTION_CANCELLED


def test_settlement_fails_when_winner_spent_funds() -> None:
    store, engine, clock, entitlement = _setup()
    engine.start(SELLER, entitlement.id, 100, 1)
    engine.bid(BIDDER_A, entitlement.id, 400)
    store.balances[BIDDER_A] = 50
    clock.now = NOW + timedelta(days=2)

    result = engine.complete(entitlement.id)

    assert result.success is False
    assert result.code == "settlement_failed"
    assert result.data["winner_account_id"] == BIDDER_A
    assert result.data["required"] == 400
    returned = store.entitlements[entitlement.id]
    assert returned.status == EntitlementStatus.ACTIVE
    assert returned.owner_account_id == SELLER
    assert returned.auction is None
    assert store.balance_of(SELLER) == 0
    assert store.balance_of(BIDDER_A) == 50


def test_complete_is_noop_without_running_auction() -> None:
    store, engine, _, entitlement = _setup()

    result = engine.complete(entitlement.id)

    assert result.success is True
    assert result.data["changed"] is False
    assert len(store.history) == 1


def test_transfer_revokes_existing_shares() -> None:
    store, engine, clock, entitlement = _setup()
    store.open_account(4, 0)
    SharingRegistry(store=store, clock=clock).share(SELLER, entitlement.id, 4)
    engine.start(SELLER, entitlement.id, 100, 1)
    engine.bid(BIDDER_A, entitlement.id, 150)
    clock.now = NOW + timedelta(days=2)

    result = engine.complete(entitlement.id)

    assert result.data["revoked_grants"] == 1
    assert [grant.status for grant in store.grants.values()] == [SharingStatus.REVOKED]


def test_list_active_auctions_orders_by_end_time() -> None:
    store, engine, clock, first = _setup()
    inventory = InventoryStore(store=store, clock=clock)
    store.balances[BIDDER_A] = 2000
    second = inventory.purchase(BIDDER_A, "Knight", CustomRoleAttributes(color="#654321")).data["entitlement"]
    engine.start(SELLER, first.id, 100, 5)
    engine.start(BIDDER_A, second.id, 100, 2)

    assert [e.id for e in engine.list_active_auctions()] == [second.id, first.id]


def test_concurrent_equal_bids_accept_exactly_one() -> None:
    store, engine, _, entitlement = _setup()
    engine.start(SELLER, entitlement.id, 100, 3)
    barrier = Barrier(2)

    def _bid(account_id: int):
        barrier.wait()
        return engine.bid(account_id, entitlement.id, 150)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = dict(zip((BIDDER_A, BIDDER_B), pool.map(_bid, (BIDDER_A, BIDDER_B))))

    accepted = [bidder for bidder, result in results.items() if result.success]
    rejected = [result.code for result in results.values() if not result.success]
    assert len(accepted) == 1
    assert rejected == ["bid_too_low"]
    auction = store.entitlements[entitlement.id].auction
    assert auction.current_bid == 150
    assert auction.current_bidder_account_id == accepted[0]
