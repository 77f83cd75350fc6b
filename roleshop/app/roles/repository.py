"""PostgreSQL persistence for the role shop."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, Optional, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import ErrorCode, RoleShopError
from .models import (
    ApprovalStatus,
    Auction,
    CustomRoleAttributes,
    Entitlement,
    EntitlementKind,
    EntitlementStatus,
    HistoryActionType,
    HistoryRecord,
    RoleApproval,
    SharingGrant,
    SharingStatus,
    ShopConfig,
    ShopItemType,
)

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS roleshop_accounts (
        account_id BIGINT PRIMARY KEY,
        external_id TEXT,
        balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS roleshop_entitlements (
        id BIGSERIAL PRIMARY KEY,
        owner_account_id BIGINT NOT NULL REFERENCES roleshop_accounts (account_id),
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        label TEXT NOT NULL,
        color TEXT NOT NULL,
        description TEXT,
        purchase_price BIGINT NOT NULL CHECK (purchase_price >= 0),
        maintenance_cost BIGINT NOT NULL CHECK (maintenance_cost >= 0),
        purchase_date TIMESTAMPTZ NOT NULL,
        last_maintenance_date TIMESTAMPTZ,
        next_maintenance_date TIMESTAMPTZ,
        external_role_ref TEXT,
        last_reminder_days INTEGER,
        auction_start_time TIMESTAMPTZ,
        auction_end_time TIMESTAMPTZ,
        auction_starting_bid BIGINT,
        auction_current_bid BIGINT,
        auction_current_bidder BIGINT REFERENCES roleshop_accounts (account_id),
        auction_is_active BOOLEAN,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK ((status = 'transferring') = (auction_end_time IS NOT NULL)),
        CHECK (auction_current_bid IS NULL OR auction_current_bid >= auction_starting_bid)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS roleshop_entitlements_live_label
        ON roleshop_entitlements (lower(label))
        WHERE status <> 'sold'
    """,
    """
    CREATE INDEX IF NOT EXISTS roleshop_entitlements_status_idx
        ON roleshop_entitlements (status, next_maintenance_date)
    """,
    """
    CREATE TABLE IF NOT EXISTS roleshop_sharing_grants (
        id BIGSERIAL PRIMARY KEY,
        entitlement_id BIGINT NOT NULL REFERENCES roleshop_entitlements (id),
        owner_account_id BIGINT NOT NULL REFERENCES roleshop_accounts (account_id),
        grantee_account_id BIGINT NOT NULL REFERENCES roleshop_accounts (account_id),
        status TEXT NOT NULL,
        granted_date TIMESTAMPTZ NOT NULL,
        revoked_date TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS roleshop_sharing_grants_active_pair
        ON roleshop_sharing_grants (entitlement_id, grantee_account_id)
        WHERE status = 'active'
    """,
    """
    CREATE TABLE IF NOT EXISTS roleshop_history (
        id BIGSERIAL PRIMARY KEY,
        entitlement_id BIGINT REFERENCES roleshop_entitlements (id) ON DELETE SET NULL,
        action_type TEXT NOT NULL,
        actor_account_id BIGINT NOT NULL,
        counterparty_account_id BIGINT,
        amount BIGINT,
        details TEXT,
        occurred_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS roleshop_history_occurred_idx
        ON roleshop_history (occurred_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS roleshop_shop_config (
        item_type TEXT PRIMARY KEY,
        price BIGINT NOT NULL CHECK (price >= 0),
        maintenance_cost BIGINT,
        maintenance_interval_days INTEGER NOT NULL,
        max_sharing_slots INTEGER NOT NULL,
        max_auction_days INTEGER NOT NULL,
        slot_refund_rate NUMERIC(5, 4) NOT NULL CHECK (slot_refund_rate BETWEEN 0 AND 1),
        is_enabled BOOLEAN NOT NULL,
        max_label_length INTEGER NOT NULL,
        banned_labels TEXT[] NOT NULL DEFAULT '{}',
        min_starting_bid BIGINT NOT NULL,
        version INTEGER NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS roleshop_role_approvals (
        id BIGSERIAL PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES roleshop_accounts (account_id),
        label TEXT NOT NULL,
        color TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL,
        moderator_account_id BIGINT,
        rejection_reason TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        processed_at TIMESTAMPTZ
    )
    """,
)


def _row_to_entitlement(row: dict) -> Entitlement:
    auction = None
    if row.get("auction_end_time") is not None:
        auction = Auction(
            start_time=row["auction_start_time"],
            end_time=row["auction_end_time"],
            starting_bid=int(row["auction_starting_bid"]),
            current_bid=int(row["auction_current_bid"]),
            current_bidder_account_id=row.get("auction_current_bidder"),
            is_active=bool(row.get("auction_is_active")),
        )
    return Entitlement(
        id=row["id"],
        owner_account_id=row["owner_account_id"],
        kind=EntitlementKind(row["kind"]),
        status=EntitlementStatus(row["status"]),
        label=row["label"],
        attributes=CustomRoleAttributes(color=row["color"], description=row.get("description")),
        purchase_price=int(row["purchase_price"]),
        maintenance_cost=int(row["maintenance_cost"]),
        purchase_date=row["purchase_date"],
        last_maintenance_date=row.get("last_maintenance_date"),
        next_maintenance_date=row.get("next_maintenance_date"),
        external_role_ref=row.get("external_role_ref"),
        auction=auction,
        last_reminder_days=row.get("last_reminder_days"),
        updated_at=row["updated_at"],
    )


def _entitlement_params(entitlement: Entitlement) -> dict:
    auction = entitlement.auction
    return {
        "id": entitlement.id,
        "owner_account_id": entitlement.owner_account_id,
        "kind": entitlement.kind.value,
        "status": entitlement.status.value,
        "label": entitlement.label,
        "color": entitlement.attributes.color,
        "description": entitlement.attributes.description,
        "purchase_price": entitlement.purchase_price,
        "maintenance_cost": entitlement.maintenance_cost,
        "purchase_date": entitlement.purchase_date,
        "last_maintenance_date": entitlement.last_maintenance_date,
        "next_maintenance_date": entitlement.next_maintenance_date,
        "external_role_ref": entitlement.external_role_ref,
        "last_reminder_days": entitlement.last_reminder_days,
        "auction_start_time": auction.start_time if auction else None,
        "auction_end_time": auction.end_time if auction else None,
        "auction_starting_bid": auction.starting_bid if auction else None,
        "auction_current_bid": auction.current_bid if auction else None,
        "auction_current_bidder": auction.current_bidder_account_id if auction else None,
        "auction_is_active": auction.is_active if auction else None,
        "updated_at": entitlement.updated_at,
    }


def _row_to_grant(row: dict) -> SharingGrant:
    return SharingGrant(
        id=row["id"],
        entitlement_id=row["entitlement_id"],
        owner_account_id=row["owner_account_id"],
        grantee_account_id=row["grantee_account_id"],
        status=SharingStatus(row["status"]),
        granted_date=row["granted_date"],
        revoked_date=row.get("revoked_date"),
    )


def _row_to_history(row: dict) -> HistoryRecord:
    return HistoryRecord(
        id=row["id"],
        entitlement_id=row.get("entitlement_id"),
        action_type=HistoryActionType(row["action_type"]),
        actor_account_id=row["actor_account_id"],
        counterparty_account_id=row.get("counterparty_account_id"),
        amount=row.get("amount"),
        details=row.get("details"),
        timestamp=row["occurred_at"],
    )


def _row_to_config(row: dict) -> ShopConfig:
    return ShopConfig(
        item_type=ShopItemType(row["item_type"]),
        price=int(row["price"]),
        maintenance_cost=row.get("maintenance_cost"),
        maintenance_interval_days=row["maintenance_interval_days"],
        max_sharing_slots=row["max_sharing_slots"],
        max_auction_days=row["max_auction_days"],
        slot_refund_rate=float(row["slot_refund_rate"]),
        is_enabled=bool(row["is_enabled"]),
        max_label_length=row["max_label_length"],
        banned_labels=tuple(row.get("banned_labels") or ()),
        min_starting_bid=int(row["min_starting_bid"]),
        version=row["version"],
        updated_at=row["updated_at"],
    )


def _row_to_approval(row: dict) -> RoleApproval:
    return RoleApproval(
        id=row["id"],
        account_id=row["account_id"],
        label=row["label"],
        attributes=CustomRoleAttributes(color=row["color"], description=row.get("description")),
        status=ApprovalStatus(row["status"]),
        moderator_account_id=row.get("moderator_account_id"),
        rejection_reason=row.get("rejection_reason"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        processed_at=row.get("processed_at"),
    )


class _PostgresEntitlements:
    _COLUMNS = (
        "owner_account_id, kind, status, label, color, description, purchase_price, maintenance_cost, "
        "purchase_date, last_maintenance_date, next_maintenance_date, external_role_ref, last_reminder_days, "
        "auction_start_time, auction_end_time, auction_starting_bid, auction_current_bid, "
        "auction_current_bidder, auction_is_active, updated_at"
    )

    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def get(self, entitlement_id: int, *, for_update: bool = False) -> Optional[Entitlement]:
        lock = " FOR UPDATE" if for_update else ""
        self._cursor.execute(f"SELECT * FROM roleshop_entitlements WHERE id = %s{lock}", (entitlement_id,))
        row = self._cursor.fetchone()
        return _row_to_entitlement(row) if row else None

    def find_by_label(self, label: str) -> Optional[Entitlement]:
        self._cursor.execute(
            """
            SELECT *
            FROM roleshop_entitlements
            WHERE lower(label) = lower(%s) AND status <> 'sold'
            LIMIT 1
            """,
            (label,),
        )
        row = self._cursor.fetchone()
        return _row_to_entitlement(row) if row else None

    def add(self, entitlement: Entitlement) -> Entitlement:
        placeholders = ", ".join(f"%({name.strip()})s" for name in self._COLUMNS.split(","))
        try:
            self._cursor.execute(
                f"INSERT INTO roleshop_entitlements ({self._COLUMNS}) VALUES ({placeholders}) RETURNING *",
                _entitlement_params(entitlement),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise RoleShopError(ErrorCode.LABEL_TAKEN, f"A role named {entitlement.label!r} already exists") from exc
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist entitlement")
        return _row_to_entitlement(row)

    def save(self, entitlement: Entitlement) -> Entitlement:
        assignments = ", ".join(f"{name.strip()} = %({name.strip()})s" for name in self._COLUMNS.split(","))
        try:
            self._cursor.execute(
                f"UPDATE roleshop_entitlements SET {assignments} WHERE id = %(id)s RETURNING *",
                _entitlement_params(entitlement),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise RoleShopError(ErrorCode.LABEL_TAKEN, f"A role named {entitlement.label!r} already exists") from exc
        row = self._cursor.fetchone()
        if not row:
            raise KeyError(f"Unknown entitlement {entitlement.id}")
        return _row_to_entitlement(row)

    def list_by_owner(self, account_id: int) -> Sequence[Entitlement]:
        self._cursor.execute(
            "SELECT * FROM roleshop_entitlements WHERE owner_account_id = %s ORDER BY purchase_date",
            (account_id,),
        )
        return [_row_to_entitlement(row) for row in self._cursor.fetchall()]

    def list_by_status(self, status: EntitlementStatus) -> Sequence[Entitlement]:
        self._cursor.execute(
            "SELECT * FROM roleshop_entitlements WHERE status = %s ORDER BY id",
            (status.value,),
        )
        return [_row_to_entitlement(row) for row in self._cursor.fetchall()]

    def count_by_status(self) -> Dict[EntitlementStatus, int]:
        self._cursor.execute("SELECT status, COUNT(*) AS total FROM roleshop_entitlements GROUP BY status")
        counts = {status: 0 for status in EntitlementStatus}
        for row in self._cursor.fetchall():
            counts[EntitlementStatus(row["status"])] = int(row["total"])
        return counts


class _PostgresGrants:
    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def add(self, grant: SharingGrant) -> SharingGrant:
        try:
            self._cursor.execute(
                """
                INSERT INTO roleshop_sharing_grants (
                    entitlement_id, owner_account_id, grantee_account_id, status, granted_date, revoked_date
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    grant.entitlement_id,
                    grant.owner_account_id,
                    grant.grantee_account_id,
                    grant.status.value,
                    grant.granted_date,
                    grant.revoked_date,
                ),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise RoleShopError(ErrorCode.ALREADY_SHARED, "This member already has the role") from exc
        return _row_to_grant(self._cursor.fetchone())

    def save(self, grant: SharingGrant) -> SharingGrant:
        self._cursor.execute(
            """
            UPDATE roleshop_sharing_grants
            SET status = %s, revoked_date = %s
            WHERE id = %s
            RETURNING *
            """,
            (grant.status.value, grant.revoked_date, grant.id),
        )
        return _row_to_grant(self._cursor.fetchone())

    def get_active(self, entitlement_id: int, grantee_account_id: int) -> Optional[SharingGrant]:
        self._cursor.execute(
            """
            SELECT *
            FROM roleshop_sharing_grants
            WHERE entitlement_id = %s AND grantee_account_id = %s AND status = 'active'
            FOR UPDATE
            """,
            (entitlement_id, grantee_account_id),
        )
        row = self._cursor.fetchone()
        return _row_to_grant(row) if row else None

    def list_active(self, entitlement_id: int) -> Sequence[SharingGrant]:
        self._cursor.execute(
            """
            SELECT *
            FROM roleshop_sharing_grants
            WHERE entitlement_id = %s AND status = 'active'
            ORDER BY granted_date
            """,
            (entitlement_id,),
        )
        return [_row_to_grant(row) for row in self._cursor.fetchall()]

    def list_active_for_grantee(self, account_id: int) -> Sequence[SharingGrant]:
        self._cursor.execute(
            """
            SELECT *
            FROM roleshop_sharing_grants
            WHERE grantee_account_id = %s AND status = 'active'
            ORDER BY granted_date
            """,
            (account_id,),
        )
        return [_row_to_grant(row) for row in self._cursor.fetchall()]

    def list_all_active(self) -> Sequence[SharingGrant]:
        self._cursor.execute("SELECT * FROM roleshop_sharing_grants WHERE status = 'active' ORDER BY id")
        return [_row_to_grant(row) for row in self._cursor.fetchall()]

    def close_all(self, entitlement_id: int, status: SharingStatus, closed_at: datetime) -> int:
        self._cursor.execute(
            """
            UPDATE roleshop_sharing_grants
            SET status = %s, revoked_date = %s
            WHERE entitlement_id = %s AND status = 'active'
            """,
            (status.value, closed_at, entitlement_id),
        )
        return self._cursor.rowcount

    def count_active(self) -> int:
        self._cursor.execute("SELECT COUNT(*) AS total FROM roleshop_sharing_grants WHERE status = 'active'")
        return int(self._cursor.fetchone()["total"])


class _PostgresHistory:
    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def append(self, record: HistoryRecord) -> HistoryRecord:
        self._cursor.execute(
            """
            INSERT INTO roleshop_history (
                entitlement_id, action_type, actor_account_id, counterparty_account_id, amount, details, occurred_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                record.entitlement_id,
                record.action_type.value,
                record.actor_account_id,
                record.counterparty_account_id,
                record.amount,
                record.details,
                record.timestamp,
            ),
        )
        return _row_to_history(self._cursor.fetchone())

    def list_for_account(self, account_id: int, limit: int) -> Sequence[HistoryRecord]:
        self._cursor.execute(
            """
            SELECT *
            FROM roleshop_history
            WHERE actor_account_id = %s OR counterparty_account_id = %s
            ORDER BY occurred_at DESC, id DESC
            LIMIT %s
            """,
            (account_id, account_id, limit),
        )
        return [_row_to_history(row) for row in self._cursor.fetchall()]

    def list_for_entitlement(self, entitlement_id: int) -> Sequence[HistoryRecord]:
        self._cursor.execute(
            "SELECT * FROM roleshop_history WHERE entitlement_id = %s ORDER BY occurred_at, id",
            (entitlement_id,),
        )
        return [_row_to_history(row) for row in self._cursor.fetchall()]

    def purge_before(self, cutoff: datetime) -> int:
        self._cursor.execute("DELETE FROM roleshop_history WHERE occurred_at < %s", (cutoff,))
        return self._cursor.rowcount


class _PostgresConfigs:
    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def get(self, item_type: ShopItemType) -> Optional[ShopConfig]:
        self._cursor.execute("SELECT * FROM roleshop_shop_config WHERE item_type = %s", (item_type.value,))
        row = self._cursor.fetchone()
        return _row_to_config(row) if row else None

    def save(self, config: ShopConfig) -> ShopConfig:
        self._cursor.execute(
            """
            INSERT INTO roleshop_shop_config (
                item_type, price, maintenance_cost, maintenance_interval_days, max_sharing_slots,
                max_auction_days, slot_refund_rate, is_enabled, max_label_length, banned_labels,
                min_starting_bid, version, updated_at
            )
            VALUES (%(item_type)s, %(price)s, %(maintenance_cost)s, %(maintenance_interval_days)s,
                    %(max_sharing_slots)s, %(max_auction_days)s, %(slot_refund_rate)s, %(is_enabled)s,
                    %(max_label_length)s, %(banned_labels)s, %(min_starting_bid)s, %(version)s,
                    %(updated_at)s)
            ON CONFLICT (item_type) DO UPDATE SET
                price = EXCLUDED.price,
                maintenance_cost = EXCLUDED.maintenance_cost,
                maintenance_interval_days = EXCLUDED.maintenance_interval_days,
                max_sharing_slots = EXCLUDED.max_sharing_slots,
                max_auction_days = EXCLUDED.max_auction_days,
                slot_refund_rate = EXCLUDED.slot_refund_rate,
                is_enabled = EXCLUDED.is_enabled,
                max_label_length = EXCLUDED.max_label_length,
                banned_labels = EXCLUDED.banned_labels,
                min_starting_bid = EXCLUDED.min_starting_bid,
                version = EXCLUDED.version,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            {
                **config.model_dump(exclude={"item_type", "banned_labels"}),
                "item_type": config.item_type.value,
                "banned_labels": list(config.banned_labels),
            },
        )
        return _row_to_config(self._cursor.fetchone())


class _PostgresApprovals:
    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def add(self, approval: RoleApproval) -> RoleApproval:
        self._cursor.execute(
            """
            INSERT INTO roleshop_role_approvals (
                account_id, label, color, description, status, metadata, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                approval.account_id,
                approval.label,
                approval.attributes.color,
                approval.attributes.description,
                approval.status.value,
                psycopg2.extras.Json(approval.metadata),
                approval.created_at,
            ),
        )
        return _row_to_approval(self._cursor.fetchone())

    def get(self, approval_id: int, *, for_update: bool = False) -> Optional[RoleApproval]:
        lock = " FOR UPDATE" if for_update else ""
        self._cursor.execute(f"SELECT * FROM roleshop_role_approvals WHERE id = %s{lock}", (approval_id,))
        row = self._cursor.fetchone()
        return _row_to_approval(row) if row else None

    def save(self, approval: RoleApproval) -> RoleApproval:
        self._cursor.execute(
            """
            UPDATE roleshop_role_approvals
            SET status = %s,
                moderator_account_id = %s,
                rejection_reason = %s,
                metadata = %s,
                processed_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (
                approval.status.value,
                approval.moderator_account_id,
                approval.rejection_reason,
                psycopg2.extras.Json(approval.metadata),
                approval.processed_at,
                approval.id,
            ),
        )
        return _row_to_approval(self._cursor.fetchone())

    def list_pending(self, account_id: Optional[int] = None) -> Sequence[RoleApproval]:
        if account_id is None:
            self._cursor.execute(
                "SELECT * FROM roleshop_role_approvals WHERE status = 'pending' ORDER BY created_at"
            )
        else:
            self._cursor.execute(
                """
                SELECT *
                FROM roleshop_role_approvals
                WHERE status = 'pending' AND account_id = %s
                ORDER BY created_at
                """,
                (account_id,),
            )
        return [_row_to_approval(row) for row in self._cursor.fetchall()]

    def find_pending_for_account(self, account_id: int) -> Optional[RoleApproval]:
        pending = self.list_pending(account_id)
        return pending[0] if pending else None

    def count_by_status(self) -> Dict[ApprovalStatus, int]:
        self._cursor.execute("SELECT status, COUNT(*) AS total FROM roleshop_role_approvals GROUP BY status")
        counts = {status: 0 for status in ApprovalStatus}
        for row in self._cursor.fetchall():
            counts[ApprovalStatus(row["status"])] = int(row["total"])
        return counts


class _PostgresLedger:
    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def balance(self, account_id: int) -> Optional[int]:
        self._cursor.execute(
            "SELECT balance FROM roleshop_accounts WHERE account_id = %s FOR UPDATE",
            (account_id,),
        )
        row = self._cursor.fetchone()
        return int(row["balance"]) if row else None

    def debit(self, account_id: int, amount: int) -> bool:
        self._cursor.execute(
            """
            UPDATE roleshop_accounts
            SET balance = balance - %s
            WHERE account_id = %s AND balance >= %s
            RETURNING balance
            """,
            (amount, account_id, amount),
        )
        return self._cursor.fetchone() is not None

    def credit(self, account_id: int, amount: int) -> None:
        self._cursor.execute(
            "UPDATE roleshop_accounts SET balance = balance + %s WHERE account_id = %s RETURNING balance",
            (amount, account_id),
        )
        if self._cursor.fetchone() is None:
            raise RoleShopError(ErrorCode.UNKNOWN_ACCOUNT, f"Account {account_id} does not exist")


class _PostgresUnitOfWork:
    def __init__(self, cursor: PgCursor) -> None:
        self.entitlements = _PostgresEntitlements(cursor)
        self.grants = _PostgresGrants(cursor)
        self.history = _PostgresHistory(cursor)
        self.configs = _PostgresConfigs(cursor)
        self.approvals = _PostgresApprovals(cursor)
        self.ledger = _PostgresLedger(cursor)


class PostgresRoleShopStore:
    """Store backed by PostgreSQL; each unit of work is one database transaction."""

    def __init__(self, *, connection_factory: Optional[Callable[[], PgConnection]] = None) -> None:
        self._connect = connection_factory or get_conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        connection = self._connect()
        cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cursor
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            cursor.close()
            connection.close()

    @contextmanager
    def unit_of_work(self) -> Iterator[_PostgresUnitOfWork]:
        with self._cursor() as cursor:
            yield _PostgresUnitOfWork(cursor)

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    def ping(self) -> bool:
        try:
            with self._cursor() as cursor:
                cursor.execute("SELECT 1 AS ok")
                return cursor.fetchone() is not None
        except psycopg2.Error:
            logger.warning("Role shop database is unreachable", exc_info=True)
            return False

    def resolve_many(self, account_ids: Iterable[int]) -> Dict[int, str]:
        ids = sorted(set(account_ids))
        if not ids:
            return {}
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT account_id, external_id
                FROM roleshop_accounts
                WHERE account_id = ANY(%s) AND external_id IS NOT NULL
                """,
                (ids,),
            )
            rows = cursor.fetchall()
        return {int(row["account_id"]): str(row["external_id"]) for row in rows}


__all__ = ["PostgresRoleShopStore", "SCHEMA_STATEMENTS"]
