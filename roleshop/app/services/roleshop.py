"""Application wiring for the role shop service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import AbstractSet, Dict, Sequence
from uuid import uuid4

from ..role_sync import (
    Assignment,
    DiscordRoleSyncAdapter,
    ReconcileDelta,
    RoleReconciler,
    RoleSyncAdapter,
)
from ..roles import (
    CustomRoleAttributes,
    Entitlement,
    RoleShopNotifier,
    RoleShopService,
    RoleShopSettings,
    RoleShopStore,
    build_role_shop_service,
    load_role_shop_settings,
)
from ..roles.repository import PostgresRoleShopStore

logger = logging.getLogger("roleshop")

SANDBOX_COMMUNITY_ID = "sandbox"


class LoggingRoleShopNotifier(RoleShopNotifier):
    """Notifier that records member notifications to the application logger."""

    def maintenance_due(self, entitlement: Entitlement, days_left: int) -> None:
        logger.info(
            "Maintenance due for role %s owner=%s days_left=%s cost=%s",
            entitlement.label,
            entitlement.owner_account_id,
            days_left,
            entitlement.maintenance_cost,
        )

    def suspended(self, entitlement: Entitlement) -> None:
        logger.warning(
            "Role %s suspended for owner=%s after missed maintenance",
            entitlement.label,
            entitlement.owner_account_id,
        )

    def auction_settled(self, entitlement: Entitlement, seller_id: int, winner_id: int, price: int) -> None:
        logger.info(
            "Auction for role %s settled seller=%s winner=%s price=%s",
            entitlement.label,
            seller_id,
            winner_id,
            price,
        )


class SandboxRoleSyncAdapter(RoleSyncAdapter):
    """Adapter keeping assignments in memory for local development and tests."""

    def __init__(self) -> None:
        self.roles: Dict[str, str] = {}
        self.assignments: set[Assignment] = set()

    def communities(self) -> Sequence[str]:
        return [SANDBOX_COMMUNITY_ID]

    def materialize(self, label: str, attributes: CustomRoleAttributes) -> str:
        ref = f"role_{uuid4().hex[:12]}"
        self.roles[ref] = label
        logger.debug("Sandbox role %s created as %s color=%s", label, ref, attributes.color)
        return ref

    def reconcile(
        self,
        community_id: str,
        desired: AbstractSet[Assignment],
        managed_refs: AbstractSet[str],
    ) -> ReconcileDelta:
        current = {assignment for assignment in self.assignments if assignment[0] in managed_refs}
        wanted = {assignment for assignment in desired if assignment[0] in managed_refs}
        to_grant = wanted - current
        to_revoke = current - wanted
        self.assignments = (self.assignments - to_revoke) | to_grant
        return ReconcileDelta(granted=len(to_grant), revoked=len(to_revoke))

    def ping(self) -> bool:
        return True


def build_sync_adapter(settings: RoleShopSettings) -> RoleSyncAdapter:
    if settings.discord_bot_token and settings.discord_guild_id:
        return DiscordRoleSyncAdapter(
            token=settings.discord_bot_token,
            guild_id=settings.discord_guild_id,
            api_base=settings.discord_api_base,
            timeout=settings.discord_http_timeout,
        )
    logger.warning("Discord credentials missing; role sync runs against the sandbox adapter")
    return SandboxRoleSyncAdapter()


def create_role_shop_service(store: RoleShopStore, settings: RoleShopSettings) -> RoleShopService:
    adapter = build_sync_adapter(settings)
    return build_role_shop_service(
        store=store,
        synchronizer_factory=lambda s: RoleReconciler(store=s, adapter=adapter, directory=s),
        notifier=LoggingRoleShopNotifier(),
        settings=settings,
    )


@lru_cache()
def get_role_shop_settings() -> RoleShopSettings:
    return load_role_shop_settings()


@lru_cache()
def get_role_shop_service() -> RoleShopService:
    return create_role_shop_service(PostgresRoleShopStore(), get_role_shop_settings())


__all__ = [
    "LoggingRoleShopNotifier",
    "SandboxRoleSyncAdapter",
    "build_sync_adapter",
    "create_role_shop_service",
    "get_role_shop_service",
    "get_role_shop_settings",
]
