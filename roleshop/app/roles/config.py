"""Read-through access to the administratively managed shop configuration."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from .exceptions import ErrorCode, RoleShopError
from .models import OperationResult, ShopConfig, ShopItemType, current_time, label_key, normalize_label
from .store import RoleShopStore, RoleShopUnitOfWork, run_in_transaction

logger = logging.getLogger(__name__)

_ADMIN_FIELDS = frozenset(
    {
        "price",
        "maintenance_cost",
        "maintenance_interval_days",
        "max_sharing_slots",
        "max_auction_days",
        "slot_refund_rate",
        "is_enabled",
        "max_label_length",
        "banned_labels",
        "min_starting_bid",
    }
)


def load_config(uow: RoleShopUnitOfWork, item_type: ShopItemType = ShopItemType.CUSTOM_ROLE) -> ShopConfig:
    """Configuration row for ``item_type`` or the closed-shop defaults."""

    return uow.configs.get(item_type) or ShopConfig.defaults(item_type)


def validate_label(config: ShopConfig, label: str) -> str:
    """Return the normalized label or raise when the configuration forbids it."""

    normalized = normalize_label(label or "")
    if not normalized:
        raise RoleShopError(ErrorCode.INVALID_LABEL, "Role name cannot be empty")
    if len(normalized) > config.max_label_length:
        raise RoleShopError(
            ErrorCode.INVALID_LABEL,
            f"Role name cannot be longer than {config.max_label_length} characters",
            detail={"max_length": config.max_label_length},
        )
    if label_key(normalized) in {label_key(banned) for banned in config.banned_labels}:
        raise RoleShopError(ErrorCode.INVALID_LABEL, "This role name is not allowed")
    return normalized


@dataclass
class ShopConfigManager:
    """Reads and updates :class:`ShopConfig` rows."""

    store: RoleShopStore
    clock: Optional[Callable[[], datetime]] = None

    def get(self, item_type: ShopItemType = ShopItemType.CUSTOM_ROLE) -> ShopConfig:
        with self.store.unit_of_work() as uow:
            return load_config(uow, item_type)

    def update(
        self,
        admin_account_id: int,
        changes: Mapping[str, Any],
        *,
        item_type: ShopItemType = ShopItemType.CUSTOM_ROLE,
    ) -> OperationResult:
        unknown = sorted(set(changes) - _ADMIN_FIELDS)
        if unknown:
            return OperationResult.failure(
                RoleShopError(
                    ErrorCode.INVALID_CONFIG,
                    f"Unknown configuration fields: {', '.join(unknown)}",
                    detail={"fields": unknown},
                )
            )

        def _apply(uow: RoleShopUnitOfWork) -> OperationResult:
            current = uow.configs.get(item_type)
            # A fresh row starts from an open shop, not from the closed fallback.
            base = current.model_dump() if current else {"item_type": item_type, "price": 0}
            merged = {**base, **dict(changes)}
            if "banned_labels" in changes:
                merged["banned_labels"] = tuple(
                    sorted({label_key(label) for label in changes["banned_labels"] or () if label.strip()})
                )
            merged["version"] = (current.version + 1) if current else 1
            merged["updated_at"] = current_time(self.clock)
            try:
                updated = ShopConfig.model_validate(merged)
            except ValidationError as exc:
                raise RoleShopError(
                    ErrorCode.INVALID_CONFIG,
                    "Configuration values are invalid",
                    detail={"errors": [error["msg"] for error in exc.errors()]},
                ) from exc
            stored = uow.configs.save(updated)
            logger.info(
                "Shop configuration updated",
                extra={
                    "item_type": item_type.value,
                    "admin_account_id": admin_account_id,
                    "version": stored.version,
                    "fields": sorted(changes),
                },
            )
            return OperationResult.ok("Shop configuration updated", config=stored)

        return run_in_transaction(self.store, _apply, operation="update_config")


__all__ = ["ShopConfigManager", "load_config", "validate_label"]
