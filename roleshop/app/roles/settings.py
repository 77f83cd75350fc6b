"""Process level settings for the role shop."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
import os


@dataclass(frozen=True)
class RoleShopSettings:
    """Runtime knobs that are not part of the persisted shop configuration."""

    tick_seconds: float
    initial_delay_seconds: float
    reminder_days: Tuple[int, ...]
    history_retention_days: int
    upcoming_payment_days: int
    scheduler_enabled: bool
    discord_bot_token: Optional[str]
    discord_guild_id: Optional[str]
    discord_api_base: str
    discord_http_timeout: float


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_days(value: Optional[str], *, default: Tuple[int, ...]) -> Tuple[int, ...]:
    if value is None or not value.strip():
        return default
    days = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        day = _to_int(part, default=0)
        if day < 1:
            raise ValueError(f"Reminder thresholds must be positive, got {part!r}")
        days.add(day)
    return tuple(sorted(days, reverse=True)) or default


def load_role_shop_settings(env: Optional[Mapping[str, str]] = None) -> RoleShopSettings:
    """Load :class:`RoleShopSettings` from environment variables."""

    env_mapping = os.environ if env is None else env

    tick_seconds = max(1.0, _to_float(env_mapping.get("ROLESHOP_TICK_SECONDS"), default=3600.0))
    initial_delay = max(0.0, _to_float(env_mapping.get("ROLESHOP_INITIAL_DELAY_SECONDS"), default=5.0))
    reminder_days = _to_days(env_mapping.get("ROLESHOP_REMINDER_DAYS"), default=(3, 1))
    retention_days = max(1, _to_int(env_mapping.get("ROLESHOP_HISTORY_RETENTION_DAYS"), default=90))
    upcoming_days = max(1, _to_int(env_mapping.get("ROLESHOP_UPCOMING_PAYMENT_DAYS"), default=7))
    scheduler_enabled = _to_bool(env_mapping.get("ROLESHOP_SCHEDULER_ENABLED"), default=True)

    token = (env_mapping.get("DISCORD_BOT_TOKEN") or "").strip() or None
    guild_id = (env_mapping.get("DISCORD_GUILD_ID") or "").strip() or None
    api_base = env_mapping.get("DISCORD_API_BASE") or "https://discord.com/api/v10"
    http_timeout = max(0.5, _to_float(env_mapping.get("DISCORD_HTTP_TIMEOUT"), default=5.0))

    return RoleShopSettings(
        tick_seconds=tick_seconds,
        initial_delay_seconds=initial_delay,
        reminder_days=reminder_days,
        history_retention_days=retention_days,
        upcoming_payment_days=upcoming_days,
        scheduler_enabled=scheduler_enabled,
        discord_bot_token=token,
        discord_guild_id=guild_id,
        discord_api_base=api_base.rstrip("/"),
        discord_http_timeout=http_timeout,
    )


__all__ = ["RoleShopSettings", "load_role_shop_settings"]
