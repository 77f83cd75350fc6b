"""Discord REST adapter for role synchronisation."""
from __future__ import annotations

import json
import logging
from typing import AbstractSet, Any, Dict, Iterator, List, Optional, Sequence, Set
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from ..roles.models import CustomRoleAttributes
from .adapters import Assignment, ReconcileDelta, RoleSyncError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://discord.com/api/v10"
_MEMBER_PAGE_SIZE = 1000
_AUDIT_REASON = "Custom role shop synchronisation"


class DiscordRoleSyncAdapter:
    """Keeps the custom roles of a single guild in sync through the bot API."""

    def __init__(
        self,
        *,
        token: str,
        guild_id: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 5.0,
    ) -> None:
        if not token:
            raise ValueError("A bot token is required")
        if not guild_id:
            raise ValueError("A guild id is required")
        self._token = token
        self.guild_id = str(guild_id)
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self._api_base}{path}"
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib_request.Request(
            url,
            data=data,
            method=method,
            headers={
                "Authorization": f"Bot {self._token}",
                "Content-Type": "application/json",
                "User-Agent": "DiscordBot (roleshop, 1.0)",
                "X-Audit-Log-Reason": urllib_parse.quote(_AUDIT_REASON),
            },
        )
        try:
            with urllib_request.urlopen(request, timeout=self._timeout) as response:
                body = response.read()
        except urllib_error.HTTPError as exc:
            raise RoleSyncError(f"{method} {path} failed with HTTP {exc.code}") from exc
        except (urllib_error.URLError, OSError) as exc:
            raise RoleSyncError(f"{method} {path} failed: {exc}") from exc

        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RoleSyncError(f"{method} {path} returned an unreadable body") from exc

    def communities(self) -> Sequence[str]:
        return [self.guild_id]

    def materialize(self, label: str, attributes: CustomRoleAttributes) -> str:
        # Never adopt an existing guild role, even one with the same name.
        created = self._request(
            "POST",
            f"/guilds/{self.guild_id}/roles",
            {"name": label, "color": attributes.color_value, "mentionable": False, "hoist": False},
        )
        if not created or "id" not in created:
            raise RoleSyncError(f"Role creation for {label!r} returned no id")
        return str(created["id"])

    def _members(self) -> Iterator[Dict[str, Any]]:
        after = "0"
        while True:
            query = urllib_parse.urlencode({"limit": _MEMBER_PAGE_SIZE, "after": after})
            page: List[Dict[str, Any]] = self._request("GET", f"/guilds/{self.guild_id}/members?{query}") or []
            yield from page
            if len(page) < _MEMBER_PAGE_SIZE:
                return
            after = str(page[-1]["user"]["id"])

    def reconcile(
        self,
        community_id: str,
        desired: AbstractSet[Assignment],
        managed_refs: AbstractSet[str],
    ) -> ReconcileDelta:
        if str(community_id) != self.guild_id:
            return ReconcileDelta()

        present: Set[str] = set()
        current: Set[Assignment] = set()
        for member in self._members():
            user_id = str(member["user"]["id"])
            present.add(user_id)
            for role_id in member.get("roles") or []:
                if role_id in managed_refs:
                    current.add((role_id, user_id))

        wanted = {(ref, user_id) for ref, user_id in desired if ref in managed_refs and user_id in present}
        granted = revoked = failures = 0
        for ref, user_id in sorted(wanted - current):
            try:
                self._request("PUT", f"/guilds/{self.guild_id}/members/{user_id}/roles/{ref}")
                granted += 1
            except RoleSyncError:
                failures += 1
                logger.warning("Failed to grant role", exc_info=True, extra={"role_id": ref, "member_id": user_id})
        for ref, user_id in sorted(current - wanted):
            try:
                self._request("DELETE", f"/guilds/{self.guild_id}/members/{user_id}/roles/{ref}")
                revoked += 1
            except RoleSyncError:
                failures += 1
                logger.warning("Failed to revoke role", exc_info=True, extra={"role_id": ref, "member_id": user_id})
        return ReconcileDelta(granted=granted, revoked=revoked, failures=failures)

    def ping(self) -> bool:
        try:
            self._request("GET", "/users/@me")
        except RoleSyncError:
            return False
        return True


__all__ = ["DEFAULT_API_BASE", "DiscordRoleSyncAdapter"]
