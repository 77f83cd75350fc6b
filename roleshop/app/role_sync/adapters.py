"""Interfaces to the external role-assignment platform."""
from __future__ import annotations

from typing import AbstractSet, Dict, Iterable, Protocol, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from ..roles.models import CustomRoleAttributes

# (external role reference, external member identity)
Assignment = Tuple[str, str]


class RoleSyncError(RuntimeError):
    """The external platform rejected a request or could not be reached."""


class ReconcileDelta(BaseModel):
    """Changes an adapter applied while reconciling one community."""

    granted: int = 0
    revoked: int = 0
    failures: int = 0

    model_config = ConfigDict(frozen=True)


class RoleSyncAdapter(Protocol):
    """Grants and revokes privileges on the external platform.

    Calls are best-effort. Implementations raise :class:`RoleSyncError` when the
    platform is unreachable and count per-assignment failures in the delta.
    """

    def communities(self) -> Sequence[str]:
        """Identifiers of the communities served by this adapter."""

    def materialize(self, label: str, attributes: CustomRoleAttributes) -> str:
        """Create a new external role object and return its reference.

        Existing roles are never adopted, even when their name matches.
        """

    def reconcile(
        self,
        community_id: str,
        desired: AbstractSet[Assignment],
        managed_refs: AbstractSet[str],
    ) -> ReconcileDelta:
        """Make the assignments of ``managed_refs`` in the community equal ``desired``."""

    def ping(self) -> bool:
        ...


class AccountDirectory(Protocol):
    """Maps internal account ids to external member identities."""

    def resolve_many(self, account_ids: Iterable[int]) -> Dict[int, str]:
        """External identities of the given accounts; unknown accounts are omitted."""


__all__ = ["AccountDirectory", "Assignment", "ReconcileDelta", "RoleSyncAdapter", "RoleSyncError"]
