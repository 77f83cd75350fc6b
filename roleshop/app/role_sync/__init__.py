"""Synchronisation of custom roles with the external chat platform."""
from .adapters import AccountDirectory, Assignment, ReconcileDelta, RoleSyncAdapter, RoleSyncError
from .discord import DiscordRoleSyncAdapter
from .reconciler import RoleReconciler

__all__ = [
    "AccountDirectory",
    "Assignment",
    "DiscordRoleSyncAdapter",
    "ReconcileDelta",
    "RoleReconciler",
    "RoleSyncAdapter",
    "RoleSyncError",
]
