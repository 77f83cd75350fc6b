"""Custom role shop: entitlement lifecycle, sharing, auctions and maintenance."""
from .approvals import RoleApprovalService
from .auctions import AuctionEngine
from .config import ShopConfigManager
from .exceptions import ErrorCode, InsufficientFundsError, RoleShopError
from .history import HistoryLog
from .inventory import InventoryStore
from .memory import InMemoryRoleShopStore
from .models import (
    ApprovalStatus,
    Auction,
    CustomRoleAttributes,
    Entitlement,
    EntitlementKind,
    EntitlementStatus,
    HealthReport,
    HistoryActionType,
    HistoryRecord,
    OperationResult,
    ReconciliationSummary,
    RoleApproval,
    RoleStats,
    SharedEntitlement,
    SharingGrant,
    SharingStatus,
    ShopConfig,
    ShopItemType,
    TickSummary,
)
from .scheduler import MaintenanceScheduler, RoleShopNotifier, RoleSynchronizer
from .service import RoleShopService, build_role_shop_service
from .settings import RoleShopSettings, load_role_shop_settings
from .sharing import SharingRegistry
from .store import RoleShopStore, RoleShopUnitOfWork

__all__ = [
    "ApprovalStatus",
    "Auction",
    "AuctionEngine",
    "CustomRoleAttributes",
    "Entitlement",
    "EntitlementKind",
    "EntitlementStatus",
    "ErrorCode",
    "HealthReport",
    "HistoryActionType",
    "HistoryLog",
    "HistoryRecord",
    "InMemoryRoleShopStore",
    "InsufficientFundsError",
    "InventoryStore",
    "MaintenanceScheduler",
    "OperationResult",
    "ReconciliationSummary",
    "RoleApproval",
    "RoleApprovalService",
    "RoleShopError",
    "RoleShopNotifier",
    "RoleShopService",
    "RoleShopSettings",
    "RoleShopStore",
    "RoleShopUnitOfWork",
    "RoleStats",
    "RoleSynchronizer",
    "SharedEntitlement",
    "SharingGrant",
    "SharingRegistry",
    "SharingStatus",
    "ShopConfig",
    "ShopConfigManager",
    "ShopItemType",
    "TickSummary",
    "build_role_shop_service",
    "load_role_shop_settings",
]
