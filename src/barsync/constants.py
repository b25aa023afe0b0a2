"""Enumerations shared across BarSync terminal modules.

Centralises domain constants so that the storage layer, the state engine, the
sync bridge, and the CLI rely on a single source of truth for identifiers that
end up persisted locally or sent over the wire.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating the store file.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Tenant recorded on sales made by an actor without a business.
GLOBAL_TENANT_ID = "global"

# Snapshot key the remote store uses for platform-level audit data.
PLATFORM_SNAPSHOT_ID = "admin_node"

# Business name that selects a cross-tenant (platform) login.
PLATFORM_LOGIN_NAME = "platform"

CURRENCY_LABEL = "Ksh"


class Role(str, Enum):
    """Enumerate the closed set of user roles."""

    SUPER_ADMIN = "SUPER_ADMIN"
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    BARTENDER = "BARTENDER"


class Capability(str, Enum):
    """Enumerate the actions guarded at authorization boundaries."""

    SELL = "SELL"
    MANAGE_INVENTORY = "MANAGE_INVENTORY"
    MANAGE_STAFF = "MANAGE_STAFF"
    VIEW_AUDIT_TRAIL = "VIEW_AUDIT_TRAIL"
    VIEW_REPORTS = "VIEW_REPORTS"
    MANAGE_PLATFORM = "MANAGE_PLATFORM"
    VIEW_ALL_TENANTS = "VIEW_ALL_TENANTS"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "Cash"
    MPESA = "Mpesa"


class UserStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class SubscriptionStatus(str, Enum):
    ACTIVE = "Active"
    TRIAL = "Trial"
    EXPIRED = "Expired"
    PENDING_APPROVAL = "Pending Approval"


class AuditAction(str, Enum):
    """Enumerate the canonical action tags written to the audit trail."""

    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    SALE = "SALE"
    STOCK_UPDATE = "STOCK_UPDATE"
    PRODUCT_CREATED = "PRODUCT_CREATED"
    PROFILE_UPDATE = "PROFILE UPDATE"
    PARTNER_CREATED = "PARTNER CREATED"
    BUSINESS_UPDATE = "BUSINESS_UPDATE"
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_REMOVED = "USER_REMOVED"
    CLOUD_SYNC = "CLOUD_SYNC"


class Collection(str, Enum):
    """Enumerate the entity collections, named after their workbook sheets."""

    PRODUCTS = "Products"
    SALES = "Sales"
    USERS = "Users"
    BUSINESSES = "Businesses"
    AUDIT_LOGS = "AuditLogs"


# Collections whose records may only ever be inserted.
APPEND_ONLY_COLLECTIONS: frozenset[Collection] = frozenset(
    {Collection.SALES, Collection.AUDIT_LOGS}
)

META_SHEET = "Meta"


class ConnectivityState(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "GLOBAL_TENANT_ID",
    "PLATFORM_SNAPSHOT_ID",
    "PLATFORM_LOGIN_NAME",
    "CURRENCY_LABEL",
    "Role",
    "Capability",
    "PaymentMethod",
    "UserStatus",
    "SubscriptionStatus",
    "AuditAction",
    "Collection",
    "APPEND_ONLY_COLLECTIONS",
    "META_SHEET",
    "ConnectivityState",
]
