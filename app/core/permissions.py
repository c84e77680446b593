# app/core/permissions.py
"""角色 → 權限對照表。路由用 require_permission() 檢查，不在各處散落角色判斷。"""
from enum import Enum
from typing import Dict, FrozenSet, Union


class Role(str, Enum):
    TENANT = "TENANT"
    LANDLORD = "LANDLORD"
    AGENT = "AGENT"
    ADMIN = "ADMIN"


class Permission(str, Enum):
    # Property
    PROPERTY_CREATE = "property:create"
    PROPERTY_READ = "property:read"
    PROPERTY_UPDATE = "property:update"
    PROPERTY_DELETE = "property:delete"
    PROPERTY_APPROVE = "property:approve"

    # Application
    APPLICATION_CREATE = "application:create"
    APPLICATION_READ = "application:read"
    APPLICATION_UPDATE = "application:update"
    APPLICATION_APPROVE = "application:approve"

    # Review
    REVIEW_CREATE = "review:create"
    REVIEW_READ = "review:read"
    REVIEW_UPDATE = "review:update"
    REVIEW_MODERATE = "review:moderate"

    # Payment
    PAYMENT_CREATE = "payment:create"
    PAYMENT_READ = "payment:read"
    PAYMENT_REFUND = "payment:refund"

    # User
    USER_READ = "user:read"
    USER_UPDATE = "user:update"

    # Landlord / Agent
    LANDLORD_TENANTS = "landlord:tenants"
    LANDLORD_INCOME = "landlord:income"
    AGENT_COMMISSION = "agent:commission"
    AGENT_CLIENTS = "agent:clients"

    # Admin / System
    ADMIN_DASHBOARD = "admin:dashboard"
    ADMIN_REPORTS = "admin:reports"
    ADMIN_SETTINGS = "admin:settings"
    ADMIN_USERS = "admin:users"
    SYSTEM_HEALTH = "system:health"
    SYSTEM_LOGS = "system:logs"


P = Permission

_TENANT = frozenset({
    P.PROPERTY_READ,
    P.APPLICATION_CREATE, P.APPLICATION_READ, P.APPLICATION_UPDATE,
    P.REVIEW_CREATE, P.REVIEW_READ, P.REVIEW_UPDATE,
    P.PAYMENT_CREATE, P.PAYMENT_READ,
    P.USER_READ, P.USER_UPDATE,
})

_LANDLORD = frozenset({
    P.PROPERTY_CREATE, P.PROPERTY_READ, P.PROPERTY_UPDATE, P.PROPERTY_DELETE,
    P.APPLICATION_READ, P.APPLICATION_APPROVE,
    P.REVIEW_READ, P.REVIEW_MODERATE,
    P.PAYMENT_READ, P.PAYMENT_REFUND,
    P.LANDLORD_TENANTS, P.LANDLORD_INCOME,
    P.USER_READ, P.USER_UPDATE,
})

_AGENT = _LANDLORD | frozenset({
    P.PROPERTY_APPROVE,
    P.PAYMENT_CREATE,
    P.AGENT_COMMISSION, P.AGENT_CLIENTS,
})

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.TENANT: _TENANT,
    Role.LANDLORD: _LANDLORD,
    Role.AGENT: _AGENT,
    Role.ADMIN: frozenset(Permission),
}


def permissions_for(role: Union[Role, str]) -> FrozenSet[Permission]:
    try:
        return ROLE_PERMISSIONS[Role(role)]
    except ValueError:
        # 不認得的角色沒有任何權限
        return frozenset()


def has_permission(role: Union[Role, str], permission: Permission) -> bool:
    return permission in permissions_for(role)
