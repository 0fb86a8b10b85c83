from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Mapping

from teamhub.core.roles import Role, normalize_role


@dataclass(frozen=True)
class Permission:
    # team.*
    TEAM_READ: str = "team.read"
    TEAM_INVITE: str = "team.invite"
    TEAM_ROLES: str = "team.roles"
    TEAM_REMOVE: str = "team.remove"
    TEAM_TRANSFER: str = "team.transfer"

    # business.*
    BUSINESS_READ: str = "business.read"
    BUSINESS_SETTINGS: str = "business.settings"
    BUSINESS_DELETE: str = "business.delete"

    # domain records
    CUSTOMERS_READ: str = "customers.read"
    CUSTOMERS_WRITE: str = "customers.write"
    APPOINTMENTS_READ: str = "appointments.read"
    APPOINTMENTS_WRITE: str = "appointments.write"
    SERVICES_READ: str = "services.read"
    SERVICES_WRITE: str = "services.write"
    CALLS_READ: str = "calls.read"
    CALLS_WRITE: str = "calls.write"
    REVIEWS_READ: str = "reviews.read"
    REVIEWS_WRITE: str = "reviews.write"
    COMMUNICATIONS_SEND: str = "communications.send"

    # reports / data
    REPORTS_READ: str = "reports.read"
    REPORTS_EXPORT: str = "reports.export"
    DATA_EXPORT: str = "data.export"

    # billing.*
    BILLING_READ: str = "billing.read"
    BILLING_WRITE: str = "billing.write"

    # wildcards (domain-level)
    TEAM_ALL: str = "team.*"
    BUSINESS_ALL: str = "business.*"
    CUSTOMERS_ALL: str = "customers.*"
    APPOINTMENTS_ALL: str = "appointments.*"
    SERVICES_ALL: str = "services.*"
    CALLS_ALL: str = "calls.*"
    REVIEWS_ALL: str = "reviews.*"
    COMMUNICATIONS_ALL: str = "communications.*"
    REPORTS_ALL: str = "reports.*"
    DATA_ALL: str = "data.*"
    BILLING_ALL: str = "billing.*"


PERM = Permission()

_DOMAIN_DATA = frozenset(
    {
        PERM.CUSTOMERS_ALL,
        PERM.APPOINTMENTS_ALL,
        PERM.SERVICES_ALL,
        PERM.CALLS_ALL,
        PERM.REVIEWS_ALL,
        PERM.COMMUNICATIONS_ALL,
    }
)

ROLE_BASE_PERMISSIONS: Mapping[Role, FrozenSet[str]] = {
    Role.OWNER: _DOMAIN_DATA
    | frozenset(
        {
            PERM.TEAM_ALL,
            PERM.BUSINESS_ALL,
            PERM.REPORTS_ALL,
            PERM.DATA_ALL,
            PERM.BILLING_ALL,
        }
    ),
    Role.ADMIN: _DOMAIN_DATA
    | frozenset(
        {
            PERM.TEAM_READ,
            PERM.TEAM_INVITE,
            PERM.TEAM_ROLES,
            PERM.TEAM_REMOVE,
            PERM.BUSINESS_READ,
            PERM.BUSINESS_SETTINGS,
            PERM.REPORTS_ALL,
            PERM.DATA_EXPORT,
            # billing stays read-only unless granted through an override
            PERM.BILLING_READ,
        }
    ),
    Role.MANAGER: frozenset(
        {
            PERM.TEAM_READ,
            PERM.BUSINESS_READ,
            PERM.CUSTOMERS_ALL,
            PERM.APPOINTMENTS_ALL,
            PERM.SERVICES_ALL,
            PERM.CALLS_ALL,
            PERM.REVIEWS_ALL,
            PERM.COMMUNICATIONS_SEND,
            PERM.REPORTS_READ,
        }
    ),
    Role.STAFF: frozenset(
        {
            PERM.BUSINESS_READ,
            PERM.CUSTOMERS_READ,
            PERM.APPOINTMENTS_READ,
            PERM.APPOINTMENTS_WRITE,
            PERM.SERVICES_READ,
            PERM.CALLS_READ,
            PERM.REVIEWS_READ,
            PERM.REPORTS_READ,
        }
    ),
    Role.VIEWER: frozenset(
        {
            PERM.BUSINESS_READ,
            PERM.CUSTOMERS_READ,
            PERM.APPOINTMENTS_READ,
            PERM.SERVICES_READ,
            PERM.REPORTS_READ,
        }
    ),
}

# Grants that only the owner may ever hold; overrides cannot hand them out.
OWNER_ONLY_PERMISSIONS: FrozenSet[str] = frozenset({PERM.TEAM_TRANSFER, PERM.BUSINESS_DELETE})


def normalize_permissions(extra: Iterable[str] | None) -> FrozenSet[str]:
    if not extra:
        return frozenset()
    return frozenset(p.strip() for p in extra if isinstance(p, str) and p.strip())


def default_permissions(role: Role | str) -> FrozenSet[str]:
    return ROLE_BASE_PERMISSIONS[normalize_role(role)]


def effective_permissions(
    *,
    role: Role | str,
    allow: Iterable[str] | None = None,
    deny: Iterable[str] | None = None,
) -> FrozenSet[str]:
    """
    Base role grants + membership allow-list, minus the deny-list.
    Overrides change capabilities only; hierarchy rank always comes from the role.
    """
    r = normalize_role(role)
    grants = set(ROLE_BASE_PERMISSIONS[r]) | set(normalize_permissions(allow))
    if r is not Role.OWNER:
        grants -= OWNER_ONLY_PERMISSIONS
    grants -= set(normalize_permissions(deny))
    return frozenset(grants)


def _has_domain_wildcard(grants: FrozenSet[str], required: str) -> bool:
    if required in grants:
        return True
    idx = required.find(".")
    if idx <= 0:
        return False
    domain = required[:idx]
    return f"{domain}.*" in grants


def is_permitted(
    *,
    role: Role | str,
    grants: FrozenSet[str],
    required: str,
    denied: Iterable[str] | None = None,
) -> bool:
    """
    Owner-only grants are never satisfied by a wildcard held by another role.
    A deny entry (exact or `domain.*`) beats any grant.
    """
    if required in OWNER_ONLY_PERMISSIONS and normalize_role(role) is not Role.OWNER:
        return False
    if denied and _has_domain_wildcard(normalize_permissions(denied), required):
        return False
    return _has_domain_wildcard(grants, required)
