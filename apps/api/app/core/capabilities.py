from __future__ import annotations

from enum import StrEnum


class Capability(StrEnum):
    ORGANIZATION_READ = "organization.read"
    USERS_READ = "users.read"
    USERS_MANAGE = "users.manage"
    RECORDS_READ = "records.read"
    RECORDS_WRITE = "records.write"
    ANALYTICS_READ = "analytics.read"
    BILLING_READ = "billing.read"
    BILLING_MANAGE = "billing.manage"


ROLES = ("admin", "manager", "sales_rep", "user")

ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "admin": frozenset(Capability),
    "manager": frozenset(Capability) - {Capability.USERS_MANAGE, Capability.BILLING_MANAGE},
    "sales_rep": frozenset(
        {
            Capability.ORGANIZATION_READ,
            Capability.RECORDS_READ,
            Capability.RECORDS_WRITE,
            Capability.ANALYTICS_READ,
            Capability.BILLING_READ,
        }
    ),
    "user": frozenset(
        {
            Capability.ORGANIZATION_READ,
            Capability.RECORDS_READ,
            Capability.ANALYTICS_READ,
        }
    ),
}


def capabilities_for(role: str) -> frozenset[Capability]:
    return ROLE_CAPABILITIES.get(role, frozenset())
