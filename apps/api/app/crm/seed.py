from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from app.core.security import hash_password
from app.crm.schemas import CustomerCreate, OrganizationCreate, OrganizationRead, SalesDataCreate, UserCreate

if TYPE_CHECKING:
    from app.crm.storage import CrmStorage


logger = logging.getLogger("app.crm.seed")

DEMO_ORGANIZATION_SLUG = "demo"
DEMO_ADMIN_USERNAME = "admin"
DEMO_ADMIN_PASSWORD = "admin123"

SAMPLE_CUSTOMERS = (
    ("Acme Corp", "contact@acme.com", "active", Decimal("15000")),
    ("TechStart Inc", "hello@techstart.com", "prospect", Decimal("8500")),
    ("Global Solutions", "info@global.com", "active", Decimal("22000")),
    ("Digital Agency", "team@digital.com", "negotiation", Decimal("12300")),
)

SAMPLE_SALES = (
    ("Jan", Decimal("12000"), 24),
    ("Feb", Decimal("15000"), 31),
    ("Mar", Decimal("18000"), 28),
    ("Apr", Decimal("22000"), 35),
    ("May", Decimal("25000"), 42),
    ("Jun", Decimal("28000"), 38),
)


def seed_demo_data(storage: CrmStorage) -> OrganizationRead:
    existing = storage.get_organization_by_slug(DEMO_ORGANIZATION_SLUG)
    if existing is not None:
        return existing

    with storage.unit_of_work():
        organization = storage.create_organization(
            OrganizationCreate(name="Demo Organization", slug=DEMO_ORGANIZATION_SLUG)
        )
        storage.create_user(
            organization.id,
            UserCreate(
                username=DEMO_ADMIN_USERNAME,
                email="admin@demo.example.com",
                password=DEMO_ADMIN_PASSWORD,
                first_name="Demo",
                last_name="Admin",
                role="admin",
            ),
            hash_password(DEMO_ADMIN_PASSWORD),
        )
        for name, email, status, value in SAMPLE_CUSTOMERS:
            storage.create_customer(
                organization.id,
                CustomerCreate(name=name, email=email, status=status, value=value),
            )
        for month, revenue, deals in SAMPLE_SALES:
            storage.create_sales_data(
                organization.id,
                SalesDataCreate(month=month, revenue=revenue, deals=deals),
            )

    logger.info("seed.demo_created", extra={"entity_type": "organization", "entity_id": organization.id})
    return organization
