from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from app import events
from app.business.billing.plans import SUBSCRIPTION_PLANS, get_plan
from app.business.billing.service import billing_service
from app.core.auth import AuthUser
from app.core.capabilities import ROLES
from app.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnauthenticatedError,
    ValidationFailedError,
)
from app.core.security import hash_password, verify_password
from app.crm.lifecycle import (
    ACTIVITY_STATUS,
    DEAL_STAGE,
    DEAL_STAGE_PROBABILITIES,
    LEAD_STATUS,
    can_convert_lead,
)
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    DashboardMetrics,
    DealCreate,
    DealRead,
    DealUpdate,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    LoginRequest,
    LoginResponse,
    OrganizationCreate,
    OrganizationRead,
    OrganizationSignUpRequest,
    OrganizationSignUpResponse,
    RelatedRecordType,
    SalesDataCreate,
    SalesDataRead,
    UserCreate,
    UserRead,
)
from app.crm.storage import CrmStorage


logger = logging.getLogger("app.crm")
tracer = trace.get_tracer("app.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _drop_nulls(changes: dict[str, Any], fields: set[str]) -> dict[str, Any]:
    return {key: value for key, value in changes.items() if not (key in fields and value is None)}


def _ensure_member(storage: CrmStorage, organization_id: int, user_id: int | None, field_name: str) -> None:
    if user_id is None:
        return
    user = storage.get_user(user_id)
    if user is None or user.organization_id != organization_id:
        raise ValidationFailedError(
            f"{field_name} must reference a user in this organization",
            details={"field": field_name, "value": user_id},
        )


class AuthService:
    def login(self, storage: CrmStorage, dto: LoginRequest) -> LoginResponse:
        user = storage.get_user_by_username(dto.username)
        if user is None or not user.is_active or not verify_password(dto.password, user.password_hash):
            logger.info("auth.login_failed", extra={"error": "invalid credentials"})
            raise UnauthenticatedError("Invalid username or password")
        logger.info("auth.login", extra={"user_id": user.id})
        return LoginResponse(token=str(user.id), user=user.to_public())


class OrganizationService:
    def sign_up(self, storage: CrmStorage, dto: OrganizationSignUpRequest) -> OrganizationSignUpResponse:
        with storage.unit_of_work():
            organization = storage.create_organization(
                OrganizationCreate(name=dto.name, slug=dto.slug, settings=dto.settings)
            )
            admin = storage.create_user(
                organization.id,
                UserCreate(
                    username=dto.admin.username,
                    email=dto.admin.email,
                    password=dto.admin.password,
                    first_name=dto.admin.first_name,
                    last_name=dto.admin.last_name,
                    role="admin",
                ),
                hash_password(dto.admin.password),
            )
        logger.info(
            "organization.created",
            extra={"entity_type": "organization", "entity_id": organization.id, "user_id": admin.id},
        )
        return OrganizationSignUpResponse(organization=organization, user=admin, token=str(admin.id))

    def get_organization(self, storage: CrmStorage, actor: AuthUser, organization_id: int) -> OrganizationRead:
        organization = storage.get_organization(organization_id) if organization_id == actor.organization_id else None
        if organization is None:
            raise NotFoundError("Organization not found")
        return organization


class UserService:
    def create_user(self, storage: CrmStorage, actor: AuthUser, dto: UserCreate) -> UserRead:
        organization = storage.get_organization(actor.organization_id)
        if organization is None:
            raise NotFoundError("Organization not found")

        plan = get_plan(organization.subscription_plan) or SUBSCRIPTION_PLANS["starter"]
        usage = billing_service.get_usage_stats(storage, organization.id)
        projected = usage.model_copy(update={"users": usage.users + 1})
        limits = billing_service.check_plan_limits(plan, projected)
        if not limits.within_limits:
            raise ForbiddenError(limits.violations[0], details={"violations": limits.violations, "plan": plan.id})

        return storage.create_user(organization.id, dto, hash_password(dto.password))

    def list_users(self, storage: CrmStorage, actor: AuthUser, organization_id: int | None = None) -> list[UserRead]:
        if organization_id is not None and organization_id != actor.organization_id:
            raise NotFoundError("Organization not found")
        return storage.list_users(actor.organization_id)

    def change_role(self, storage: CrmStorage, actor: AuthUser, user_id: int, role: str) -> UserRead:
        if role not in ROLES:
            raise ValidationFailedError("Invalid role", details={"allowed": list(ROLES)})

        target = storage.get_user(user_id)
        if target is None or target.organization_id != actor.organization_id:
            raise NotFoundError("User not found")

        if target.role == "admin" and role != "admin":
            admins = [user for user in storage.list_users(actor.organization_id) if user.role == "admin"]
            if len(admins) <= 1:
                raise ConflictError("Organization must keep at least one admin")

        updated = storage.update_user_role(user_id, actor.organization_id, role)
        if updated is None:
            raise NotFoundError("User not found")
        logger.info(
            "user.role_changed",
            extra={"entity_type": "user", "entity_id": user_id, "user_id": actor.id, "event_payload": {"role": role}},
        )
        return updated


class LeadService:
    _required_fields = {"first_name", "last_name", "status", "score"}

    def list_leads(self, storage: CrmStorage, actor: AuthUser, status: str | None = None) -> list[LeadRead]:
        return storage.list_leads(actor.organization_id, status=status)

    def get_lead(self, storage: CrmStorage, actor: AuthUser, lead_id: int) -> LeadRead:
        lead = storage.get_lead(lead_id, actor.organization_id)
        if lead is None:
            raise NotFoundError("Lead not found")
        return lead

    def create_lead(self, storage: CrmStorage, actor: AuthUser, dto: LeadCreate) -> LeadRead:
        if dto.status == "converted":
            raise ValidationFailedError("Leads cannot be created as converted")
        _ensure_member(storage, actor.organization_id, dto.assigned_to, "assignedTo")

        lead = storage.create_lead(actor.organization_id, dto)
        events.publish(
            events.build_envelope(
                "crm.lead.created",
                organization_id=actor.organization_id,
                actor_user_id=actor.id,
                payload={"lead_id": lead.id, "status": lead.status},
            )
        )
        return lead

    def update_lead(self, storage: CrmStorage, actor: AuthUser, lead_id: int, dto: LeadUpdate) -> LeadRead:
        lead = self.get_lead(storage, actor, lead_id)
        changes = _drop_nulls(dto.model_dump(exclude_unset=True), self._required_fields)

        target_status = changes.get("status")
        if target_status is not None and target_status != lead.status:
            if target_status == "converted":
                raise InvalidTransitionError(
                    "Leads are converted through the convert endpoint",
                    details={"from": lead.status, "to": target_status},
                )
            LEAD_STATUS.assert_transition(lead.status, target_status)
        if "assigned_to" in changes:
            _ensure_member(storage, actor.organization_id, changes["assigned_to"], "assignedTo")

        updated = storage.update_lead(lead_id, actor.organization_id, changes)
        if updated is None:
            raise NotFoundError("Lead not found")
        return updated

    def convert_lead(
        self,
        storage: CrmStorage,
        actor: AuthUser,
        lead_id: int,
        dto: LeadConvertRequest,
    ) -> CustomerRead:
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("crm.organization_id", actor.organization_id)
            span.set_attribute("crm.lead_id", lead_id)

            lead = self.get_lead(storage, actor, lead_id)
            if not can_convert_lead(lead.status):
                raise InvalidTransitionError(
                    f"Lead is already {lead.status}",
                    details={"from": lead.status, "to": "converted"},
                )

            email = dto.email or lead.email
            if not email:
                raise ValidationFailedError("Customer email is required to convert this lead")
            assigned_to = dto.assigned_to if dto.assigned_to is not None else lead.assigned_to
            _ensure_member(storage, actor.organization_id, assigned_to, "assignedTo")

            customer_input = CustomerCreate(
                name=dto.name or f"{lead.first_name} {lead.last_name}".strip(),
                email=email,
                phone=dto.phone or lead.phone,
                company=dto.company or lead.company,
                status=dto.status,
                value=dto.value,
                assigned_to=assigned_to,
            )
            customer = storage.convert_lead_to_customer(lead.id, actor.organization_id, customer_input)
            if customer is None:
                raise NotFoundError("Lead not found")
            span.set_attribute("crm.customer_id", customer.id)

        logger.info(
            "lead.converted",
            extra={"entity_type": "lead", "entity_id": lead.id, "user_id": actor.id},
        )
        events.publish(
            events.build_envelope(
                "crm.lead.converted",
                organization_id=actor.organization_id,
                actor_user_id=actor.id,
                payload={"lead_id": lead.id, "customer_id": customer.id, "from_status": lead.status},
            )
        )
        return customer


class CustomerService:
    _required_fields = {"name", "email", "status", "value"}

    def list_customers(self, storage: CrmStorage, organization_id: int) -> list[CustomerRead]:
        return storage.list_customers(organization_id)

    def get_customer(self, storage: CrmStorage, organization_id: int, customer_id: int) -> CustomerRead:
        customer = storage.get_customer(customer_id, organization_id)
        if customer is None:
            raise NotFoundError("Customer not found")
        return customer

    def create_customer(self, storage: CrmStorage, organization_id: int, dto: CustomerCreate) -> CustomerRead:
        _ensure_member(storage, organization_id, dto.assigned_to, "assignedTo")
        return storage.create_customer(organization_id, dto)

    def update_customer(
        self,
        storage: CrmStorage,
        organization_id: int,
        customer_id: int,
        dto: CustomerUpdate,
    ) -> CustomerRead:
        changes = _drop_nulls(dto.model_dump(exclude_unset=True), self._required_fields)
        if "assigned_to" in changes:
            _ensure_member(storage, organization_id, changes["assigned_to"], "assignedTo")
        customer = storage.update_customer(customer_id, organization_id, changes)
        if customer is None:
            raise NotFoundError("Customer not found")
        return customer


class DealService:
    _required_fields = {"title", "value", "stage", "probability"}

    def list_deals(self, storage: CrmStorage, actor: AuthUser, stage: str | None = None) -> list[DealRead]:
        return storage.list_deals(actor.organization_id, stage=stage)

    def get_deal(self, storage: CrmStorage, actor: AuthUser, deal_id: int) -> DealRead:
        deal = storage.get_deal(deal_id, actor.organization_id)
        if deal is None:
            raise NotFoundError("Deal not found")
        return deal

    def _ensure_customer(self, storage: CrmStorage, organization_id: int, customer_id: int | None) -> None:
        if customer_id is not None and storage.get_customer(customer_id, organization_id) is None:
            raise ValidationFailedError(
                "customerId must reference a customer in this organization",
                details={"field": "customerId", "value": customer_id},
            )

    def create_deal(self, storage: CrmStorage, actor: AuthUser, dto: DealCreate) -> DealRead:
        self._ensure_customer(storage, actor.organization_id, dto.customer_id)
        _ensure_member(storage, actor.organization_id, dto.assigned_to, "assignedTo")
        if dto.probability is None:
            dto = dto.model_copy(update={"probability": DEAL_STAGE_PROBABILITIES[dto.stage]})
        return storage.create_deal(actor.organization_id, dto)

    def update_deal(self, storage: CrmStorage, actor: AuthUser, deal_id: int, dto: DealUpdate) -> DealRead:
        deal = self.get_deal(storage, actor, deal_id)
        changes = _drop_nulls(dto.model_dump(exclude_unset=True), self._required_fields)

        target_stage = changes.get("stage")
        stage_changed = target_stage is not None and target_stage != deal.stage
        if stage_changed:
            DEAL_STAGE.assert_transition(deal.stage, target_stage)
            changes.setdefault("probability", DEAL_STAGE_PROBABILITIES[target_stage])
        if "customer_id" in changes:
            self._ensure_customer(storage, actor.organization_id, changes["customer_id"])
        if "assigned_to" in changes:
            _ensure_member(storage, actor.organization_id, changes["assigned_to"], "assignedTo")

        updated = storage.update_deal(deal_id, actor.organization_id, changes)
        if updated is None:
            raise NotFoundError("Deal not found")

        if stage_changed:
            events.publish(
                events.build_envelope(
                    "crm.deal.stage_changed",
                    organization_id=actor.organization_id,
                    actor_user_id=actor.id,
                    payload={"deal_id": deal_id, "from_stage": deal.stage, "to_stage": updated.stage},
                )
            )
        return updated


class ActivityService:
    _required_fields = {"title", "status", "assigned_to"}

    def list_activities(
        self,
        storage: CrmStorage,
        actor: AuthUser,
        entity_type: RelatedRecordType | None = None,
        entity_id: int | None = None,
    ) -> list[ActivityRead]:
        if (entity_type is None) != (entity_id is None):
            raise ValidationFailedError(
                "Invalid query parameters",
                details={"message": "entityType and entityId must be provided together"},
            )
        related_to = (entity_type, entity_id) if entity_type is not None and entity_id is not None else None
        return storage.list_activities(actor.organization_id, related_to=related_to)

    def get_activity(self, storage: CrmStorage, actor: AuthUser, activity_id: int) -> ActivityRead:
        activity = storage.get_activity(activity_id, actor.organization_id)
        if activity is None:
            raise NotFoundError("Activity not found")
        return activity

    def _ensure_related_record(self, storage: CrmStorage, organization_id: int, dto: ActivityCreate) -> None:
        ref = dto.related_to
        if ref is None:
            return
        lookups = {
            "customer": storage.get_customer,
            "lead": storage.get_lead,
            "deal": storage.get_deal,
        }
        if lookups[ref.type](ref.id, organization_id) is None:
            raise ValidationFailedError(
                f"Related {ref.type} not found",
                details={"field": "relatedTo", "type": ref.type, "id": ref.id},
            )

    def create_activity(self, storage: CrmStorage, actor: AuthUser, dto: ActivityCreate) -> ActivityRead:
        created_by = actor.id if actor.id is not None else dto.assigned_to
        if created_by is None:
            raise ValidationFailedError("assignedTo is required when no user is signed in")
        assigned_to = dto.assigned_to if dto.assigned_to is not None else created_by

        _ensure_member(storage, actor.organization_id, created_by, "createdBy")
        _ensure_member(storage, actor.organization_id, assigned_to, "assignedTo")
        self._ensure_related_record(storage, actor.organization_id, dto)
        return storage.create_activity(actor.organization_id, dto, created_by=created_by, assigned_to=assigned_to)

    def update_activity(
        self,
        storage: CrmStorage,
        actor: AuthUser,
        activity_id: int,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        activity = self.get_activity(storage, actor, activity_id)
        changes = _drop_nulls(dto.model_dump(exclude_unset=True), self._required_fields)

        target_status = changes.get("status")
        if target_status is not None and target_status != activity.status:
            ACTIVITY_STATUS.assert_transition(activity.status, target_status)
            if target_status == "completed":
                changes["completed_at"] = utcnow()
        if "assigned_to" in changes:
            _ensure_member(storage, actor.organization_id, changes["assigned_to"], "assignedTo")

        updated = storage.update_activity(activity_id, actor.organization_id, changes)
        if updated is None:
            raise NotFoundError("Activity not found")
        return updated


class AnalyticsService:
    def get_dashboard_metrics(self, storage: CrmStorage, organization_id: int) -> DashboardMetrics:
        with tracer.start_as_current_span("crm.dashboard.metrics") as span:
            span.set_attribute("crm.organization_id", organization_id)
            return storage.get_dashboard_metrics(organization_id)

    def list_sales_data(self, storage: CrmStorage, organization_id: int) -> list[SalesDataRead]:
        return storage.list_sales_data(organization_id)

    def create_sales_data(self, storage: CrmStorage, organization_id: int, dto: SalesDataCreate) -> SalesDataRead:
        return storage.create_sales_data(organization_id, dto)
