from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import Depends
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from app.context import set_organization_id
from app.core.capabilities import Capability, capabilities_for
from app.core.config import get_settings
from app.core.errors import ForbiddenError, UnauthenticatedError
from app.crm.storage import CrmStorage, get_storage


@dataclass(frozen=True)
class AuthUser:
    id: int | None
    username: str
    organization_id: int
    role: str
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    @property
    def is_anonymous(self) -> bool:
        return self.id is None


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer ") :].strip() if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request, storage: CrmStorage = Depends(get_storage)) -> AuthUser:
    token = _bearer_token(request)
    settings = getattr(request.app.state, "settings", None) or get_settings()

    if not token:
        if not settings.demo_mode:
            raise UnauthenticatedError("Access token required")
        actor = AuthUser(
            id=None,
            username="demo",
            organization_id=settings.demo_organization_id,
            role=settings.demo_role,
            capabilities=capabilities_for(settings.demo_role),
        )
    else:
        try:
            user_id = int(token)
        except ValueError as exc:
            raise ForbiddenError("Invalid token") from exc

        user = await run_in_threadpool(storage.get_user, user_id)
        if user is None or not user.is_active:
            raise ForbiddenError("Invalid token")
        actor = AuthUser(
            id=user.id,
            username=user.username,
            organization_id=user.organization_id,
            role=user.role,
            capabilities=capabilities_for(user.role),
        )

    set_organization_id(actor.organization_id)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = actor.id
        context.organization_id = actor.organization_id
    return actor
