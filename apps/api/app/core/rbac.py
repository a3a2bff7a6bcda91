from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends

from app.core.auth import AuthUser, get_current_user
from app.core.capabilities import Capability
from app.core.errors import ForbiddenError


def require_capability(capability: Capability) -> Callable[..., AuthUser]:
    def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if capability not in user.capabilities:
            raise ForbiddenError(f"Missing capability: {capability.value}")
        return user

    return checker
