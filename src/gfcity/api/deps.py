"""
Process-wide service wiring for the API.

`get_service()` builds the store, gateways and dispatcher once per process.
Routes call it through this module (`deps.get_service()`), so tests can swap it
with `monkeypatch.setattr(deps, "get_service", ...)`.
"""

from __future__ import annotations

import uuid
from functools import lru_cache

from fastapi import Header

from gfcity.config.settings import get_settings
from gfcity.domain.errors import Unauthorized
from gfcity.domain.models import User, UserRole
from gfcity.notify.dispatcher import build_dispatcher
from gfcity.payments.gateways import build_gateways
from gfcity.service.orchestrator import GarbageService
from gfcity.storage.memory import InMemoryStore


@lru_cache
def get_service() -> GarbageService:
    settings = get_settings()
    store = InMemoryStore(
        cell_size_m=settings.ranking.index_cell_size_m,
        lat0_deg=settings.ranking.index_lat0_deg,
    )
    return GarbageService(store, build_gateways(settings), build_dispatcher(settings), settings=settings)


def current_user(x_user_id: str | None = Header(default=None)) -> User:
    """Resolve the caller from `X-User-Id` (token verification happens upstream)."""
    if not x_user_id:
        raise Unauthorized("Access token required")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        raise Unauthorized("Invalid token") from None
    user = get_service().store.get_user(user_id)
    if user is None or not user.is_active:
        raise Unauthorized("Invalid token")
    return user


def require_role(user: User, *roles: UserRole) -> User:
    if user.role not in roles and user.role != UserRole.ADMIN:
        allowed = " or ".join(r.value for r in roles)
        raise Unauthorized(f"Access denied. {allowed} role required.")
    return user
