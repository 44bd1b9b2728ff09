"""
Seed data loader.

A seed file is a local JSON document (e.g. `data/seed/kampala.json`) with the
users to preload into a store:

    {"users": [{"phone_number": "+256700123456", "full_name": "...", "role": "resident",
                "home_location": {"lat": 0.3476, "lon": 32.6169}}, ...]}

We validate it into typed Pydantic models so the CLI and demos can assume a
consistent shape.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from pydantic import TypeAdapter

from gfcity.core.env import resolve_project_path
from gfcity.core.time import utc_now
from gfcity.domain.models import User, UserRole
from gfcity.storage.port import Store

_USERS_ADAPTER = TypeAdapter(list[User])


def load_users(path: str | Path) -> list[User]:
    """Load and validate the `users` list of a seed JSON file."""
    resolved = resolve_project_path(path)
    payload = json.loads(resolved.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("users") or []
    return _USERS_ADAPTER.validate_python(payload)


def seed_store(store: Store, users: list[User], *, now: datetime | None = None) -> list[User]:
    """Insert `users`; collectors without a location timestamp are treated as just seen."""
    now = now or utc_now()
    out: list[User] = []
    for user in users:
        if user.role == UserRole.COLLECTOR and user.current_location is not None and user.location_updated_at is None:
            user = user.model_copy(update={"location_updated_at": now})
        out.append(store.add_user(user))
    return out
