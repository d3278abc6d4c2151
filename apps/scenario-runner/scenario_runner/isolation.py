"""Per-scenario user identities for parallel runs."""

from __future__ import annotations

from typing import Optional
import hashlib
import secrets
import threading
import uuid

import structlog

from .context import DEFAULT_USER_ID

LOGGER = structlog.get_logger("agentqa.isolation")

USER_ID_NAMESPACE = "a9e7f8d0-1234-5678-9abc-def012345678"


def generate_user_id(scenario_id: str, salt: Optional[str] = None) -> str:
    """Hash namespace, scenario id and salt into a UUID-shaped identity."""

    salt = salt if salt is not None else secrets.token_hex(8)
    digest = hashlib.sha256(f"{USER_ID_NAMESPACE}:{scenario_id}:{salt}".encode("utf-8")).digest()
    return str(uuid.UUID(bytes=digest[:16], version=4))


class UserIsolationManager:
    """Hands out one identity per scenario id and remembers it.

    With isolation disabled every scenario shares ``default_user_id``.
    """

    def __init__(self, *, enabled: bool = True, default_user_id: str = DEFAULT_USER_ID) -> None:
        self.enabled = enabled
        self.default_user_id = default_user_id
        self._assigned: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_user_id(self, scenario_id: str) -> str:
        if not self.enabled:
            return self.default_user_id
        with self._lock:
            user_id = self._assigned.get(scenario_id)
            if user_id is None:
                user_id = generate_user_id(scenario_id)
                self._assigned[scenario_id] = user_id
                LOGGER.debug("user_id_assigned", scenario_id=scenario_id, user_id=user_id)
            return user_id

    @property
    def assigned(self) -> dict[str, str]:
        with self._lock:
            return dict(self._assigned)

    def reset(self) -> None:
        with self._lock:
            self._assigned.clear()
