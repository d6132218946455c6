"""Error types raised by the team engine and mapped to HTTP codes by the API."""

from __future__ import annotations

from typing import Optional


class InputError(ValueError):
    """Malformed input, rejected before any state is read."""


class NotFoundError(ValueError):
    """A race, registration or team id that does not exist."""


class AuthorizationError(PermissionError):
    """The acting user lacks the admin role."""


class TeamClassConflictError(ValueError):
    """An edit would put two car classes on one team in the same race."""


class TeamLockedError(ValueError):
    """An edit would rename or re-class a team that already has a chat thread."""


class ChatServiceError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
