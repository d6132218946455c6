"""Team formation and chat reconciliation for league races, reused by the API."""

from .chat import DiscordClient
from .errors import (
    AuthorizationError,
    ChatServiceError,
    InputError,
    NotFoundError,
    TeamClassConflictError,
    TeamLockedError,
)
from .loader import DataStore
from .models import ChangeDetail, Race, Registration, RegistrationUpdate, Team
from .service import TeamAssignmentService

__all__ = [
    "AuthorizationError",
    "ChangeDetail",
    "ChatServiceError",
    "DataStore",
    "DiscordClient",
    "InputError",
    "NotFoundError",
    "Race",
    "Registration",
    "RegistrationUpdate",
    "Team",
    "TeamAssignmentService",
    "TeamClassConflictError",
    "TeamLockedError",
]
