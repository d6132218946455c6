from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from paddock_core import (
    AuthorizationError,
    ChangeDetail,
    DataStore,
    DiscordClient,
    InputError,
    NotFoundError,
    RegistrationUpdate,
    TeamAssignmentService,
    TeamClassConflictError,
    TeamLockedError,
)
from paddock_core.service import ChangePreview, ChangeResult, NotificationResult

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

app = FastAPI(title="Paddock League Teams API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)


class ChangeDetailModel(BaseModel):
    registration_id: str = Field(alias="registrationId")
    driver_name: str = Field(alias="driverName")
    type: str
    from_team_id: Optional[str] = Field(default=None, alias="fromTeamId")
    to_team_id: Optional[str] = Field(default=None, alias="toTeamId")
    from_team_name: str = Field(alias="fromTeamName")
    to_team_name: str = Field(alias="toTeamName")
    line: str
    destructive: bool
    drivers: List[str] = Field(default_factory=list)
    from_class: Optional[str] = Field(default=None, alias="fromClass")
    to_class: Optional[str] = Field(default=None, alias="toClass")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_detail(cls, detail: ChangeDetail) -> "ChangeDetailModel":
        return cls(**detail.__dict__)


class RegistrationUpdateModel(BaseModel):
    registration_id: str = Field(alias="registrationId")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    car_class_id: Optional[str] = Field(default=None, alias="carClassId")

    model_config = ConfigDict(populate_by_name=True)

    def to_update(self) -> RegistrationUpdate:
        return RegistrationUpdate(
            registration_id=self.registration_id,
            team_id=self.team_id,
            car_class_id=self.car_class_id,
        )


class TeamModel(BaseModel):
    id: str
    name: str


class NotificationModel(BaseModel):
    status: str
    event_thread_id: Optional[str] = Field(default=None, alias="eventThreadId")
    created_threads: List[str] = Field(default_factory=list, alias="createdThreads")
    status_action: Optional[str] = Field(default=None, alias="statusAction")
    delivered: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: Optional[NotificationResult]) -> Optional["NotificationModel"]:
        if result is None:
            return None
        return cls(
            status=result.status,
            event_thread_id=result.event_thread_id,
            created_threads=result.created_threads,
            status_action=result.status_action,
            delivered=result.delivered,
            error=result.error,
        )


class ChangeResponse(BaseModel):
    race_id: str = Field(alias="raceId")
    updates: List[RegistrationUpdateModel]
    changes: List[ChangeDetailModel]
    created_teams: List[TeamModel] = Field(default_factory=list, alias="createdTeams")
    notification: Optional[NotificationModel] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ChangeResult) -> "ChangeResponse":
        return cls(
            race_id=result.race_id,
            updates=[
                RegistrationUpdateModel(
                    registration_id=update.registration_id,
                    team_id=update.team_id,
                    car_class_id=update.car_class_id,
                )
                for update in result.updates
            ],
            changes=[ChangeDetailModel.from_detail(detail) for detail in result.details],
            created_teams=[TeamModel(id=team.id, name=team.name) for team in result.created_teams],
            notification=NotificationModel.from_result(result.notification),
        )


class SummaryModel(BaseModel):
    team_changes: List[str] = Field(alias="teamChanges")
    newly_formed_teams: List[str] = Field(alias="newlyFormedTeams")
    destructive_changes: List[str] = Field(alias="destructiveChanges")
    threads_to_create: List[str] = Field(alias="threadsToCreate")

    model_config = ConfigDict(populate_by_name=True)


class PreviewResponse(BaseModel):
    race_id: str = Field(alias="raceId")
    first_notification: bool = Field(alias="firstNotification")
    changes: List[ChangeDetailModel]
    summary: SummaryModel

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_preview(cls, preview: ChangePreview) -> "PreviewResponse":
        return cls(
            race_id=preview.race_id,
            first_notification=preview.first_notification,
            changes=[ChangeDetailModel.from_detail(detail) for detail in preview.details],
            summary=SummaryModel(**preview.summary.__dict__),
        )


class AssignTeamsRequest(BaseModel):
    strategy: Optional[str] = None
    max_drivers_per_team: Optional[int] = Field(default=None, alias="maxDriversPerTeam")
    create_missing_teams: bool = Field(default=True, alias="createMissingTeams")
    notify: bool = True

    model_config = ConfigDict(populate_by_name=True)


class RegistrationChangesRequest(BaseModel):
    updates: List[RegistrationUpdateModel] = Field(default_factory=list)
    deletes: List[str] = Field(default_factory=list)
    team_renames: Dict[str, str] = Field(default_factory=dict, alias="teamRenames")
    notify: bool = True

    model_config = ConfigDict(populate_by_name=True)


class TeamAssignmentRequest(BaseModel):
    team_id: Optional[str] = Field(default=None, alias="teamId")
    notify: bool = True

    model_config = ConfigDict(populate_by_name=True)


class TeamRenameRequest(BaseModel):
    name: str


@lru_cache(maxsize=1)
def store() -> DataStore:
    return DataStore()


@lru_cache(maxsize=1)
def chat() -> DiscordClient:
    return DiscordClient()


def service() -> TeamAssignmentService:
    return TeamAssignmentService(store(), chat())


async def require_user(authorization: str = Header(default="")) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization token is required")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Authorization token is required")

    supabase_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    supabase_anon_key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_KEY")
    if not supabase_url or not supabase_anon_key:
        raise HTTPException(status_code=500, detail="Supabase configuration is incomplete")

    endpoint = f"{supabase_url}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(endpoint, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else 502
        if status in (401, 403):
            raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc

    user_id = str(payload.get("id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    payload["id"] = user_id
    return payload


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (TeamClassConflictError, TeamLockedError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InputError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/races/{race_id}/assign-teams", response_model=ChangeResponse)
async def assign_teams(
    race_id: str,
    payload: AssignTeamsRequest,
    user: Dict[str, Any] = Depends(require_user),
    svc: TeamAssignmentService = Depends(service),
):
    try:
        result = await svc.assign_teams(
            race_id,
            user,
            strategy=payload.strategy,
            max_drivers=payload.max_drivers_per_team,
            create_missing_teams=payload.create_missing_teams,
            notify=payload.notify,
        )
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return ChangeResponse.from_result(result)


@app.patch("/races/{race_id}/registrations", response_model=ChangeResponse)
async def save_registration_changes(
    race_id: str,
    payload: RegistrationChangesRequest,
    user: Dict[str, Any] = Depends(require_user),
    svc: TeamAssignmentService = Depends(service),
):
    try:
        result = await svc.save_registration_changes(
            race_id,
            user,
            updates=[item.to_update() for item in payload.updates],
            deletes=payload.deletes,
            team_renames=payload.team_renames,
            notify=payload.notify,
        )
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return ChangeResponse.from_result(result)


@app.patch("/registrations/{registration_id}/team", response_model=ChangeResponse)
async def assign_registration_to_team(
    registration_id: str,
    payload: TeamAssignmentRequest,
    user: Dict[str, Any] = Depends(require_user),
    svc: TeamAssignmentService = Depends(service),
):
    try:
        result = await svc.assign_registration_to_team(registration_id, payload.team_id, user, notify=payload.notify)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return ChangeResponse.from_result(result)


@app.post("/registrations/{registration_id}/place", response_model=ChangeResponse)
async def place_registration(
    registration_id: str,
    user: Dict[str, Any] = Depends(require_user),
    svc: TeamAssignmentService = Depends(service),
):
    try:
        result = await svc.place_registration(registration_id, user)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return ChangeResponse.from_result(result)


@app.patch("/teams/{team_id}", response_model=TeamModel)
async def rename_team(
    team_id: str,
    payload: TeamRenameRequest,
    user: Dict[str, Any] = Depends(require_user),
    svc: TeamAssignmentService = Depends(service),
):
    try:
        team = await svc.rename_team(team_id, payload.name, user)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return TeamModel(id=team.id, name=team.name)


@app.get("/races/{race_id}/changes", response_model=PreviewResponse)
async def preview_changes(
    race_id: str,
    user: Dict[str, Any] = Depends(require_user),
    svc: TeamAssignmentService = Depends(service),
):
    try:
        preview = await svc.preview_changes(race_id, user)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return PreviewResponse.from_preview(preview)


@app.post("/races/{race_id}/notify", response_model=NotificationModel)
async def notify_race(
    race_id: str,
    user: Dict[str, Any] = Depends(require_user),
    svc: TeamAssignmentService = Depends(service),
):
    try:
        svc.ensure_admin(user)
        result = await svc.notify_race_changes(race_id)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return NotificationModel.from_result(result)
