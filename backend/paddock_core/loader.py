from __future__ import annotations

import datetime as dt
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx

from .errors import InputError, NotFoundError
from .models import ROUND_ROBIN, CarClass, DriverRating, Race, Registration, RegistrationUpdate, Team


logger = logging.getLogger(__name__)

REGISTRATION_SELECT = (
    "id,race_id,car_class_id,team_id,user_id,manual_driver_id,created_at,"
    "driver_name,discord_id,ratings,manual_rating,car_class:car_classes(name)"
)
RACE_SELECT = (
    "id,event_id,start_time,end_time,max_drivers_per_team,team_assignment_strategy,"
    "teams_assigned,team_snapshot,discord_team_threads,event_thread_id,event:events(name)"
)


class DataStore:
    """League data access: Supabase (PostgREST) when configured, JSON file otherwise.

    The local fallback keeps every table in one JSON document so that a batch
    of registration changes is a single write.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or (Path(__file__).parent.parent / "data")
        self.local_path = self.data_dir / "league_local.json"

        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.supabase_races_table = os.getenv("SUPABASE_RACES_TABLE", "races")
        self.supabase_registrations_table = os.getenv("SUPABASE_REGISTRATIONS_TABLE", "registrations")
        self.supabase_teams_table = os.getenv("SUPABASE_TEAMS_TABLE", "teams")
        self.supabase_car_classes_table = os.getenv("SUPABASE_CAR_CLASSES_TABLE", "car_classes")

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ---- reads ---------------------------------------------------------------------

    async def fetch_race(self, race_id: str) -> Race:
        if not race_id:
            raise InputError("Race id is required")

        if not self.uses_supabase:
            for row in self._load_local()["races"]:
                if str(row.get("id")) == race_id:
                    return self._normalise_race_row(row)
            raise NotFoundError("Race not found")

        rows = await self._select(
            self.supabase_races_table,
            {"select": RACE_SELECT, "id": f"eq.{race_id}", "limit": "1"},
        )
        if not rows:
            raise NotFoundError("Race not found")
        return self._normalise_race_row(rows[0])

    async def fetch_event_races(self, event_id: str) -> List[Race]:
        if not self.uses_supabase:
            rows = [row for row in self._load_local()["races"] if str(row.get("event_id")) == event_id]
        else:
            rows = await self._select(
                self.supabase_races_table,
                {"select": RACE_SELECT, "event_id": f"eq.{event_id}", "order": "start_time.asc,id.asc"},
            )
        races = [self._normalise_race_row(row) for row in rows]
        races.sort(key=lambda race: (race.start_time, race.id))
        return races

    async def fetch_registrations(self, race_id: str) -> List[Registration]:
        """Registrations of a race in signup order (created_at, then id)."""

        if not self.uses_supabase:
            data = self._load_local()
            class_names = {str(row.get("id")): str(row.get("name") or "") for row in data["car_classes"]}
            rows = [
                {**row, "car_class_name": row.get("car_class_name") or class_names.get(str(row.get("car_class_id")), "")}
                for row in data["registrations"]
                if str(row.get("race_id")) == race_id
            ]
        else:
            rows = await self._select(
                self.supabase_registrations_table,
                {"select": REGISTRATION_SELECT, "race_id": f"eq.{race_id}", "order": "created_at.asc,id.asc"},
            )
        registrations = [self._normalise_registration_row(row) for row in rows]
        registrations.sort(key=lambda reg: reg.sort_key())
        return registrations

    async def fetch_registration(self, registration_id: str) -> Registration:
        if not registration_id:
            raise InputError("Registration id is required")

        if not self.uses_supabase:
            data = self._load_local()
            row = next((row for row in data["registrations"] if str(row.get("id")) == registration_id), None)
            if row is None:
                raise NotFoundError("Registration not found")
            class_names = {str(item.get("id")): str(item.get("name") or "") for item in data["car_classes"]}
            row = {**row, "car_class_name": row.get("car_class_name") or class_names.get(str(row.get("car_class_id")), "")}
        else:
            rows = await self._select(
                self.supabase_registrations_table,
                {"select": REGISTRATION_SELECT, "id": f"eq.{registration_id}", "limit": "1"},
            )
            if not rows:
                raise NotFoundError("Registration not found")
            row = rows[0]
        return self._normalise_registration_row(row)

    async def fetch_teams(self) -> List[Team]:
        """All teams in name order."""

        if not self.uses_supabase:
            rows = self._load_local()["teams"]
        else:
            rows = await self._select(self.supabase_teams_table, {"select": "id,name", "order": "name.asc,id.asc"})
        teams = [Team(id=str(row.get("id")), name=str(row.get("name") or "")) for row in rows if row.get("id")]
        teams.sort(key=lambda team: (team.name.lower(), team.name, team.id))
        return teams

    async def fetch_car_classes(self) -> List[CarClass]:
        if not self.uses_supabase:
            rows = self._load_local()["car_classes"]
        else:
            rows = await self._select(self.supabase_car_classes_table, {"select": "id,name", "order": "name.asc"})
        return [CarClass(id=str(row.get("id")), name=str(row.get("name") or "")) for row in rows if row.get("id")]

    async def team_has_thread(self, team_id: str) -> bool:
        """Whether any race has bound a chat thread to the team."""

        if not self.uses_supabase:
            rows = self._load_local()["races"]
        else:
            rows = await self._select(
                self.supabase_races_table,
                {"select": "id,discord_team_threads", f"discord_team_threads->>{team_id}": "not.is.null", "limit": "1"},
            )
        for row in rows:
            threads = row.get("discord_team_threads")
            if isinstance(threads, dict) and threads.get(team_id):
                return True
        return False

    # ---- writes --------------------------------------------------------------------

    async def create_team(self, name: str) -> Team:
        cleaned = (name or "").strip()
        if not cleaned:
            raise InputError("Team name is required")

        if not self.uses_supabase:
            data = self._load_local()
            record = {"id": str(uuid.uuid4()), "name": cleaned, "created_at": self._utc_now_iso()}
            data["teams"].append(record)
            self._write_local(data)
            return Team(id=record["id"], name=cleaned)

        endpoint = self._supabase_endpoint(self.supabase_teams_table)
        headers = self._supabase_headers("return=representation")
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(endpoint, params={"select": "id,name"}, json={"name": cleaned}, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            self._raise_for_rejection(exc, "create_team")
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to create team: {exc}") from exc

        row = rows[0] if isinstance(rows, list) and rows else rows
        if not isinstance(row, dict) or not row.get("id"):
            raise RuntimeError("Unexpected response when creating team")
        logger.info("Created team %s (%s)", row["id"], cleaned)
        return Team(id=str(row["id"]), name=str(row.get("name") or cleaned))

    async def rename_team(self, team_id: str, name: str) -> Team:
        cleaned = (name or "").strip()
        if not cleaned:
            raise InputError("Team name is required")

        if not self.uses_supabase:
            data = self._load_local()
            row = next((row for row in data["teams"] if str(row.get("id")) == team_id), None)
            if row is None:
                raise NotFoundError("Team not found")
            row["name"] = cleaned
            self._write_local(data)
            return Team(id=team_id, name=cleaned)

        endpoint = self._supabase_endpoint(self.supabase_teams_table)
        headers = self._supabase_headers("return=representation")
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.patch(
                    endpoint,
                    params={"id": f"eq.{team_id}", "select": "id,name"},
                    json={"name": cleaned},
                    headers=headers,
                )
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            self._raise_for_rejection(exc, "rename_team")
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to rename team {team_id}: {exc}") from exc

        if not isinstance(rows, list) or not rows:
            raise NotFoundError("Team not found")
        return Team(id=str(rows[0].get("id")), name=str(rows[0].get("name") or cleaned))

    async def apply_registration_changes(
        self,
        race_id: str,
        updates: Sequence[RegistrationUpdate] = (),
        deletes: Iterable[str] = (),
        team_renames: Optional[Mapping[str, str]] = None,
        race_fields: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Apply a batch of edits for one race all-or-nothing."""

        delete_ids = sorted(set(deletes))
        renames = dict(team_renames or {})
        fields = dict(race_fields or {})
        if not (updates or delete_ids or renames or fields):
            logger.debug("No registration changes to apply for race %s", race_id)
            return

        if not self.uses_supabase:
            self._apply_local_changes(race_id, updates, delete_ids, renames, fields)
        else:
            await self._rpc(
                "apply_registration_changes",
                {
                    "p_race_id": race_id,
                    "p_updates": [update.to_json() for update in updates],
                    "p_deletes": delete_ids,
                    "p_team_renames": [{"id": team_id, "name": name} for team_id, name in sorted(renames.items())],
                    "p_race_fields": fields,
                },
            )
        logger.info(
            "Applied %s update(s), %s delete(s), %s rename(s) for race %s",
            len(updates),
            len(delete_ids),
            len(renames),
            race_id,
        )

    def _apply_local_changes(
        self,
        race_id: str,
        updates: Sequence[RegistrationUpdate],
        delete_ids: Sequence[str],
        renames: Mapping[str, str],
        fields: Mapping[str, Any],
    ) -> None:
        data = self._load_local()
        registrations = {
            str(row.get("id")): row for row in data["registrations"] if str(row.get("race_id")) == race_id
        }
        teams = {str(row.get("id")): row for row in data["teams"]}
        race = next((row for row in data["races"] if str(row.get("id")) == race_id), None)
        if race is None:
            raise NotFoundError("Race not found")

        for update in updates:
            if update.registration_id not in registrations:
                raise NotFoundError(f"Registration {update.registration_id} not found")
            if update.team_id is not None and update.team_id not in teams:
                raise NotFoundError(f"Team {update.team_id} not found")
        for reg_id in delete_ids:
            if reg_id not in registrations:
                raise NotFoundError(f"Registration {reg_id} not found")
        for team_id in renames:
            if team_id not in teams:
                raise NotFoundError(f"Team {team_id} not found")

        for update in updates:
            row = registrations[update.registration_id]
            row["team_id"] = update.team_id
            if update.car_class_id is not None:
                row["car_class_id"] = update.car_class_id
                row.pop("car_class_name", None)
        for team_id, name in renames.items():
            teams[team_id]["name"] = name
        race.update(fields)
        removed = set(delete_ids)
        data["registrations"] = [
            row
            for row in data["registrations"]
            if not (str(row.get("race_id")) == race_id and str(row.get("id")) in removed)
        ]
        self._write_local(data)

    async def update_race_notification_state(
        self,
        race_id: str,
        snapshot: Optional[Dict[str, Any]] = None,
        thread_map: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Persist the notified snapshot and/or the team thread map of a race."""

        fields: Dict[str, Any] = {}
        if snapshot is not None:
            fields["team_snapshot"] = snapshot
        if thread_map is not None:
            fields["discord_team_threads"] = dict(thread_map)
        if not fields:
            return

        if not self.uses_supabase:
            data = self._load_local()
            race = next((row for row in data["races"] if str(row.get("id")) == race_id), None)
            if race is None:
                raise NotFoundError("Race not found")
            race.update(fields)
            self._write_local(data)
            return

        endpoint = self._supabase_endpoint(self.supabase_races_table)
        headers = self._supabase_headers("return=minimal")
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.patch(endpoint, params={"id": f"eq.{race_id}"}, json=fields, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._raise_for_rejection(exc, "update_race_notification_state")
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to update race {race_id}: {exc}") from exc

    async def replace_thread_handle(self, event_id: str, old_handle: Optional[str], new_handle: str) -> int:
        """Point every race of an event from ``old_handle`` to ``new_handle``.

        Covers both the event thread and the team thread map in one update.
        With ``old_handle`` ``None`` the event thread is set on races that have
        none yet. Returns the number of races touched.
        """

        if not new_handle:
            raise InputError("New thread handle is required")

        if self.uses_supabase:
            result = await self._rpc(
                "replace_thread_handle",
                {"p_event_id": event_id, "p_old_handle": old_handle, "p_new_handle": new_handle},
            )
            return int(result) if isinstance(result, (int, float)) else 0

        data = self._load_local()
        touched = 0
        for race in data["races"]:
            if str(race.get("event_id")) != event_id:
                continue
            changed = False
            if race.get("event_thread_id") == old_handle:
                race["event_thread_id"] = new_handle
                changed = True
            threads = race.get("discord_team_threads")
            if old_handle is not None and isinstance(threads, dict):
                for team_id, handle in list(threads.items()):
                    if handle == old_handle:
                        threads[team_id] = new_handle
                        changed = True
            touched += int(changed)
        if touched:
            self._write_local(data)
        return touched

    # ---- normalisers ---------------------------------------------------------------

    @staticmethod
    def _normalise_ratings(raw: Any) -> List[DriverRating]:
        if not isinstance(raw, list):
            return []
        ratings: List[DriverRating] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            value = item.get("rating", item.get("irating"))
            try:
                rating = int(value)
            except (TypeError, ValueError):
                continue
            category_id = item.get("category_id", item.get("categoryId"))
            try:
                category_id = int(category_id) if category_id is not None else None
            except (TypeError, ValueError):
                category_id = None
            ratings.append(DriverRating(category_id=category_id, category=str(item.get("category") or ""), rating=rating))
        return ratings

    def _normalise_registration_row(self, row: Dict[str, Any]) -> Registration:
        car_class = row.get("car_class") if isinstance(row.get("car_class"), dict) else {}
        manual_rating = row.get("manual_rating")
        try:
            manual_rating = int(manual_rating) if manual_rating is not None else None
        except (TypeError, ValueError):
            manual_rating = None
        team_id = row.get("team_id")
        return Registration(
            id=str(row.get("id")),
            race_id=str(row.get("race_id") or ""),
            car_class_id=str(row.get("car_class_id") or ""),
            car_class_name=str(row.get("car_class_name") or car_class.get("name") or ""),
            driver_name=str(row.get("driver_name") or "").strip() or "Unknown driver",
            created_at=str(row.get("created_at") or ""),
            team_id=str(team_id) if team_id else None,
            user_id=row.get("user_id") or None,
            manual_driver_id=row.get("manual_driver_id") or None,
            discord_id=str(row["discord_id"]) if row.get("discord_id") else None,
            ratings=self._normalise_ratings(row.get("ratings")),
            manual_rating=manual_rating,
        )

    def _normalise_race_row(self, row: Dict[str, Any]) -> Race:
        event = row.get("event") if isinstance(row.get("event"), dict) else {}
        capacity = row.get("max_drivers_per_team")
        try:
            capacity = int(capacity) if capacity is not None else None
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid max_drivers_per_team %r on race %s", capacity, row.get("id"))
            capacity = None
        threads = row.get("discord_team_threads")
        return Race(
            id=str(row.get("id")),
            event_id=str(row.get("event_id") or ""),
            event_name=str(row.get("event_name") or event.get("name") or ""),
            start_time=str(row.get("start_time") or ""),
            end_time=str(row.get("end_time") or ""),
            max_drivers_per_team=capacity,
            strategy=str(row.get("team_assignment_strategy") or ROUND_ROBIN),
            teams_assigned=bool(row.get("teams_assigned")),
            snapshot=row.get("team_snapshot"),
            thread_map={str(key): str(value) for key, value in threads.items() if value}
            if isinstance(threads, dict)
            else {},
            event_thread_id=str(row["event_thread_id"]) if row.get("event_thread_id") else None,
        )

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(include_content_profile=False)
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(endpoint, params=params, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPError as exc:
            detail = self._extract_supabase_detail(getattr(exc, "response", None))
            raise RuntimeError(f"Failed to query {table}: {detail or exc}") from exc

        if not isinstance(rows, list):
            logger.warning("Supabase %s query returned unexpected payload: %s", table, type(rows))
            return []
        return [row for row in rows if isinstance(row, dict)]

    async def _rpc(self, function: str, payload: Dict[str, Any]) -> Any:
        endpoint = f"{self.supabase_url.rstrip('/')}/rest/v1/rpc/{function}"
        headers = self._supabase_headers()
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(endpoint, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._raise_for_rejection(exc, function)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Supabase {function} failed: {exc}") from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _raise_for_rejection(self, exc: httpx.HTTPStatusError, operation: str) -> None:
        status_code = exc.response.status_code if exc.response is not None else None
        detail = self._extract_supabase_detail(exc.response)
        if status_code == 404:
            raise NotFoundError(detail or f"Supabase could not find the target of {operation}") from exc
        if status_code is not None and 400 <= status_code < 500:
            raise InputError(detail or f"Supabase rejected {operation} ({status_code})") from exc
        raise RuntimeError(f"Supabase {operation} failed: {detail or exc}") from exc

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        candidates = [payload] if isinstance(payload, dict) else payload[:1] if isinstance(payload, list) else []
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            for key in ("message", "detail", "error", "hint", "code"):
                value = candidate.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ---- local JSON fallback -------------------------------------------------------

    def _load_local(self) -> Dict[str, List[Dict[str, Any]]]:
        raw = self._read_json_file(self.local_path, {})
        if not isinstance(raw, dict):
            raw = {}
        return {
            key: [row for row in raw.get(key) or [] if isinstance(row, dict)]
            for key in ("races", "registrations", "teams", "car_classes")
        }

    def _write_local(self, data: Dict[str, Any]) -> None:
        self._write_json_file(self.local_path, data)

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        tmp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"Failed to write local data store {path}") from exc

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
