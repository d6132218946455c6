"""Persisted team snapshots.

Two shapes exist in stored races. Older rows hold a flat map of
registration id -> team id (or null); newer rows hold a full record per
registration. Both are parsed into a tagged value once and normalised into
``SnapshotRecord`` maps before any comparison happens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

from .models import ChangeRecord, Registration, SnapshotRecord


logger = logging.getLogger(__name__)

UNKNOWN_DRIVER = "Unknown driver"


@dataclass
class LegacySnapshot:
    teams: Dict[str, Optional[str]] = field(default_factory=dict)
    kind: Literal["legacy"] = "legacy"


@dataclass
class RecordSnapshot:
    records: Dict[str, SnapshotRecord] = field(default_factory=dict)
    kind: Literal["records"] = "records"


ParsedSnapshot = Union[LegacySnapshot, RecordSnapshot]


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_snapshot(raw: Any) -> Optional[ParsedSnapshot]:
    """Classify a stored snapshot. Returns ``None`` when nothing was stored."""

    if raw is None:
        return None
    if not isinstance(raw, dict):
        logger.warning("Ignoring snapshot with unexpected payload: %s", type(raw))
        return None

    if all(value is None or isinstance(value, str) for value in raw.values()):
        return LegacySnapshot(teams={str(key): _optional_str(value) for key, value in raw.items()})

    records: Dict[str, SnapshotRecord] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            logger.warning("Skipping malformed snapshot entry %s", key)
            continue
        records[str(key)] = SnapshotRecord(
            team_id=_optional_str(value.get("teamId")),
            team_name=_optional_str(value.get("teamName")),
            driver_name=str(value.get("driverName") or UNKNOWN_DRIVER),
            car_class_id=str(value.get("carClassId") or ""),
            car_class_name=str(value.get("carClassName") or ""),
        )
    return RecordSnapshot(records=records)


def normalize_snapshot(
    parsed: Optional[ParsedSnapshot],
    registrations: Sequence[Registration],
) -> Optional[Dict[str, SnapshotRecord]]:
    """Turn either snapshot shape into records.

    Legacy entries carry no names or classes; those are taken from the
    matching current registration so a format upgrade never reads as a class
    change.
    """

    if parsed is None:
        return None
    if isinstance(parsed, RecordSnapshot):
        return dict(parsed.records)

    by_id = {reg.id: reg for reg in registrations}
    records: Dict[str, SnapshotRecord] = {}
    for reg_id, team_id in parsed.teams.items():
        current = by_id.get(reg_id)
        records[reg_id] = SnapshotRecord(
            team_id=team_id,
            driver_name=current.driver_name if current else UNKNOWN_DRIVER,
            car_class_id=current.car_class_id if current else "",
            car_class_name=current.car_class_name if current else "",
        )
    return records


def load_snapshot(raw: Any, registrations: Sequence[Registration]) -> Optional[Dict[str, SnapshotRecord]]:
    return normalize_snapshot(parse_snapshot(raw), registrations)


def build_snapshot(
    registrations: Sequence[Registration],
    team_name_by_id: Mapping[str, str],
) -> Dict[str, SnapshotRecord]:
    return {
        reg.id: SnapshotRecord(
            team_id=reg.team_id,
            team_name=team_name_by_id.get(reg.team_id) if reg.team_id is not None else None,
            driver_name=reg.driver_name,
            car_class_id=reg.car_class_id,
            car_class_name=reg.car_class_name,
        )
        for reg in registrations
    }


def snapshot_to_json(snapshot: Mapping[str, SnapshotRecord]) -> Dict[str, Dict[str, Any]]:
    return {reg_id: record.to_json() for reg_id, record in sorted(snapshot.items())}


def change_records(snapshot: Mapping[str, SnapshotRecord]) -> List[ChangeRecord]:
    return [
        ChangeRecord(
            id=reg_id,
            driver_name=record.driver_name,
            team_id=record.team_id,
            team_name=record.team_name,
            car_class_name=record.car_class_name,
        )
        for reg_id, record in snapshot.items()
    ]
