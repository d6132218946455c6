from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .differ import build_change_details, team_label
from .models import ChangeDetail, ChangeRecord, SnapshotRecord


@dataclass
class ChangeSummary:
    team_changes: List[str] = field(default_factory=list)
    newly_formed_teams: List[str] = field(default_factory=list)
    destructive_changes: List[str] = field(default_factory=list)
    threads_to_create: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.team_changes or self.newly_formed_teams or self.destructive_changes or self.threads_to_create)


def list_names(names: Sequence[str]) -> str:
    if len(names) <= 1:
        return names[0] if names else ""
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{', '.join(names[:-1])}, and {names[-1]}"


def summarize_details(
    details: Sequence[ChangeDetail],
    pending_records: Sequence[ChangeRecord],
    existing_threads: Optional[Mapping[str, str]],
    team_name_by_id: Mapping[str, str],
    newly_formed_team_names: Iterable[str] = (),
) -> ChangeSummary:
    added_by_team: Dict[str, Set[str]] = {}
    unassigned_lines: List[str] = []
    destructive: Set[str] = set()

    for detail in details:
        if detail.type == "added":
            if detail.to_team_id is None:
                unassigned_lines.append(detail.line)
            else:
                added_by_team.setdefault(detail.to_team_name, set()).add(detail.driver_name)
            continue
        if detail.destructive:
            destructive.add(detail.line)

    team_changes = [
        f"Added {list_names(sorted(added_by_team[team_name]))} to {team_name}."
        for team_name in sorted(added_by_team)
    ]
    team_changes.extend(sorted(unassigned_lines))

    threads = existing_threads or {}
    needing_threads = {
        team_label(record.team_id, team_name_by_id, record.team_name, default="Team")
        for record in pending_records
        if record.team_id is not None and not threads.get(record.team_id)
    }

    return ChangeSummary(
        team_changes=team_changes,
        newly_formed_teams=sorted(newly_formed_team_names),
        destructive_changes=sorted(destructive),
        threads_to_create=sorted(needing_threads),
    )


def build_change_summary(
    original_records: Sequence[ChangeRecord],
    pending_records: Sequence[ChangeRecord],
    existing_threads: Optional[Mapping[str, str]],
    team_name_by_id: Mapping[str, str],
    newly_formed_team_names: Iterable[str] = (),
) -> ChangeSummary:
    details = build_change_details(original_records, pending_records, team_name_by_id)
    return summarize_details(details, pending_records, existing_threads, team_name_by_id, newly_formed_team_names)


def roster_changes_from_details(
    details: Sequence[ChangeDetail],
    pending_ids: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    """Structured roster changes used to render chat posts.

    With ``pending_ids`` a registration that left the race is reported as
    dropped even when it was on a team; without them every drop from a team
    reads as an unassignment.
    """

    remaining = set(pending_ids) if pending_ids is not None else None
    changes: List[Dict[str, Any]] = []
    for detail in details:
        if detail.type == "added":
            changes.append({"type": "added", "driverName": detail.driver_name, "teamName": detail.to_team_name})
        elif detail.type == "moved":
            changes.append(
                {
                    "type": "moved",
                    "driverName": detail.driver_name,
                    "fromTeam": detail.from_team_name,
                    "toTeam": detail.to_team_name,
                }
            )
        elif detail.type == "dropped":
            if detail.from_team_id is None:
                changes.append({"type": "dropped", "driverName": detail.driver_name})
            elif remaining is not None and detail.registration_id not in remaining:
                changes.append({"type": "dropped", "driverName": detail.driver_name, "fromTeam": detail.from_team_name})
            else:
                changes.append({"type": "unassigned", "driverName": detail.driver_name, "fromTeam": detail.from_team_name})
        elif detail.type == "class_changed":
            changes.append(
                {
                    "type": "classChanged",
                    "driverName": detail.driver_name,
                    "fromClass": detail.from_class,
                    "toClass": detail.to_class,
                }
            )
        elif detail.type == "team_renamed":
            changes.append({"type": "teamRenamed", "fromName": detail.from_team_name, "toName": detail.to_team_name})
        elif detail.type == "team_class_changed":
            changes.append(
                {
                    "type": "teamClassChanged",
                    "teamName": detail.from_team_name,
                    "fromClass": detail.from_class,
                    "toClass": detail.to_class,
                    "drivers": list(detail.drivers),
                }
            )
    return changes


def compute_mention_registration_ids(
    previous: Optional[Mapping[str, SnapshotRecord]],
    current: Mapping[str, SnapshotRecord],
    chat_ids: Mapping[str, Optional[str]],
) -> List[str]:
    """Registrations whose drivers should be pinged in the next post.

    On the first cycle everyone with a chat identity is mentioned; afterwards
    only new registrations and ones whose team changed.
    """

    if previous is None:
        return sorted(reg_id for reg_id in current if chat_ids.get(reg_id))

    mention: List[str] = []
    for reg_id, record in current.items():
        before = previous.get(reg_id)
        if before is None or before.team_id != record.team_id:
            mention.append(reg_id)
    return sorted(mention)
