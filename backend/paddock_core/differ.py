from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Set

from .models import ChangeDetail, ChangeRecord

UNASSIGNED = "Unassigned"


def team_label(
    team_id: Optional[str],
    team_name_by_id: Mapping[str, str],
    fallback: Optional[str] = None,
    default: str = UNASSIGNED,
) -> str:
    if team_id is None:
        return default
    return team_name_by_id.get(team_id) or fallback or "Team"


def _members_by_team(records: Sequence[ChangeRecord]) -> Dict[str, Set[str]]:
    members: Dict[str, Set[str]] = {}
    for record in records:
        if record.team_id is not None:
            members.setdefault(record.team_id, set()).add(record.id)
    return members


def _classes_by_team(records: Sequence[ChangeRecord]) -> Dict[str, Set[str]]:
    classes: Dict[str, Set[str]] = {}
    for record in records:
        if record.team_id is not None:
            classes.setdefault(record.team_id, set()).add(record.car_class_name)
    return classes


def _names_by_team(records: Sequence[ChangeRecord]) -> Dict[str, str]:
    return {record.team_id: record.team_name for record in records if record.team_id is not None and record.team_name}


def build_change_details(
    original_records: Sequence[ChangeRecord],
    pending_records: Sequence[ChangeRecord],
    team_name_by_id: Mapping[str, str],
) -> List[ChangeDetail]:
    """Classify every difference between two driver->team snapshots.

    Teams whose member set is identical on both sides are compared as a unit
    first, so a rename or a whole-team class swap is one record rather than
    one per driver. The result is sorted by ``line``.
    """

    original_by_id = {record.id: record for record in original_records}
    pending_by_id = {record.id: record for record in pending_records}

    original_members = _members_by_team(original_records)
    pending_members = _members_by_team(pending_records)
    original_classes = _classes_by_team(original_records)
    pending_classes = _classes_by_team(pending_records)
    original_names = _names_by_team(original_records)
    pending_names = _names_by_team(pending_records)

    stable_team_ids = sorted(
        team_id
        for team_id, members in original_members.items()
        if pending_members.get(team_id) == members
    )

    details: List[ChangeDetail] = []
    class_batches: Set[str] = set()

    for team_id in stable_team_ids:
        old_name = original_names.get(team_id) or team_name_by_id.get(team_id) or "Team"
        new_name = team_name_by_id.get(team_id) or pending_names.get(team_id) or old_name
        if old_name != new_name:
            details.append(
                ChangeDetail(
                    registration_id=f"team:{team_id}",
                    driver_name=old_name,
                    type="team_renamed",
                    from_team_id=team_id,
                    to_team_id=team_id,
                    from_team_name=old_name,
                    to_team_name=new_name,
                    line=f"{old_name} renamed to {new_name}.",
                    destructive=False,
                )
            )

        old_classes = original_classes.get(team_id, set())
        new_classes = pending_classes.get(team_id, set())
        if len(old_classes) == 1 and len(new_classes) == 1 and old_classes != new_classes:
            (old_class,) = old_classes
            (new_class,) = new_classes
            drivers = sorted(pending_by_id[reg_id].driver_name for reg_id in pending_members[team_id])
            class_batches.add(team_id)
            details.append(
                ChangeDetail(
                    registration_id=f"team-class:{team_id}",
                    driver_name=old_name,
                    type="team_class_changed",
                    from_team_id=team_id,
                    to_team_id=team_id,
                    from_team_name=old_name,
                    to_team_name=new_name,
                    line=f"{old_name} car class changed from {old_class} to {new_class} ({', '.join(drivers)}).",
                    destructive=True,
                    drivers=drivers,
                    from_class=old_class,
                    to_class=new_class,
                )
            )

    for reg_id in sorted(set(original_by_id) | set(pending_by_id)):
        original = original_by_id.get(reg_id)
        pending = pending_by_id.get(reg_id)

        if original is not None and pending is not None:
            from_id, to_id = original.team_id, pending.team_id
            from_name = team_label(from_id, team_name_by_id, original.team_name)
            to_name = team_label(to_id, team_name_by_id, pending.team_name)
            name = pending.driver_name

            if from_id != to_id:
                if from_id is not None and to_id is not None:
                    kind, line, destructive = "moved", f"Moved {name} from {from_name} to {to_name}.", True
                elif to_id is not None:
                    kind, line, destructive = "added", f"Added {name} to {to_name}.", False
                else:
                    kind, line, destructive = "dropped", f"Dropped {name} from {from_name}.", True
                details.append(
                    ChangeDetail(
                        registration_id=reg_id,
                        driver_name=name,
                        type=kind,
                        from_team_id=from_id,
                        to_team_id=to_id,
                        from_team_name=from_name,
                        to_team_name=to_name,
                        line=line,
                        destructive=destructive,
                    )
                )

            if original.car_class_name != pending.car_class_name:
                if from_id is not None and from_id == to_id and from_id in class_batches:
                    continue
                details.append(
                    ChangeDetail(
                        registration_id=reg_id,
                        driver_name=name,
                        type="class_changed",
                        from_team_id=from_id,
                        to_team_id=to_id,
                        from_team_name=from_name,
                        to_team_name=to_name,
                        line=f"Changed {name} from {original.car_class_name} to {pending.car_class_name}.",
                        destructive=True,
                        from_class=original.car_class_name,
                        to_class=pending.car_class_name,
                    )
                )
            continue

        if original is not None:
            from_name = team_label(original.team_id, team_name_by_id, original.team_name)
            details.append(
                ChangeDetail(
                    registration_id=reg_id,
                    driver_name=original.driver_name,
                    type="dropped",
                    from_team_id=original.team_id,
                    to_team_id=None,
                    from_team_name=from_name,
                    to_team_name=UNASSIGNED,
                    line=f"Dropped {original.driver_name} from {from_name}.",
                    destructive=True,
                )
            )
            continue

        if pending.team_id is None:
            line = f"Registered {pending.driver_name} (unassigned)."
        else:
            line = f"Added {pending.driver_name} to {team_label(pending.team_id, team_name_by_id, pending.team_name)}."
        details.append(
            ChangeDetail(
                registration_id=reg_id,
                driver_name=pending.driver_name,
                type="added",
                from_team_id=None,
                to_team_id=pending.team_id,
                from_team_name=UNASSIGNED,
                to_team_name=team_label(pending.team_id, team_name_by_id, pending.team_name),
                line=line,
                destructive=False,
            )
        )

    return sorted(details, key=lambda detail: (detail.line, detail.registration_id))
