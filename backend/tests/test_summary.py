from __future__ import annotations

from paddock_core.differ import build_change_details
from paddock_core.messages import roster_change_lines
from paddock_core.models import ChangeRecord, SnapshotRecord
from paddock_core.summary import (
    build_change_summary,
    compute_mention_registration_ids,
    list_names,
    roster_changes_from_details,
)

NAMES = {"t1": "Alpha", "t2": "Bravo", "t3": "Charlie"}


def _record(reg_id: str, team_id=None, car_class: str = "GT3") -> ChangeRecord:
    return ChangeRecord(id=reg_id, driver_name=reg_id.title(), team_id=team_id, car_class_name=car_class)


def _snap(team_id=None) -> SnapshotRecord:
    return SnapshotRecord(team_id=team_id, driver_name="x", car_class_id="gt3", car_class_name="GT3")


def test_list_names_uses_oxford_comma() -> None:
    assert list_names(["Ann"]) == "Ann"
    assert list_names(["Ann", "Ben"]) == "Ann and Ben"
    assert list_names(["Ann", "Ben", "Cat"]) == "Ann, Ben, and Cat"


def test_additions_to_one_team_are_merged() -> None:
    original = [_record("ann"), _record("ben"), _record("dan", "t2")]
    pending = [_record("ann", "t1"), _record("ben", "t1"), _record("cat", "t1"), _record("dan", "t2"), _record("eve")]

    summary = build_change_summary(original, pending, {"t2": "thread-2"}, NAMES)

    assert summary.team_changes == ["Added Ann, Ben, and Cat to Alpha.", "Registered Eve (unassigned)."]
    assert summary.destructive_changes == []
    assert summary.threads_to_create == ["Alpha"]


def test_destructive_lines_are_sorted_and_unique() -> None:
    original = [_record("ann", "t1"), _record("ben", "t2"), _record("cat", "t3")]
    pending = [_record("ann", "t2"), _record("ben")]

    summary = build_change_summary(original, pending, {"t1": "a", "t2": "b", "t3": "c"}, NAMES)

    assert summary.destructive_changes == [
        "Dropped Ben from Bravo.",
        "Dropped Cat from Charlie.",
        "Moved Ann from Alpha to Bravo.",
    ]
    assert summary.threads_to_create == []
    assert not summary.is_empty()


def test_empty_summary() -> None:
    records = [_record("ann", "t1")]

    summary = build_change_summary(records, records, {"t1": "thread"}, NAMES, newly_formed_team_names=[])

    assert summary.is_empty()


def test_roster_changes_describe_each_detail() -> None:
    original = [_record("ann", "t1"), _record("ben", "t1"), _record("cat")]
    pending = [_record("ann", "t2"), _record("ben"), _record("cat", "t1")]

    changes = roster_changes_from_details(build_change_details(original, pending, NAMES))

    assert {"type": "added", "driverName": "Cat", "teamName": "Alpha"} in changes
    assert {"type": "moved", "driverName": "Ann", "fromTeam": "Alpha", "toTeam": "Bravo"} in changes
    assert {"type": "unassigned", "driverName": "Ben", "fromTeam": "Alpha"} in changes


def test_removed_registration_on_a_team_reads_as_dropped() -> None:
    original = [_record("ann", "t1"), _record("ben", "t1"), _record("cat", "t2")]
    pending = [_record("ann", "t1"), _record("cat")]

    changes = roster_changes_from_details(build_change_details(original, pending, NAMES), ["ann", "cat"])

    assert {"type": "dropped", "driverName": "Ben", "fromTeam": "Alpha"} in changes
    assert {"type": "unassigned", "driverName": "Cat", "fromTeam": "Bravo"} in changes
    assert roster_change_lines(changes) == [
        "➖ **Ben** dropped from **Alpha**",
        "⬅️ **Cat** removed from **Bravo**",
    ]


def test_first_cycle_mentions_everyone_with_a_chat_identity() -> None:
    current = {"r1": _snap("t1"), "r2": _snap("t1")}

    assert compute_mention_registration_ids(None, current, {"r1": "111", "r2": None}) == ["r1"]


def test_later_cycles_mention_only_new_or_moved() -> None:
    previous = {"r1": _snap("t1"), "r2": _snap("t1")}
    current = {"r1": _snap("t1"), "r2": _snap("t2"), "r3": _snap("t2")}

    assert compute_mention_registration_ids(previous, current, {}) == ["r2", "r3"]
