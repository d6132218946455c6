from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import Registration, Team
from .ratings import resolve_rating

STATUS_MARKER = "teams-assigned"
TEAM_ROSTER_MARKER = "team-roster"
ROSTER_CHANGE_MARKER = "roster-change"

EMBED_COLOR = 0x5865F2
MAX_EMBED_LINES_LENGTH = 1800
MAX_EMBEDS = 10


@dataclass
class RosterMember:
    name: str
    car_class: str
    discord_id: Optional[str] = None
    registration_id: Optional[str] = None


@dataclass
class TeamRoster:
    team_id: str
    name: str
    car_class_name: Optional[str] = None
    avg_rating: Optional[int] = None
    thread_url: Optional[str] = None
    members: List[RosterMember] = field(default_factory=list)


def build_discord_web_link(guild_id: str, thread_id: str) -> str:
    return f"https://discord.com/channels/{guild_id}/{thread_id}"


def marker_footer(app_title: str, marker: str) -> Dict[str, str]:
    return {"text": f"{app_title} • ref:{marker}"}


def chunk_lines(lines: Sequence[str], max_length: int = MAX_EMBED_LINES_LENGTH) -> List[str]:
    """Join lines into chunks no longer than ``max_length``; long lines are split."""

    chunks: List[str] = []
    current = ""
    for line in lines:
        if len(line) > max_length:
            if current:
                chunks.append(current)
                current = ""
            while len(line) > max_length:
                chunks.append(line[:max_length])
                line = line[max_length:]
            current = line
            continue

        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > max_length:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def build_team_rosters(
    registrations: Sequence[Registration],
    teams: Sequence[Team],
    thread_map: Optional[Mapping[str, str]] = None,
    guild_id: Optional[str] = None,
) -> tuple[List[TeamRoster], List[RosterMember]]:
    names = {team.id: team.name for team in teams}
    threads = thread_map or {}
    rosters: Dict[str, TeamRoster] = {}
    ratings: Dict[str, List[int]] = {}
    unassigned: List[RosterMember] = []

    for reg in sorted(registrations, key=lambda item: item.sort_key()):
        member = RosterMember(
            name=reg.driver_name,
            car_class=reg.car_class_name,
            discord_id=reg.discord_id,
            registration_id=reg.id,
        )
        if reg.team_id is None:
            unassigned.append(member)
            continue
        roster = rosters.get(reg.team_id)
        if roster is None:
            thread_id = threads.get(reg.team_id)
            roster = TeamRoster(
                team_id=reg.team_id,
                name=names.get(reg.team_id, "Team"),
                car_class_name=reg.car_class_name,
                thread_url=build_discord_web_link(guild_id, thread_id) if guild_id and thread_id else None,
            )
            rosters[reg.team_id] = roster
        roster.members.append(member)
        ratings.setdefault(reg.team_id, []).append(resolve_rating(reg))

    for team_id, roster in rosters.items():
        values = ratings.get(team_id) or []
        roster.avg_rating = round(sum(values) / len(values)) if values else None

    ordered = sorted(rosters.values(), key=lambda roster: (roster.name.lower(), roster.team_id))
    return ordered, unassigned


def _member_label(member: RosterMember) -> str:
    return f"<@{member.discord_id}>" if member.discord_id else member.name


def format_team_lines(teams: Sequence[TeamRoster], unassigned: Sequence[RosterMember]) -> List[str]:
    lines: List[str] = []
    for team in teams:
        class_label = f" • {team.car_class_name}" if team.car_class_name else ""
        rating_label = f" • {team.avg_rating} SOF" if team.avg_rating is not None else ""
        lines.append(f"**{team.name}**{class_label}{rating_label}")
        if team.thread_url:
            lines.append(f"↳ [Team Thread]({team.thread_url})")
        if not team.members:
            lines.append("• _No drivers assigned_")
        for member in team.members:
            lines.append(f"• {_member_label(member)}")
        lines.append("")

    if unassigned:
        lines.append("**Unassigned**")
        for member in unassigned:
            lines.append(f"• {_member_label(member)}")
        lines.append("")
    return lines


def _timestamp(value: str) -> str:
    try:
        moment = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return value
    return f"<t:{int(moment.timestamp())}:F>"


def _mentions(discord_ids: Sequence[str]) -> Dict[str, Any]:
    unique = sorted({item for item in discord_ids if item})
    return {
        "content": " ".join(f"<@{item}>" for item in unique),
        "allowed_mentions": {"users": unique, "parse": []},
    }


def build_status_payload(
    event_name: str,
    race_start: str,
    teams: Sequence[TeamRoster],
    unassigned: Sequence[RosterMember],
    app_title: str,
    race_url: Optional[str] = None,
    mention_discord_ids: Sequence[str] = (),
) -> Dict[str, Any]:
    """The single status message kept up to date in the event thread."""

    chunks = chunk_lines(format_team_lines(teams, unassigned)) or ["_No registrations yet_"]
    chunks = chunks[:MAX_EMBEDS]
    embeds: List[Dict[str, Any]] = []
    for index, chunk in enumerate(chunks):
        embed: Dict[str, Any] = {"description": chunk, "color": EMBED_COLOR}
        if index == 0:
            embed["title"] = f"🏁 Teams Assigned • {event_name}"
            embed["fields"] = [{"name": "🕐 Race Time", "value": _timestamp(race_start), "inline": True}]
            if race_url:
                embed["url"] = race_url
        if index == len(chunks) - 1:
            embed["footer"] = marker_footer(app_title, STATUS_MARKER)
        embeds.append(embed)

    payload = _mentions(mention_discord_ids)
    payload["embeds"] = embeds
    return payload


def build_team_thread_payload(
    team: TeamRoster,
    event_name: str,
    race_start: str,
    app_title: str,
    event_thread_url: Optional[str] = None,
) -> Dict[str, Any]:
    lines = format_team_lines([team], [])
    fields = [{"name": "🕐 Race Time", "value": _timestamp(race_start), "inline": True}]
    if event_thread_url:
        fields.append({"name": "💬 Event Thread", "value": f"[Open]({event_thread_url})", "inline": True})
    payload = _mentions([member.discord_id for member in team.members if member.discord_id])
    payload["embeds"] = [
        {
            "title": f"{team.name} • {event_name}",
            "description": "\n".join(lines).strip(),
            "color": EMBED_COLOR,
            "fields": fields,
            "footer": marker_footer(app_title, TEAM_ROSTER_MARKER),
        }
    ]
    return payload


def roster_change_lines(changes: Sequence[Mapping[str, Any]]) -> List[str]:
    lines: List[str] = []
    for change in changes:
        kind = change.get("type")
        if kind == "added":
            lines.append(f"➕ **{change['driverName']}** joined **{change['teamName']}**")
        elif kind == "moved":
            lines.append(f"🔁 **{change['driverName']}** moved from **{change['fromTeam']}** to **{change['toTeam']}**")
        elif kind == "unassigned":
            lines.append(f"⬅️ **{change['driverName']}** removed from **{change['fromTeam']}**")
        elif kind == "dropped":
            team = change.get("fromTeam")
            lines.append(f"➖ **{change['driverName']}** dropped" + (f" from **{team}**" if team else ""))
        elif kind == "classChanged":
            lines.append(f"🏎️ **{change['driverName']}** changed class from {change['fromClass']} to {change['toClass']}")
        elif kind == "teamRenamed":
            lines.append(f"✏️ **{change['fromName']}** is now **{change['toName']}**")
        elif kind == "teamClassChanged":
            drivers = ", ".join(change.get("drivers") or [])
            lines.append(
                f"🏎️ **{change['teamName']}** switched from {change['fromClass']} to {change['toClass']}"
                + (f" ({drivers})" if drivers else "")
            )
    return lines


def build_roster_change_payload(
    changes: Sequence[Mapping[str, Any]],
    app_title: str,
    admin_name: Optional[str] = None,
    mention_discord_ids: Sequence[str] = (),
) -> Dict[str, Any]:
    description = "\n".join(roster_change_lines(changes))
    embed: Dict[str, Any] = {
        "title": "📋 Roster Changes",
        "description": description[:4000],
        "color": 0xF1C40F,
        "footer": marker_footer(app_title, ROSTER_CHANGE_MARKER),
    }
    if admin_name:
        embed["author"] = {"name": f"Updated by {admin_name}"}
    payload = _mentions(mention_discord_ids)
    payload["embeds"] = [embed]
    return payload
