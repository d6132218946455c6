"""CLI helper for re-running the Discord notification cycle of one or more races."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import List, Optional, Sequence

from paddock_core import DataStore, DiscordClient, TeamAssignmentService
from paddock_core.service import NotificationResult


def _format_result(result: NotificationResult) -> str:
    lines = [f"{result.race_id}: {result.status}"]
    if result.status_action:
        lines.append(f"  status message {result.status_action}")
    for handle in result.created_threads:
        lines.append(f"  created thread {handle}")
    if result.error:
        lines.append(f"  error: {result.error}")
    return "\n".join(lines)


async def _notify(race_ids: Sequence[str], service: TeamAssignmentService) -> List[NotificationResult]:
    results: List[NotificationResult] = []
    for race_id in race_ids:
        try:
            results.append(await service.notify_race_changes(race_id))
        except (ValueError, RuntimeError) as exc:
            results.append(NotificationResult(race_id=race_id, status="failed", error=str(exc)))
    return results


def main(argv: Optional[Sequence[str]] = None, service: Optional[TeamAssignmentService] = None) -> int:
    race_ids = list(argv if argv is not None else sys.argv[1:])
    if not race_ids:
        print("usage: notify_race.py RACE_ID [RACE_ID ...]", file=sys.stderr)
        return 2

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    service = service or TeamAssignmentService(DataStore(), DiscordClient())
    results = asyncio.run(_notify(race_ids, service))
    for result in results:
        print(_format_result(result))

    return 1 if any(result.status == "failed" for result in results) else 0


if __name__ == "__main__":
    raise SystemExit(main())
