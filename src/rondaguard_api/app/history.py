from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime, tzinfo

from .models import RoundLog, RoundSummary, SectorCount


def filter_rounds(logs: Iterable[RoundLog], query: str = "", *, tz: tzinfo = UTC) -> list[RoundLog]:
    """Case-insensitive search over title, sector, responsible, ticket and start date.

    Results are newest first.
    """
    needle = query.strip().lower()
    matches = [log for log in logs if not needle or _matches(log, needle, tz)]
    return sorted(matches, key=lambda log: log.start_time, reverse=True)


def summarize_rounds(logs: Iterable[RoundLog]) -> RoundSummary:
    logs = list(logs)
    if not logs:
        return RoundSummary()
    # Sectors keep first-seen order, like the dashboard chart.
    sectors = Counter(log.sector for log in logs)
    return RoundSummary(
        total_rounds=len(logs),
        rounds_with_issues=sum(1 for log in logs if log.issues_detected),
        average_duration_seconds=round(sum(log.duration_seconds for log in logs) / len(logs)),
        rounds_per_sector=[SectorCount(sector=name, rounds=count) for name, count in sectors.items()],
    )


def _matches(log: RoundLog, needle: str, tz: tzinfo) -> bool:
    started = datetime.fromtimestamp(log.start_time / 1000, tz=tz)
    haystack = [
        log.task_title,
        log.sector,
        log.responsible,
        log.ticket_id or "",
        started.strftime("%d/%m/%Y"),
        started.date().isoformat(),
    ]
    return any(needle in value.lower() for value in haystack)
