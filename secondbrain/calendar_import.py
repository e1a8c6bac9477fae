"""Import of externally sourced (Google Calendar) events.

Events are correlated by their external id through a raw query; events
already present are skipped. The import is a plain sequence of writes:
a failure part-way leaves the events created so far in place.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from db.codec import parse_datetime
from db.repository import EntityRepository
from db.schema import CALENDAR_EVENT

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "other"
CATEGORY_COLORS = {
    "work": "#4285F4",
    "personal": "#FBBC05",
    "health": "#34A853",
    "education": "#EA4335",
    "social": "#8430CE",
    "other": "#80868B",
}


@dataclass
class ImportResult:
    created: int = 0
    skipped: int = 0


def _event_time(value: dict[str, Any] | None, name: str, event_id: str) -> Any:
    if not value:
        raise ValueError(f"Event {event_id} has no '{name}'")
    if "dateTime" in value:
        return parse_datetime(value["dateTime"])
    if "date" in value:
        return parse_datetime(value["date"] + "T00:00:00Z")
    raise ValueError(f"Event {event_id} has no '{name}.dateTime' or '{name}.date'")


def convert_google_event(payload: dict[str, Any]) -> dict[str, Any]:
    """Map a Google Calendar API event to CalendarEvent fields (without userId)."""
    event_id = payload.get("id")
    if not event_id:
        raise ValueError("Google event is missing 'id'")
    return {
        "title": payload.get("summary") or "(No title)",
        "description": payload.get("description"),
        "start": _event_time(payload.get("start"), "start", event_id),
        "end": _event_time(payload.get("end"), "end", event_id),
        "allDay": "date" in (payload.get("start") or {}),
        "location": payload.get("location"),
        "category": DEFAULT_CATEGORY,
        "color": CATEGORY_COLORS[DEFAULT_CATEGORY],
        "googleEventId": event_id,
    }


async def import_calendar_events(
    repository: EntityRepository,
    user_id: str,
    events: Iterable[dict[str, Any]],
) -> ImportResult:
    """Create CalendarEvents for converted events not seen before.

    ``events`` are converted CalendarEvent field dicts (see
    convert_google_event). Events without a googleEventId are skipped.
    """
    result = ImportResult()
    for event in events:
        external_id = event.get("googleEventId")
        if not external_id:
            result.skipped += 1
            continue

        existing = await repository.query(
            f"SELECT * FROM {CALENDAR_EVENT} WHERE googleEventId = ?",
            [external_id],
            table=CALENDAR_EVENT,
        )
        if existing:
            result.skipped += 1
            continue

        await repository.create(CALENDAR_EVENT, {**event, "userId": user_id})
        result.created += 1

    logger.info(
        "Imported calendar events for %s: %d created, %d skipped",
        user_id,
        result.created,
        result.skipped,
    )
    return result
