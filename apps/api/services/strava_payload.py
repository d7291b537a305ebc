"""
Typed view of a Strava activity summary.

Strava's JSON is loosely typed in practice (fields go missing, numbers show up
as strings in old exports). `parse_strava_activity` turns a raw dict into a
frozen `StravaActivityPayload` once, at the fetch boundary: a field that is
present with the wrong type is treated as absent, and an activity without
id / start_date / elapsed_time is rejected so the caller can count it as
skipped instead of guessing.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

DISCIPLINE_RUN = "RUN"
DISCIPLINE_BIKE = "BIKE"
DISCIPLINE_SWIM = "SWIM"
DISCIPLINE_OTHER = "OTHER"


@dataclass(frozen=True)
class StravaActivityPayload:
    id: int
    start_date: datetime  # aware, UTC
    elapsed_time: int  # seconds
    start_date_raw: str

    name: Optional[str] = None
    type: Optional[str] = None
    sport_type: Optional[str] = None
    start_date_local: Optional[str] = None
    timezone: Optional[str] = None
    moving_time: Optional[float] = None
    distance: Optional[float] = None  # meters
    total_elevation_gain: Optional[float] = None
    elev_high: Optional[float] = None
    elev_low: Optional[float] = None
    average_speed: Optional[float] = None  # m/s
    max_speed: Optional[float] = None
    average_heartrate: Optional[float] = None
    max_heartrate: Optional[float] = None
    average_cadence: Optional[float] = None
    calories: Optional[float] = None
    summary_polyline: Optional[str] = None

    @property
    def external_id(self) -> str:
        return str(self.id)

    @property
    def sport(self) -> Optional[str]:
        """sport_type when present, else the legacy type field."""
        return self.sport_type or self.type

    @property
    def discipline(self) -> str:
        return map_strava_discipline(self.sport)


def map_strava_discipline(raw: Optional[str]) -> str:
    value = (raw or "").lower()
    if "run" in value:
        return DISCIPLINE_RUN
    if "ride" in value or "bike" in value:
        return DISCIPLINE_BIKE
    if "swim" in value:
        return DISCIPLINE_SWIM
    return DISCIPLINE_OTHER


def _number(value: Any) -> Optional[float]:
    # bool is an int subclass; a True distance is garbage, not 1 meter.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _parse_instant(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_strava_activity(raw: Any) -> Optional[StravaActivityPayload]:
    """Return a typed payload, or None if a required field is missing or invalid."""
    if not isinstance(raw, Mapping):
        return None

    activity_id = raw.get("id")
    if isinstance(activity_id, bool) or not isinstance(activity_id, int) or activity_id <= 0:
        return None

    start_date = _parse_instant(raw.get("start_date"))
    if start_date is None:
        return None

    elapsed = _number(raw.get("elapsed_time"))
    if not elapsed or elapsed <= 0:
        return None

    map_data = raw.get("map")
    polyline = _string(map_data.get("summary_polyline")) if isinstance(map_data, Mapping) else None

    return StravaActivityPayload(
        id=activity_id,
        start_date=start_date,
        elapsed_time=int(elapsed),
        start_date_raw=raw["start_date"],
        name=_string(raw.get("name")),
        type=_string(raw.get("type")),
        sport_type=_string(raw.get("sport_type")),
        start_date_local=_string(raw.get("start_date_local")),
        timezone=_string(raw.get("timezone")),
        moving_time=_number(raw.get("moving_time")),
        distance=_number(raw.get("distance")),
        total_elevation_gain=_number(raw.get("total_elevation_gain")),
        elev_high=_number(raw.get("elev_high")),
        elev_low=_number(raw.get("elev_low")),
        average_speed=_number(raw.get("average_speed")),
        max_speed=_number(raw.get("max_speed")),
        average_heartrate=_number(raw.get("average_heartrate")),
        max_heartrate=_number(raw.get("max_heartrate")),
        average_cadence=_number(raw.get("average_cadence")),
        calories=_number(raw.get("calories")),
        summary_polyline=polyline,
    )
