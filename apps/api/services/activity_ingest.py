"""
Activity Ingestion Service

Normalises a typed Strava payload into a CompletedActivity and upserts it
idempotently on (athlete_id, source, external_activity_id).

The upsert is an explicit two-step contract:
    1. INSERT inside a SAVEPOINT.
    2. If the unique key already exists, read the row, compare, and only
       write when something actually changed.
The outcome comes back as an `IngestResult` so the caller can tally
created / updated / unchanged without inspecting exceptions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import CompletedActivity, STRAVA_SOURCE
from services.strava_payload import DISCIPLINE_RUN, StravaActivityPayload
from services.sync_time import as_utc

logger = logging.getLogger(__name__)

INGEST_CREATED = "created"
INGEST_UPDATED = "updated"
INGEST_UNCHANGED = "unchanged"

# Key of the provider namespace inside CompletedActivity.metrics_json.
STRAVA_METRICS_KEY = "strava"


@dataclass(frozen=True)
class NormalizedActivity:
    external_activity_id: str
    start_time: datetime
    duration_minutes: int
    distance_km: Optional[float]
    distance_meters: Optional[float]
    discipline: str
    name: Optional[str]
    sport: Optional[str]
    metrics: Dict[str, Any]


@dataclass
class IngestResult:
    kind: str
    activity: CompletedActivity


def seconds_to_minutes_rounded(seconds: float) -> int:
    # Half-up rounding; round() would round half to even.
    return max(1, int(seconds / 60 + 0.5))


def derive_avg_pace_sec_per_km(avg_speed_mps: Optional[float]) -> Optional[int]:
    if not avg_speed_mps or avg_speed_mps <= 0:
        return None
    return int(1000 / avg_speed_mps + 0.5)


def _round_or_none(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(value + 0.5)


def compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop absent values so the stored dict only carries what the provider sent."""
    return {k: v for k, v in values.items() if v is not None}


def build_strava_metrics(payload: StravaActivityPayload) -> Dict[str, Any]:
    """Provider namespace stored under metrics_json['strava']. Keys are a stable stored format."""
    discipline = payload.discipline
    return compact(
        {
            "activityId": payload.external_id,
            "startDateUtc": payload.start_date_raw,
            "startDateLocal": payload.start_date_local,
            "timezone": payload.timezone,
            "name": payload.name,
            "sportType": payload.sport_type,
            "type": payload.type or payload.sport,
            "distanceMeters": payload.distance,
            "movingTimeSec": payload.moving_time,
            "elapsedTimeSec": payload.elapsed_time,
            "totalElevationGainM": payload.total_elevation_gain,
            "elevHighM": payload.elev_high,
            "elevLowM": payload.elev_low,
            "averageSpeedMps": payload.average_speed,
            "maxSpeedMps": payload.max_speed,
            "averageHeartrateBpm": payload.average_heartrate,
            "maxHeartrateBpm": payload.max_heartrate,
            "averageCadenceRpm": payload.average_cadence,
            "caloriesKcal": payload.calories,
            "summaryPolyline": payload.summary_polyline,
            # Derived
            "avgSpeedMps": payload.average_speed,
            "avgPaceSecPerKm": derive_avg_pace_sec_per_km(payload.average_speed) if discipline == DISCIPLINE_RUN else None,
            "avgHr": _round_or_none(payload.average_heartrate),
            "maxHr": _round_or_none(payload.max_heartrate),
        }
    )


def normalize_strava_activity(payload: StravaActivityPayload) -> NormalizedActivity:
    return NormalizedActivity(
        external_activity_id=payload.external_id,
        start_time=payload.start_date,
        duration_minutes=seconds_to_minutes_rounded(payload.elapsed_time),
        distance_km=payload.distance / 1000 if payload.distance is not None else None,
        distance_meters=payload.distance,
        discipline=payload.discipline,
        name=payload.name,
        sport=payload.sport,
        metrics=build_strava_metrics(payload),
    )


def metrics_changed(existing: Any, new: Dict[str, Any]) -> bool:
    """True when any key of the new provider namespace differs from what is stored."""
    if not isinstance(existing, dict):
        return True
    return any(existing.get(key) != value for key, value in new.items())


def _is_unchanged(row: CompletedActivity, normalized: NormalizedActivity) -> bool:
    stored = row.metrics_json or {}
    return (
        row.duration_minutes == normalized.duration_minutes
        and row.distance_km == normalized.distance_km
        and as_utc(row.start_time) == normalized.start_time
        and not metrics_changed(stored.get(STRAVA_METRICS_KEY), normalized.metrics)
    )


def get_completed_activity(db: Session, athlete_id: UUID, external_activity_id: str) -> Optional[CompletedActivity]:
    return (
        db.query(CompletedActivity)
        .filter(
            CompletedActivity.athlete_id == athlete_id,
            CompletedActivity.source == STRAVA_SOURCE,
            CompletedActivity.external_activity_id == external_activity_id,
        )
        .first()
    )


def upsert_completed_activity(db: Session, athlete_id: UUID, normalized: NormalizedActivity) -> IngestResult:
    """
    Insert-or-compare-update a CompletedActivity.

    Sibling namespaces in metrics_json (other providers) are preserved on
    update; only the 'strava' key is replaced. Flushes but does not commit.
    """
    try:
        with db.begin_nested():
            row = CompletedActivity(
                athlete_id=athlete_id,
                source=STRAVA_SOURCE,
                external_provider=STRAVA_SOURCE,
                external_activity_id=normalized.external_activity_id,
                start_time=normalized.start_time,
                duration_minutes=normalized.duration_minutes,
                distance_km=normalized.distance_km,
                metrics_json={STRAVA_METRICS_KEY: normalized.metrics},
                notes=None,
                pain_flag=False,
                confirmed_at=None,
            )
            db.add(row)
        return IngestResult(kind=INGEST_CREATED, activity=row)
    except IntegrityError:
        logger.debug(f"Activity {normalized.external_activity_id} already ingested for athlete {athlete_id}")

    existing = get_completed_activity(db, athlete_id, normalized.external_activity_id)
    if existing is None:
        # Conflict on some other constraint; nothing to compare against.
        raise RuntimeError(
            f"Insert of Strava activity {normalized.external_activity_id} conflicted but no existing row was found."
        )

    if _is_unchanged(existing, normalized):
        return IngestResult(kind=INGEST_UNCHANGED, activity=existing)

    existing.start_time = normalized.start_time
    existing.duration_minutes = normalized.duration_minutes
    existing.distance_km = normalized.distance_km
    existing.metrics_json = {**(existing.metrics_json or {}), STRAVA_METRICS_KEY: normalized.metrics}
    db.flush()

    return IngestResult(kind=INGEST_UPDATED, activity=existing)
