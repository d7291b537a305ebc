"""
Strava Sync Pipeline

Per-account sync: refresh credentials -> fetch -> ingest -> match or
materialise -> advance last_sync_at.

Entry points:
- sync_strava_for_athlete: poll one account's recent window (errors propagate)
- sync_strava_activity_by_id: fetch and ingest a single activity (errors propagate)
- sync_strava_for_connections: backfill many accounts, recording per-account
  errors in the summary; a rate limit stops the loop

The queue runner needs the raw exceptions (to tell a rate limit from a
transient failure), so only the multi-account backfill aggregates errors.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID
import logging

from sqlalchemy import and_, exists, select
from sqlalchemy.orm import Session

from core.cache import TTLCache
from core.config import settings
from models import Athlete, CalendarItem, StravaConnection, StravaSyncIntent
from services.activity_ingest import (
    INGEST_CREATED,
    INGEST_UNCHANGED,
    INGEST_UPDATED,
    normalize_strava_activity,
    upsert_completed_activity,
)
from services.calendar_matcher import ensure_synced_status, match_and_link, materialize_calendar_item
from services.strava_payload import parse_strava_activity
from services.strava_service import (
    StravaConfigError,
    StravaFetchError,
    StravaRateLimitError,
    ensure_fresh_connection,
    fetch_activity_by_id,
    fetch_recent_activities,
)
from services.sync_intents import OPEN_INTENT_STATUSES
from services.sync_time import activity_local_date, activity_local_minutes, as_utc, utcnow

logger = logging.getLogger(__name__)

SKIP_MISSING_REQUIRED_FIELDS = "missing_required_fields"
SKIP_OUTSIDE_WINDOW = "outside_window"


@dataclass
class PollSummary:
    polled_athletes: int = 0
    fetched: int = 0
    in_window: int = 0
    created: int = 0
    updated: int = 0
    matched: int = 0
    created_calendar_items: int = 0
    skipped_existing: int = 0
    skipped_by_reason: Dict[str, int] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    rate_limited: bool = False

    def skip(self, reason: str) -> None:
        self.skipped_by_reason[reason] = self.skipped_by_reason.get(reason, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StravaConnectionEntry:
    athlete_id: UUID
    timezone: str
    coach_id: Optional[UUID]
    connection: StravaConnection


def _load_athlete_profile(db: Session, athlete_id: UUID) -> Optional[Dict[str, Any]]:
    athlete = db.get(Athlete, athlete_id)
    if athlete is None:
        return None
    return {
        "timezone": athlete.timezone or settings.STRAVA_DEFAULT_TIMEZONE,
        "coach_id": str(athlete.coach_id) if athlete.coach_id else None,
    }


def _build_entry(db: Session, connection: StravaConnection, profile_cache: Optional[TTLCache] = None) -> StravaConnectionEntry:
    if profile_cache is not None:
        profile = profile_cache.get_or_load(str(connection.athlete_id), lambda: _load_athlete_profile(db, connection.athlete_id))
    else:
        profile = _load_athlete_profile(db, connection.athlete_id)
    profile = profile or {}

    coach_id = profile.get("coach_id")
    return StravaConnectionEntry(
        athlete_id=connection.athlete_id,
        timezone=profile.get("timezone") or settings.STRAVA_DEFAULT_TIMEZONE,
        coach_id=UUID(coach_id) if coach_id else None,
        connection=connection,
    )


def load_connection_entry(db: Session, athlete_id: UUID, profile_cache: Optional[TTLCache] = None) -> Optional[StravaConnectionEntry]:
    """Connection + athlete profile for one athlete, or None if not connected."""
    connection = db.query(StravaConnection).filter(StravaConnection.athlete_id == athlete_id).first()
    if connection is None:
        return None
    return _build_entry(db, connection, profile_cache)


def load_backfill_entries(
    db: Session,
    limit: int,
    athlete_id: Optional[UUID] = None,
    profile_cache: Optional[TTLCache] = None,
) -> List[StravaConnectionEntry]:
    """Connected athletes with no open (PENDING/PROCESSING) intent, stalest first."""
    has_open_intent = exists().where(
        and_(
            StravaSyncIntent.athlete_id == StravaConnection.athlete_id,
            StravaSyncIntent.status.in_(OPEN_INTENT_STATUSES),
        )
    )
    stmt = select(StravaConnection).where(~has_open_intent)
    if athlete_id is not None:
        stmt = stmt.where(StravaConnection.athlete_id == athlete_id)
    stmt = stmt.order_by(StravaConnection.last_sync_at.asc().nulls_first()).limit(limit)

    return [_build_entry(db, connection, profile_cache) for connection in db.execute(stmt).scalars().all()]


def compute_after_unix_seconds(
    now: datetime,
    last_sync_at: Optional[datetime],
    force_days: Optional[int] = None,
    lookback_days: Optional[int] = None,
    buffer_s: Optional[int] = None,
) -> int:
    """
    Lower bound of the poll window, as unix seconds.

    force_days wins; otherwise resume from last_sync_at, or look back
    `lookback_days` for a never-synced account. The buffer re-covers
    activities uploaded late.
    """
    lookback_days = settings.STRAVA_SYNC_LOOKBACK_DAYS if lookback_days is None else lookback_days
    buffer_s = settings.STRAVA_SYNC_BUFFER_S if buffer_s is None else buffer_s

    if force_days:
        base = now - timedelta(days=force_days)
    elif last_sync_at is not None:
        base = as_utc(last_sync_at)
    else:
        base = now - timedelta(days=lookback_days)

    return max(0, int((base - timedelta(seconds=buffer_s)).timestamp()))


def ingest_activities(
    db: Session,
    entry: StravaConnectionEntry,
    raw_activities: Iterable[Any],
    summary: PollSummary,
    window_start: Optional[datetime] = None,
) -> PollSummary:
    """
    Ingest raw provider activities for one athlete and commit each one.

    Unparseable activities are counted under skipped_by_reason and skipped;
    they never fail the batch.
    """
    raw_activities = list(raw_activities)
    summary.fetched += len(raw_activities)
    allow_adjacent = settings.STRAVA_SYNC_ALLOW_ADJACENT_DAY_MATCH

    for raw in raw_activities:
        payload = parse_strava_activity(raw)
        if payload is None:
            summary.skip(SKIP_MISSING_REQUIRED_FIELDS)
            continue
        if window_start is not None and payload.start_date < window_start:
            summary.skip(SKIP_OUTSIDE_WINDOW)
            continue
        summary.in_window += 1

        normalized = normalize_strava_activity(payload)
        result = upsert_completed_activity(db, entry.athlete_id, normalized)
        if result.kind == INGEST_CREATED:
            summary.created += 1
        elif result.kind == INGEST_UPDATED:
            summary.updated += 1
        elif result.kind == INGEST_UNCHANGED:
            summary.skipped_existing += 1

        activity = result.activity
        local_date = activity_local_date(normalized.start_time, entry.timezone)
        local_minutes = activity_local_minutes(normalized.start_time, entry.timezone)

        item = db.get(CalendarItem, activity.calendar_item_id) if activity.calendar_item_id else None
        if item is not None:
            ensure_synced_status(db, item, activity.confirmed_at)
        else:
            item = match_and_link(db, activity, normalized.discipline, local_date, local_minutes, allow_adjacent)
            if item is not None:
                summary.matched += 1
            else:
                materialize_calendar_item(db, activity, normalized, entry.coach_id, local_date, local_minutes)
                summary.created_calendar_items += 1

        db.commit()

    return summary


def _mark_synced(db: Session, connection: StravaConnection, synced_at: datetime) -> None:
    connection.last_sync_at = synced_at
    db.commit()


def sync_strava_for_athlete(
    db: Session,
    entry: StravaConnectionEntry,
    force_days: Optional[int] = None,
    now: Optional[datetime] = None,
    summary: Optional[PollSummary] = None,
) -> PollSummary:
    """Poll one account's recent-activity window. Provider errors propagate."""
    now = now or utcnow()
    summary = summary or PollSummary()
    summary.polled_athletes += 1

    credentials = ensure_fresh_connection(db, entry.connection, now=now)
    after = compute_after_unix_seconds(now, entry.connection.last_sync_at, force_days)
    raw_activities = fetch_recent_activities(credentials.access_token, after, settings.STRAVA_SYNC_PAGE_SIZE)

    ingest_activities(
        db,
        entry,
        raw_activities,
        summary,
        window_start=datetime.fromtimestamp(after, tz=timezone.utc),
    )
    _mark_synced(db, entry.connection, now)
    return summary


def sync_strava_activity_by_id(
    db: Session,
    entry: StravaConnectionEntry,
    activity_id: str,
    now: Optional[datetime] = None,
) -> PollSummary:
    """
    Fetch and ingest a single activity. Provider errors propagate.

    A response missing the required fields is a fetch failure, so the intent
    is retried rather than completed with nothing ingested.
    """
    now = now or utcnow()
    summary = PollSummary(polled_athletes=1)

    credentials = ensure_fresh_connection(db, entry.connection, now=now)
    raw = fetch_activity_by_id(credentials.access_token, activity_id)
    if parse_strava_activity(raw) is None:
        raise StravaFetchError(f"Strava activity {activity_id} response was malformed.")
    ingest_activities(db, entry, [raw], summary)
    _mark_synced(db, entry.connection, now)
    return summary


def sync_strava_for_connections(
    db: Session,
    entries: List[StravaConnectionEntry],
    force_days: Optional[int] = None,
    raise_on_rate_limit: bool = False,
    now: Optional[datetime] = None,
) -> PollSummary:
    """
    Backfill several accounts in sequence.

    Per-account failures (token refresh, fetch, store) are recorded in
    summary.errors and the loop moves on. A rate limit is recorded, sets
    summary.rate_limited and stops the loop (or re-raises when asked to).
    Missing client configuration is fatal and always propagates.
    """
    now = now or utcnow()
    summary = PollSummary()

    for entry in entries:
        try:
            sync_strava_for_athlete(db, entry, force_days=force_days, now=now, summary=summary)
        except StravaConfigError:
            db.rollback()
            raise
        except StravaRateLimitError as e:
            db.rollback()
            summary.rate_limited = True
            summary.errors.append({"athlete_id": str(entry.athlete_id), "message": str(e)})
            logger.warning(f"Strava rate limit during backfill at athlete {entry.athlete_id}; stopping")
            if raise_on_rate_limit:
                raise
            break
        except Exception as e:
            db.rollback()
            summary.errors.append({"athlete_id": str(entry.athlete_id), "message": str(e) or "Strava sync failed."})
            logger.warning(f"Strava backfill failed for athlete {entry.athlete_id}: {e}")

    return summary
