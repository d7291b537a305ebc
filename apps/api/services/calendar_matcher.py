"""
Calendar Matching Service

Links an ingested activity to the planned calendar entry it most likely
fulfils, or materialises an unplanned entry when nothing fits.

ARCHITECTURE:
- Candidates: same athlete + discipline, status PLANNED/MODIFIED, not yet
  linked, dated on the activity's local day (and +/- 1 day when adjacent-day
  matching is enabled)
- Ranking: same day first, then smallest |planned - actual| start minutes,
  then timed before untimed, then earliest planned time
- Linking is a conditional UPDATE on the item's pending status, so two
  matchers racing for the same entry cannot both win
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy import and_, case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    CALENDAR_PENDING_STATUSES,
    CALENDAR_STATUS_MODIFIED,
    CALENDAR_STATUS_PLANNED,
    CALENDAR_STATUS_SYNCED,
    CALENDAR_STATUS_SYNCED_DRAFT,
    CalendarItem,
    CompletedActivity,
    STRAVA_SOURCE,
)
from services.activity_ingest import NormalizedActivity
from services.sync_time import minutes_to_time_string, parse_time_to_minutes

logger = logging.getLogger(__name__)

# Upper bound on candidates read per match; a 3-day window never has more.
MAX_CANDIDATES = 25
DEFAULT_ACTIVITY_TITLE = "Recorded activity"
PLANNING_STATUS_UNPLANNED = "UNPLANNED"


@dataclass(frozen=True)
class MatchCandidate:
    item: CalendarItem
    day_diff: int
    planned_minutes: Optional[int]
    time_diff: Optional[int]

    def sort_key(self):
        timed = self.time_diff is not None
        return (
            self.day_diff,
            0 if timed else 1,
            self.time_diff if timed else 0,
            self.planned_minutes if self.planned_minutes is not None else float("inf"),
        )


def synced_status_for(confirmed_at: Optional[datetime]) -> str:
    return CALENDAR_STATUS_SYNCED if confirmed_at else CALENDAR_STATUS_SYNCED_DRAFT


def rank_calendar_candidates(
    db: Session,
    athlete_id: UUID,
    discipline: str,
    local_date: date,
    local_minutes: int,
    allow_adjacent_day: bool = True,
) -> List[MatchCandidate]:
    """
    Return pending, unlinked calendar items ordered best match first.

    Args:
        local_date: activity start projected to the athlete's calendar day
        local_minutes: activity start, minutes since local midnight
        allow_adjacent_day: also consider entries dated the day before/after
    """
    spread = 1 if allow_adjacent_day else 0
    linked_ids = select(CompletedActivity.calendar_item_id).where(
        CompletedActivity.calendar_item_id.is_not(None)
    )

    items = (
        db.query(CalendarItem)
        .filter(
            CalendarItem.athlete_id == athlete_id,
            CalendarItem.discipline == discipline,
            CalendarItem.date >= local_date - timedelta(days=spread),
            CalendarItem.date <= local_date + timedelta(days=spread),
            CalendarItem.status.in_(CALENDAR_PENDING_STATUSES),
            CalendarItem.id.not_in(linked_ids),
        )
        # Same-day entries go first so the limit never crowds them out.
        .order_by(
            case((CalendarItem.date == local_date, 0), else_=1),
            CalendarItem.date.asc(),
            CalendarItem.planned_start_time_local.asc(),
        )
        .limit(MAX_CANDIDATES)
        .all()
    )

    candidates = []
    for item in items:
        planned = parse_time_to_minutes(item.planned_start_time_local)
        candidates.append(
            MatchCandidate(
                item=item,
                day_diff=abs((item.date - local_date).days),
                planned_minutes=planned,
                time_diff=abs(planned - local_minutes) if planned is not None else None,
            )
        )

    candidates.sort(key=MatchCandidate.sort_key)
    return candidates


def find_best_calendar_match(
    db: Session,
    athlete_id: UUID,
    discipline: str,
    local_date: date,
    local_minutes: int,
    allow_adjacent_day: bool = True,
) -> Optional[MatchCandidate]:
    ranked = rank_calendar_candidates(db, athlete_id, discipline, local_date, local_minutes, allow_adjacent_day)
    return ranked[0] if ranked else None


def match_and_link(
    db: Session,
    activity: CompletedActivity,
    discipline: str,
    local_date: date,
    local_minutes: int,
    allow_adjacent_day: bool = True,
) -> Optional[CalendarItem]:
    """
    Link `activity` to its best pending calendar item.

    The item's status change and the activity's calendar_item_id are written
    in the caller's transaction. If another run already claimed a candidate
    (its status is no longer pending), the next candidate is tried.

    Returns:
        The linked CalendarItem, or None when nothing matched
    """
    next_status = synced_status_for(activity.confirmed_at)

    for candidate in rank_calendar_candidates(db, activity.athlete_id, discipline, local_date, local_minutes, allow_adjacent_day):
        result = db.execute(
            update(CalendarItem)
            .where(
                and_(
                    CalendarItem.id == candidate.item.id,
                    CalendarItem.status.in_(CALENDAR_PENDING_STATUSES),
                )
            )
            .values(status=next_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug(f"Calendar item {candidate.item.id} no longer pending, trying next candidate")
            continue

        activity.calendar_item_id = candidate.item.id
        activity.match_day_diff = candidate.day_diff
        db.flush()
        db.refresh(candidate.item)
        return candidate.item

    return None


def ensure_synced_status(db: Session, item: CalendarItem, confirmed_at: Optional[datetime]) -> bool:
    """
    Keep an already-linked item's status consistent with its activity.

    Unconfirmed activity: PLANNED / MODIFIED / COMPLETED_SYNCED -> COMPLETED_SYNCED_DRAFT.
    Confirmed activity: COMPLETED_SYNCED_DRAFT -> COMPLETED_SYNCED.
    Anything else (manual completion, skipped) is left alone.

    Returns True if the status changed.
    """
    if not confirmed_at:
        if item.status in (CALENDAR_STATUS_PLANNED, CALENDAR_STATUS_MODIFIED, CALENDAR_STATUS_SYNCED):
            item.status = CALENDAR_STATUS_SYNCED_DRAFT
            db.flush()
            return True
        return False

    if item.status == CALENDAR_STATUS_SYNCED_DRAFT:
        item.status = CALENDAR_STATUS_SYNCED
        db.flush()
        return True
    return False


def _apply_materialized_fields(item: CalendarItem, coach_id, normalized: NormalizedActivity, local_date: date, local_minutes: int, status: str) -> None:
    item.coach_id = coach_id
    item.date = local_date
    item.planned_start_time_local = minutes_to_time_string(local_minutes)
    item.planning_status = PLANNING_STATUS_UNPLANNED
    item.discipline = normalized.discipline
    item.subtype = normalized.sport
    item.title = (normalized.name or "").strip() or DEFAULT_ACTIVITY_TITLE
    item.planned_duration_minutes = normalized.duration_minutes
    item.planned_distance_km = normalized.distance_km
    item.distance_meters = normalized.distance_meters
    item.status = status


def _find_materialized_item(db: Session, athlete_id: UUID, external_activity_id: str) -> Optional[CalendarItem]:
    return (
        db.query(CalendarItem)
        .filter(
            CalendarItem.athlete_id == athlete_id,
            CalendarItem.origin == STRAVA_SOURCE,
            CalendarItem.source_activity_id == external_activity_id,
        )
        .first()
    )


def materialize_calendar_item(
    db: Session,
    activity: CompletedActivity,
    normalized: NormalizedActivity,
    coach_id: Optional[UUID],
    local_date: date,
    local_minutes: int,
) -> CalendarItem:
    """
    Upsert an UNPLANNED calendar item for an activity nothing was planned for.

    Keyed on (athlete_id, 'STRAVA', external activity id): repeated runs
    update the same row instead of creating another.
    """
    status = synced_status_for(activity.confirmed_at)
    item = _find_materialized_item(db, activity.athlete_id, normalized.external_activity_id)

    if item is None:
        try:
            with db.begin_nested():
                item = CalendarItem(
                    athlete_id=activity.athlete_id,
                    origin=STRAVA_SOURCE,
                    source_activity_id=normalized.external_activity_id,
                )
                _apply_materialized_fields(item, coach_id, normalized, local_date, local_minutes, status)
                db.add(item)
        except IntegrityError:
            # Another run created it between our read and insert.
            item = _find_materialized_item(db, activity.athlete_id, normalized.external_activity_id)
            if item is None:
                raise
            _apply_materialized_fields(item, coach_id, normalized, local_date, local_minutes, status)
    else:
        _apply_materialized_fields(item, coach_id, normalized, local_date, local_minutes, status)

    activity.calendar_item_id = item.id
    activity.match_day_diff = None
    db.flush()
    return item
