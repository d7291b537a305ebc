"""
Strava Sync Intent Queue

Durable work queue backed by the strava_sync_intent table.

Lifecycle:
    PENDING --claim--> PROCESSING --done--> DONE
                           |--failure--> PENDING (backoff) | FAILED (ceiling)
                           |--rate limit--> PENDING (deferred, never FAILED)
                           '--lease expired--> PENDING (recovered)

Every transition is a conditional UPDATE keyed on (id, expected status) and
is committed immediately, so overlapping runner invocations (cron + Celery,
two cron hits) never process the same intent twice. The database is the
only coordination point.
"""

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.orm import Session

from core.config import settings
from models import (
    INTENT_STATUS_DONE,
    INTENT_STATUS_FAILED,
    INTENT_STATUS_PENDING,
    INTENT_STATUS_PROCESSING,
    StravaConnection,
    StravaSyncIntent,
)
from services.sync_backoff import compute_backoff_seconds, is_terminal

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

SOURCE_WEBHOOK = "webhook"
SOURCE_SWEEP = "sweep"
SOURCE_MANUAL = "manual"

OPEN_INTENT_STATUSES = (INTENT_STATUS_PENDING, INTENT_STATUS_PROCESSING)


def _eligible(now: datetime):
    return or_(StravaSyncIntent.next_attempt_at.is_(None), StravaSyncIntent.next_attempt_at <= now)


def _truncate_error(message: Optional[str]) -> str:
    return (message or "Strava sync failed.")[:MAX_ERROR_LENGTH]


def _current_attempts(db: Session, intent_id: UUID) -> int:
    attempts = db.execute(
        select(StravaSyncIntent.attempts).where(StravaSyncIntent.id == intent_id)
    ).scalar_one_or_none()
    return attempts or 0


def enqueue_sync_intent(
    db: Session,
    athlete_id: UUID,
    strava_activity_id: Optional[str] = None,
    source: str = SOURCE_MANUAL,
) -> StravaSyncIntent:
    """
    Create a PENDING intent, or return the PENDING one already queued for the
    same (athlete, activity) pair. A null activity id means "poll the account".
    """
    activity_filter = (
        StravaSyncIntent.strava_activity_id.is_(None)
        if strava_activity_id is None
        else StravaSyncIntent.strava_activity_id == str(strava_activity_id)
    )
    existing = (
        db.query(StravaSyncIntent)
        .filter(
            StravaSyncIntent.athlete_id == athlete_id,
            StravaSyncIntent.status == INTENT_STATUS_PENDING,
            activity_filter,
        )
        .order_by(StravaSyncIntent.created_at.asc())
        .first()
    )
    if existing is not None:
        logger.debug(f"Coalesced sync intent for athlete {athlete_id} (activity={strava_activity_id})")
        return existing

    intent = StravaSyncIntent(
        athlete_id=athlete_id,
        strava_activity_id=str(strava_activity_id) if strava_activity_id is not None else None,
        source=source,
        status=INTENT_STATUS_PENDING,
        attempts=0,
    )
    db.add(intent)
    db.commit()
    return intent


def enqueue_stale_connection_intents(
    db: Session,
    now: datetime,
    stale_after: Optional[timedelta] = None,
    limit: Optional[int] = None,
) -> int:
    """
    Safety sweep: queue one poll intent per connection that has not synced
    within `stale_after` (or never synced) and has no open intent.

    Returns the number of intents created.
    """
    stale_after = stale_after or timedelta(hours=settings.STRAVA_SYNC_STALE_AFTER_HOURS)
    limit = limit or settings.STRAVA_SYNC_SWEEP_LIMIT
    cutoff = now - stale_after

    has_open_intent = exists().where(
        and_(
            StravaSyncIntent.athlete_id == StravaConnection.athlete_id,
            StravaSyncIntent.status.in_(OPEN_INTENT_STATUSES),
        )
    )
    athlete_ids = (
        db.execute(
            select(StravaConnection.athlete_id)
            .where(
                or_(StravaConnection.last_sync_at.is_(None), StravaConnection.last_sync_at < cutoff),
                ~has_open_intent,
            )
            .order_by(StravaConnection.last_sync_at.asc().nulls_first())
            .limit(limit)
        )
        .scalars()
        .all()
    )

    for athlete_id in athlete_ids:
        db.add(StravaSyncIntent(athlete_id=athlete_id, source=SOURCE_SWEEP, status=INTENT_STATUS_PENDING, attempts=0))
    db.commit()

    if athlete_ids:
        logger.info(f"Safety sweep queued {len(athlete_ids)} Strava poll intents")
    return len(athlete_ids)


def recover_expired_leases(
    db: Session,
    now: datetime,
    athlete_id: Optional[UUID] = None,
    lease_timeout_s: Optional[int] = None,
) -> int:
    """
    Return PROCESSING intents whose lease expired to PENDING.

    Rows without a lease (written before leases existed) fall back to
    updated_at older than the lease timeout.
    """
    lease_timeout_s = lease_timeout_s or settings.STRAVA_SYNC_LEASE_TIMEOUT_S
    legacy_cutoff = now - timedelta(seconds=lease_timeout_s)

    conditions = [
        StravaSyncIntent.status == INTENT_STATUS_PROCESSING,
        or_(
            StravaSyncIntent.lease_expires_at < now,
            and_(StravaSyncIntent.lease_expires_at.is_(None), StravaSyncIntent.updated_at < legacy_cutoff),
        ),
    ]
    if athlete_id is not None:
        conditions.append(StravaSyncIntent.athlete_id == athlete_id)

    result = db.execute(
        update(StravaSyncIntent)
        .where(and_(*conditions))
        .values(status=INTENT_STATUS_PENDING, lease_expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    recovered = result.rowcount or 0
    if recovered:
        logger.warning(f"Recovered {recovered} Strava sync intents with expired leases")
    return recovered


def select_eligible_intents(
    db: Session,
    now: datetime,
    limit: Optional[int] = None,
    athlete_id: Optional[UUID] = None,
) -> List[StravaSyncIntent]:
    """PENDING intents due now, oldest first."""
    query = db.query(StravaSyncIntent).filter(
        StravaSyncIntent.status == INTENT_STATUS_PENDING,
        _eligible(now),
    )
    if athlete_id is not None:
        query = query.filter(StravaSyncIntent.athlete_id == athlete_id)
    return (
        query.order_by(StravaSyncIntent.created_at.asc(), StravaSyncIntent.id.asc())
        .limit(limit or settings.STRAVA_SYNC_MAX_INTENTS_PER_RUN)
        .all()
    )


def claim_intent(
    db: Session,
    intent_id: UUID,
    now: datetime,
    lease_timeout_s: Optional[int] = None,
) -> bool:
    """
    PENDING -> PROCESSING, attempts + 1, lease set.

    True only when this call's UPDATE matched exactly one row; a concurrent
    claimer that got there first leaves us with rowcount 0.
    """
    lease_timeout_s = lease_timeout_s or settings.STRAVA_SYNC_LEASE_TIMEOUT_S
    result = db.execute(
        update(StravaSyncIntent)
        .where(
            and_(
                StravaSyncIntent.id == intent_id,
                StravaSyncIntent.status == INTENT_STATUS_PENDING,
                _eligible(now),
            )
        )
        .values(
            status=INTENT_STATUS_PROCESSING,
            attempts=StravaSyncIntent.attempts + 1,
            lease_expires_at=now + timedelta(seconds=lease_timeout_s),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def mark_intent_done(db: Session, intent_id: UUID, now: datetime) -> None:
    db.execute(
        update(StravaSyncIntent)
        .where(StravaSyncIntent.id == intent_id)
        .values(
            status=INTENT_STATUS_DONE,
            attempts=0,
            last_error=None,
            next_attempt_at=None,
            lease_expires_at=None,
            processed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_intent_failed_attempt(db: Session, intent_id: UUID, now: datetime, message: Optional[str]) -> str:
    """
    Record a failed attempt: reschedule with backoff, or FAILED at the ceiling.

    Returns the resulting status.
    """
    attempts = _current_attempts(db, intent_id)
    terminal = is_terminal(attempts)
    status = INTENT_STATUS_FAILED if terminal else INTENT_STATUS_PENDING

    db.execute(
        update(StravaSyncIntent)
        .where(StravaSyncIntent.id == intent_id)
        .values(
            status=status,
            last_error=_truncate_error(message),
            next_attempt_at=None if terminal else now + timedelta(seconds=compute_backoff_seconds(attempts)),
            processed_at=now if terminal else None,
            lease_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if terminal:
        logger.error(f"Strava sync intent {intent_id} failed permanently after {attempts} attempts: {message}")
    return status


def defer_intent(db: Session, intent_id: UUID, now: datetime, retry_after_s: int = 0) -> datetime:
    """
    Rate-limit path: back to PENDING, never FAILED.

    The attempt that hit the limit is handed back so provider throttling
    cannot exhaust the retry budget. The delay is the larger of the computed
    backoff and the provider's Retry-After, so it is always nonzero.
    """
    attempts = _current_attempts(db, intent_id)
    delay_s = max(compute_backoff_seconds(attempts), int(retry_after_s or 0))
    retry_at = now + timedelta(seconds=delay_s)

    db.execute(
        update(StravaSyncIntent)
        .where(StravaSyncIntent.id == intent_id)
        .values(
            status=INTENT_STATUS_PENDING,
            attempts=max(0, attempts - 1),
            last_error=_truncate_error("Strava rate limit hit; deferred."),
            next_attempt_at=retry_at,
            processed_at=None,
            lease_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return retry_at


def release_intent(db: Session, intent_id: UUID, now: datetime, message: Optional[str] = None) -> None:
    """
    Hand a claim back untouched: PROCESSING -> PENDING, due immediately.

    Used when the run aborts for a reason that is not the intent's fault
    (missing client configuration). The claimed attempt is returned.
    """
    attempts = _current_attempts(db, intent_id)
    db.execute(
        update(StravaSyncIntent)
        .where(
            and_(
                StravaSyncIntent.id == intent_id,
                StravaSyncIntent.status == INTENT_STATUS_PROCESSING,
            )
        )
        .values(
            status=INTENT_STATUS_PENDING,
            attempts=max(0, attempts - 1),
            last_error=_truncate_error(message) if message else None,
            next_attempt_at=None,
            lease_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def count_pending_intents(db: Session, now: datetime, athlete_id: Optional[UUID] = None) -> int:
    """PENDING intents that are due now (what the next run would pick up)."""
    query = db.query(func.count(StravaSyncIntent.id)).filter(
        StravaSyncIntent.status == INTENT_STATUS_PENDING,
        _eligible(now),
    )
    if athlete_id is not None:
        query = query.filter(StravaSyncIntent.athlete_id == athlete_id)
    return query.scalar() or 0
