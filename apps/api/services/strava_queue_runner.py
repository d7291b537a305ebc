"""
Strava Sync Queue Runner

One bounded pass over the intent queue, triggered by the cron endpoint or
the Celery beat task. Runs may overlap; every claim goes through the store.

Steps:
1. Recover PROCESSING intents whose lease expired.
2. (intents mode) Claim up to N eligible intents one at a time and process
   each: single activity when the intent names one, else an account poll.
   Success -> DONE. Rate limit -> defer and stop the batch. Anything else ->
   failed attempt (backoff, FAILED at the ceiling).
3. Optional bounded backfill for connections without open intents, when a
   lookback was requested and either mode=backfill or nothing was drained.
4. Count what is still pending and return a CronRunSummary.

StravaConfigError never costs an intent an attempt: it means the process
is misconfigured, so the claim is handed back and the error propagates to
the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from core.cache import TTLCache
from core.config import settings
from models import StravaSyncIntent
from services.strava_service import StravaConfigError, StravaRateLimitError
from services.strava_sync import (
    PollSummary,
    load_backfill_entries,
    load_connection_entry,
    sync_strava_activity_by_id,
    sync_strava_for_athlete,
    sync_strava_for_connections,
)
from services.sync_intents import (
    claim_intent,
    count_pending_intents,
    defer_intent,
    mark_intent_done,
    mark_intent_failed_attempt,
    recover_expired_leases,
    release_intent,
    select_eligible_intents,
)
from services.sync_time import utcnow

logger = logging.getLogger(__name__)

MODE_INTENTS = "intents"
MODE_BACKFILL = "backfill"
RUN_MODES = (MODE_INTENTS, MODE_BACKFILL)


class StravaConnectionMissingError(RuntimeError):
    """Intent references an athlete with no Strava connection."""


@dataclass
class CronRunSummary:
    mode: str = MODE_INTENTS
    force_days: Optional[int] = None
    athlete_id: Optional[str] = None
    lease_recovered: int = 0
    drained: int = 0
    done: int = 0
    failed: int = 0
    pending_remaining: int = 0
    created_calendar_items: int = 0
    matched: int = 0
    skipped_duplicates: int = 0
    athletes_considered: int = 0
    connections_found: int = 0
    fetched: int = 0
    in_window: int = 0
    upserted: int = 0
    skipped_by_reason: Dict[str, int] = field(default_factory=dict)
    rate_limited: bool = False

    def absorb(self, poll: PollSummary) -> None:
        self.created_calendar_items += poll.created_calendar_items
        self.matched += poll.matched
        self.skipped_duplicates += poll.skipped_existing
        self.fetched += poll.fetched
        self.in_window += poll.in_window
        self.upserted += poll.created + poll.updated
        for reason, count in poll.skipped_by_reason.items():
            self.skipped_by_reason[reason] = self.skipped_by_reason.get(reason, 0) + count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "force_days": self.force_days,
            "athlete_id": self.athlete_id,
            "lease_recovered": self.lease_recovered,
            "drained": self.drained,
            "done": self.done,
            "failed": self.failed,
            "pending_remaining": self.pending_remaining,
            "created_calendar_items": self.created_calendar_items,
            "matched": self.matched,
            "skipped_duplicates": self.skipped_duplicates,
            "athletes_considered": self.athletes_considered,
            "connections_found": self.connections_found,
            "fetched": self.fetched,
            "in_window": self.in_window,
            "upserted": self.upserted,
            "skipped_by_reason": dict(self.skipped_by_reason),
            "rate_limited": self.rate_limited,
        }


def _process_intent(db: Session, intent: StravaSyncIntent, now: datetime, profile_cache: Optional[TTLCache]) -> PollSummary:
    entry = load_connection_entry(db, intent.athlete_id, profile_cache)
    if entry is None:
        raise StravaConnectionMissingError(f"No Strava connection for athlete {intent.athlete_id}.")

    if intent.strava_activity_id:
        return sync_strava_activity_by_id(db, entry, intent.strava_activity_id, now=now)
    return sync_strava_for_athlete(db, entry, now=now)


def _drain_intents(
    db: Session,
    summary: CronRunSummary,
    now: datetime,
    athlete_id: Optional[UUID],
    profile_cache: Optional[TTLCache],
) -> None:
    intents = select_eligible_intents(db, now, settings.STRAVA_SYNC_MAX_INTENTS_PER_RUN, athlete_id)

    for intent in intents:
        intent_id = intent.id
        if not claim_intent(db, intent_id, now):
            continue
        summary.drained += 1

        try:
            poll = _process_intent(db, intent, now, profile_cache)
        except StravaConfigError as e:
            db.rollback()
            release_intent(db, intent_id, now, str(e))
            logger.error("Strava client credentials are not configured; aborting sync run")
            raise
        except StravaRateLimitError as e:
            db.rollback()
            defer_intent(db, intent_id, now, e.retry_after_s)
            summary.rate_limited = True
            logger.warning(f"Strava rate limit hit on intent {intent_id}; deferring and stopping batch")
            break
        except Exception as e:
            db.rollback()
            status = mark_intent_failed_attempt(db, intent_id, now, str(e) or "Strava sync failed.")
            summary.failed += 1
            logger.warning(f"Strava sync intent {intent_id} failed ({status}): {e}")
            continue

        summary.absorb(poll)
        mark_intent_done(db, intent_id, now)
        summary.done += 1


def run_strava_sync(
    db: Session,
    mode: str = MODE_INTENTS,
    athlete_id: Optional[UUID] = None,
    force_days: Optional[int] = None,
    now: Optional[datetime] = None,
    profile_cache: Optional[TTLCache] = None,
) -> CronRunSummary:
    """
    Run one queue pass and return its tallies.

    Args:
        mode: "intents" (drain the queue) or "backfill" (skip straight to backfill)
        athlete_id: restrict every step to one athlete
        force_days: lookback for the backfill pass, clamped to STRAVA_SYNC_MAX_FORCE_DAYS
        now: injected clock (tests)
        profile_cache: athlete profile cache built at process start

    Raises:
        StravaConfigError: client credentials missing
    """
    now = now or utcnow()
    mode = mode if mode in RUN_MODES else MODE_INTENTS
    if force_days is not None:
        force_days = max(1, min(settings.STRAVA_SYNC_MAX_FORCE_DAYS, int(force_days)))

    summary = CronRunSummary(
        mode=mode,
        force_days=force_days,
        athlete_id=str(athlete_id) if athlete_id else None,
    )

    summary.lease_recovered = recover_expired_leases(db, now, athlete_id=athlete_id)

    if mode == MODE_INTENTS:
        _drain_intents(db, summary, now, athlete_id, profile_cache)

    if not summary.rate_limited and force_days is not None and (mode == MODE_BACKFILL or summary.drained == 0):
        entries = load_backfill_entries(
            db,
            settings.STRAVA_SYNC_MAX_ATHLETES_PER_BACKFILL,
            athlete_id=athlete_id,
            profile_cache=profile_cache,
        )
        summary.athletes_considered += len(entries)
        summary.connections_found += len(entries)

        if entries:
            poll = sync_strava_for_connections(db, entries, force_days=force_days, now=now)
            summary.absorb(poll)
            if poll.rate_limited:
                summary.rate_limited = True

    summary.pending_remaining = count_pending_intents(db, now, athlete_id=athlete_id)

    logger.info(
        "Strava sync run summary",
        extra={"extra_fields": summary.to_dict()},
    )
    return summary
