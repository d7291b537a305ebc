"""
Celery tasks for Strava activity sync.

Beat triggers these on a schedule (celerybeat_schedule.py); the HTTP cron
endpoint is an equivalent trigger for external schedulers. Both end up in
services.strava_queue_runner.run_strava_sync.
"""
from datetime import timedelta
from typing import Dict, Optional
from uuid import UUID
import logging

from celery import Task
from celery.signals import worker_process_init, worker_process_shutdown
from sqlalchemy.orm import Session

from core.cache import TTLCache, build_athlete_profile_cache, create_redis_client
from core.config import settings
from core.database import get_db_sync
from services.strava_queue_runner import MODE_BACKFILL, MODE_INTENTS, run_strava_sync
from services.strava_service import StravaConfigError
from services.sync_intents import enqueue_stale_connection_intents
from services.sync_time import utcnow
from tasks import celery_app

logger = logging.getLogger(__name__)

# Built per worker process at boot, closed at shutdown.
_profile_cache: Optional[TTLCache] = None


@worker_process_init.connect
def _open_profile_cache(**kwargs):
    global _profile_cache
    _profile_cache = build_athlete_profile_cache(create_redis_client())


@worker_process_shutdown.connect
def _close_profile_cache(**kwargs):
    global _profile_cache
    if _profile_cache is not None:
        _profile_cache.close()
        _profile_cache = None


def _run(mode: str, athlete_id: Optional[str], force_days: Optional[int]) -> Dict:
    if not settings.STRAVA_AUTOSYNC_ENABLED:
        return {"status": "disabled"}

    db: Session = get_db_sync()
    try:
        summary = run_strava_sync(
            db,
            mode=mode,
            athlete_id=UUID(athlete_id) if athlete_id else None,
            force_days=force_days,
            profile_cache=_profile_cache,
        )
        return {"status": "success", **summary.to_dict()}
    except StravaConfigError as e:
        db.rollback()
        logger.error(f"Strava sync task aborted: {e}")
        return {"status": "error", "error": str(e)}
    except Exception as e:
        db.rollback()
        logger.exception(f"Strava sync task failed: {e}")
        raise
    finally:
        db.close()


@celery_app.task(name="tasks.drain_strava_sync_intents", bind=True)
def drain_strava_sync_intents_task(self: Task, athlete_id: Optional[str] = None, force_days: Optional[int] = None) -> Dict:
    """
    Drain due sync intents (intents mode).

    Args:
        athlete_id: optional UUID string to scope the run
        force_days: optional backfill lookback when nothing was drained

    Returns:
        Run summary dictionary
    """
    return _run(MODE_INTENTS, athlete_id, force_days)


@celery_app.task(name="tasks.strava_backfill_sweep", bind=True)
def strava_backfill_sweep_task(self: Task, force_days: int = 3, athlete_id: Optional[str] = None) -> Dict:
    """Bounded backfill for connections without open intents."""
    return _run(MODE_BACKFILL, athlete_id, force_days)


@celery_app.task(name="tasks.enqueue_strava_safety_sweep", bind=True)
def enqueue_strava_safety_sweep_task(self: Task) -> Dict:
    """Queue a poll intent for every connection that has not synced recently."""
    db: Session = get_db_sync()
    try:
        created = enqueue_stale_connection_intents(
            db,
            utcnow(),
            stale_after=timedelta(hours=settings.STRAVA_SYNC_STALE_AFTER_HOURS),
            limit=settings.STRAVA_SYNC_SWEEP_LIMIT,
        )
        return {"status": "success", "intents_created": created}
    except Exception as e:
        db.rollback()
        logger.exception(f"Strava safety sweep failed: {e}")
        raise
    finally:
        db.close()
