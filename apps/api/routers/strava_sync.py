"""
Strava Sync Cron Router

Trigger for external schedulers (and ops) to run one queue pass.
Authenticated by a shared secret in the X-Cron-Secret header. The
Authorization header is ignored.
"""

from typing import Optional
from uuid import UUID
import hmac
import logging

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.exceptions import BadRequestError, ServiceMisconfiguredError, UnauthorizedError
from services.strava_queue_runner import MODE_BACKFILL, MODE_INTENTS, run_strava_sync
from services.strava_service import StravaConfigError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/integrations/strava", tags=["strava-sync"])

# Returned to the scheduler when the database is unreachable mid-run.
DB_UNREACHABLE_RETRY_AFTER_S = 300


def require_cron_secret(x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret")) -> None:
    expected = settings.CRON_SECRET
    if not expected:
        raise ServiceMisconfiguredError("CRON_SECRET is not set.", error_code="CRON_SECRET_MISSING")

    if not x_cron_secret or not hmac.compare_digest(x_cron_secret.encode(), expected.encode()):
        raise UnauthorizedError("Invalid cron secret")


def parse_force_days(raw: Optional[str]) -> Optional[int]:
    """Integer lookback in days, clamped to 1..STRAVA_SYNC_MAX_FORCE_DAYS; None when absent."""
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise BadRequestError("force_days must be an integer.", error_code="INVALID_FORCE_DAYS")
    if value != value or value in (float("inf"), float("-inf")) or not value.is_integer():
        raise BadRequestError("force_days must be an integer.", error_code="INVALID_FORCE_DAYS")
    return max(1, min(settings.STRAVA_SYNC_MAX_FORCE_DAYS, int(value)))


def parse_athlete_id(raw: Optional[str]) -> Optional[UUID]:
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        raise BadRequestError("athlete_id must be a UUID.", error_code="INVALID_ATHLETE_ID")


def parse_mode(raw: Optional[str]) -> str:
    return MODE_BACKFILL if raw == MODE_BACKFILL else MODE_INTENTS


@router.api_route("/cron", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def run_cron(
    request: Request,
    athlete_id: Optional[str] = Query(None),
    force_days: Optional[str] = Query(None),
    mode: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """
    Run one Strava sync pass.

    Responds 200 with the run tallies even when individual intents failed;
    failures are recorded on the intents themselves.
    """
    if not settings.STRAVA_AUTOSYNC_ENABLED:
        return {"ok": True, "disabled": True}

    parsed_athlete_id = parse_athlete_id(athlete_id)
    parsed_force_days = parse_force_days(force_days)
    parsed_mode = parse_mode(mode)

    try:
        summary = run_strava_sync(
            db,
            mode=parsed_mode,
            athlete_id=parsed_athlete_id,
            force_days=parsed_force_days,
            profile_cache=getattr(request.app.state, "profile_cache", None),
        )
    except StravaConfigError as e:
        logger.error(f"Strava cron aborted: {e}")
        raise ServiceMisconfiguredError(str(e), error_code="STRAVA_CONFIG_MISSING")
    except OperationalError as e:
        logger.error(f"Strava cron skipped, database unreachable: {e}")
        return JSONResponse(
            status_code=200,
            content={
                "ok": True,
                "status": "skipped",
                "reason": "db_unreachable",
                "retry_after_seconds": DB_UNREACHABLE_RETRY_AFTER_S,
            },
            headers={"Retry-After": str(DB_UNREACHABLE_RETRY_AFTER_S)},
        )

    return {"ok": True, **summary.to_dict()}
