"""
Strava provider client: OAuth token management and activity fetches.

Two concerns live here because they share the same transport and error
taxonomy:

- Token manager: `ensure_fresh_connection` hands back credentials valid for
  immediate use, rotating them through the token endpoint when the stored
  expiry falls inside a 60 s safety buffer.
- Activity fetcher: `fetch_recent_activities` / `fetch_activity_by_id`.

Every provider failure is surfaced as one of the typed errors below so the
queue runner can tell a batch-wide rate limit apart from a per-account
failure. Nothing in this module sleeps on a 429; deferral is the caller's job.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import settings
from models import StravaConnection
from services.sync_time import as_utc, utcnow
from services.token_encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

# Refresh when the stored expiry is this close to "now".
TOKEN_REFRESH_BUFFER_S = 60
# Used when a 429 carries no Retry-After header (Strava windows are 15 minutes).
DEFAULT_RATE_LIMIT_RETRY_AFTER_S = 15 * 60


class StravaConfigError(RuntimeError):
    """STRAVA_CLIENT_ID / STRAVA_CLIENT_SECRET missing. Fatal for the whole run."""


class StravaTokenRefreshError(RuntimeError):
    """Refresh token rejected, or the refresh response was unusable. Per-account."""


class StravaFetchError(RuntimeError):
    """Non-2xx, network failure or malformed body from an activity endpoint."""


class StravaRateLimitError(RuntimeError):
    """Provider rate limit hit. Aborts the rest of the current batch."""

    def __init__(self, message: str, *, retry_after_s: int = DEFAULT_RATE_LIMIT_RETRY_AFTER_S):
        super().__init__(message)
        self.retry_after_s = int(retry_after_s)


@dataclass(frozen=True)
class StravaCredentials:
    """Decrypted credentials, valid for at least TOKEN_REFRESH_BUFFER_S."""
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: Optional[str]


def _payload_message(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    return " ".join(
        [
            str(payload.get("message") or ""),
            str(payload.get("error") or ""),
            str(payload.get("errors") or ""),
        ]
    ).strip()


def _looks_like_rate_limit(payload: Any) -> bool:
    # Strava: {"message": "Rate Limit Exceeded", "errors": [{"field": "rate limit", "code": "exceeded"}]}
    msg = _payload_message(payload).lower()
    return "rate limit" in msg


def _retry_after_seconds(response) -> int:
    raw = None
    try:
        raw = response.headers.get("Retry-After")
    except AttributeError:
        raw = None
    if raw is None:
        return DEFAULT_RATE_LIMIT_RETRY_AFTER_S
    try:
        return max(1, int(float(raw)))
    except (TypeError, ValueError):
        return DEFAULT_RATE_LIMIT_RETRY_AFTER_S


def _safe_json(response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _require_client_config() -> tuple[str, str]:
    client_id = settings.STRAVA_CLIENT_ID
    client_secret = settings.STRAVA_CLIENT_SECRET
    if not client_id or not client_secret:
        raise StravaConfigError("STRAVA_CLIENT_ID/STRAVA_CLIENT_SECRET are not set.")
    return client_id, client_secret


# ---------------------------------------------------------------------------
# Token manager
# ---------------------------------------------------------------------------

def refresh_access_token(refresh_token: str) -> Dict:
    """
    Exchange a refresh token for a new access token from Strava.

    Form-encoded POST to the OAuth token endpoint. Returns the provider
    payload, guaranteed to carry access_token, refresh_token and expires_at.

    Raises:
        StravaConfigError: client id/secret not configured
        StravaRateLimitError: token endpoint answered 429
        StravaTokenRefreshError: rejected refresh or missing fields
    """
    client_id, client_secret = _require_client_config()

    data = {
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }

    try:
        r = requests.post(
            settings.STRAVA_OAUTH_TOKEN_URL,
            data=data,
            timeout=settings.EXTERNAL_API_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        raise StravaTokenRefreshError(f"Strava token refresh request failed: {e}") from e

    payload = _safe_json(r)

    if r.status_code == 429:
        raise StravaRateLimitError(
            "Strava rate limit hit during token refresh.",
            retry_after_s=_retry_after_seconds(r),
        )

    if r.status_code >= 400:
        message = _payload_message(payload) or "Failed to refresh Strava token."
        raise StravaTokenRefreshError(message)

    if not isinstance(payload, dict):
        raise StravaTokenRefreshError("Strava token refresh response was not a JSON object.")

    missing = [k for k in ("access_token", "refresh_token", "expires_at") if not payload.get(k)]
    if missing:
        raise StravaTokenRefreshError(
            f"Strava token refresh response missing required fields: {', '.join(missing)}"
        )

    return payload


def ensure_fresh_connection(db: Session, connection: StravaConnection, now: Optional[datetime] = None) -> StravaCredentials:
    """
    Return credentials valid for immediate use, refreshing if needed.

    On refresh the new access/refresh pair, expiry and scope are written in a
    single UPDATE and committed; if anything before that fails, the stored
    row is untouched.
    """
    now = now or utcnow()
    expires_at = as_utc(connection.expires_at)
    access_token = decrypt_token(connection.access_token)

    if access_token and expires_at is not None and expires_at > now + timedelta(seconds=TOKEN_REFRESH_BUFFER_S):
        refresh_token = decrypt_token(connection.refresh_token) or ""
        return StravaCredentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=connection.scope,
        )

    raw_refresh = decrypt_token(connection.refresh_token)
    if not raw_refresh:
        raise StravaTokenRefreshError("Stored Strava refresh token could not be decrypted.")

    token_data = refresh_access_token(raw_refresh)

    new_expires_at = datetime.fromtimestamp(int(token_data["expires_at"]), tz=timezone.utc)
    new_scope = token_data.get("scope") or connection.scope

    db.execute(
        update(StravaConnection)
        .where(StravaConnection.id == connection.id)
        .values(
            access_token=encrypt_token(token_data["access_token"]),
            refresh_token=encrypt_token(token_data["refresh_token"]),
            expires_at=new_expires_at,
            scope=new_scope,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(connection)

    logger.info(f"Strava token refreshed for athlete {connection.athlete_id}")

    return StravaCredentials(
        access_token=token_data["access_token"],
        refresh_token=token_data["refresh_token"],
        expires_at=new_expires_at,
        scope=new_scope,
    )


# ---------------------------------------------------------------------------
# Activity fetcher
# ---------------------------------------------------------------------------

def _get(url: str, access_token: str, params: Optional[Dict] = None, what: str = "activities"):
    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        r = requests.get(url, headers=headers, params=params, timeout=settings.EXTERNAL_API_TIMEOUT)
    except requests.exceptions.RequestException as e:
        raise StravaFetchError(f"Failed to fetch Strava {what}: {e}") from e

    payload = _safe_json(r)

    if r.status_code == 429 or (r.status_code == 403 and _looks_like_rate_limit(payload)):
        raise StravaRateLimitError(
            "Strava rate limit hit. Try again later.",
            retry_after_s=_retry_after_seconds(r),
        )

    if r.status_code >= 400:
        detail = _payload_message(payload)
        raise StravaFetchError(
            f"Failed to fetch Strava {what} (HTTP {r.status_code})" + (f": {detail}" if detail else ".")
        )

    return payload


def fetch_recent_activities(access_token: str, after_unix_seconds: int, per_page: Optional[int] = None) -> List[Dict]:
    """
    List activities started after `after_unix_seconds` (one page).

    A body that is not a JSON array is a fetch failure, never "no activities".
    """
    params = {
        "after": max(0, int(after_unix_seconds)),
        "per_page": int(per_page or settings.STRAVA_SYNC_PAGE_SIZE),
    }
    payload = _get(f"{settings.STRAVA_API_BASE}/athlete/activities", access_token, params=params)

    if not isinstance(payload, list):
        raise StravaFetchError("Strava activities response was not an array.")

    logger.debug(f"Strava list returned {len(payload)} activities (after={params['after']})")
    return payload


def fetch_activity_by_id(access_token: str, activity_id: str) -> Dict:
    """Fetch a single activity; a non-object body is a fetch failure."""
    payload = _get(
        f"{settings.STRAVA_API_BASE}/activities/{requests.utils.quote(str(activity_id), safe='')}",
        access_token,
        what=f"activity {activity_id}",
    )

    if not isinstance(payload, dict):
        raise StravaFetchError(f"Strava activity {activity_id} response was not an object.")

    return payload
