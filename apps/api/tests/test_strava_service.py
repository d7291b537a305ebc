"""
Tests for the Strava token manager and activity fetcher.

HTTP is mocked at services.strava_service.requests.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.config import settings
from services.strava_service import (
    StravaConfigError,
    StravaFetchError,
    StravaRateLimitError,
    StravaTokenRefreshError,
    ensure_fresh_connection,
    fetch_activity_by_id,
    fetch_recent_activities,
    refresh_access_token,
)
from services.token_encryption import decrypt_token


def _response(status_code=200, payload=None, headers=None, json_error=False):
    r = MagicMock()
    r.status_code = status_code
    r.headers = headers or {}
    if json_error:
        r.json.side_effect = ValueError("not json")
    else:
        r.json.return_value = payload
    return r


class TestRefreshAccessToken:

    def test_form_encoded_post(self):
        future_ts = int((datetime.now(timezone.utc) + timedelta(hours=6)).timestamp())
        payload = {"access_token": "a2", "refresh_token": "r2", "expires_at": future_ts}
        with patch("services.strava_service.requests.post", return_value=_response(200, payload)) as mock_post:
            result = refresh_access_token("r1")

        assert result == payload
        kwargs = mock_post.call_args.kwargs
        assert mock_post.call_args.args[0] == settings.STRAVA_OAUTH_TOKEN_URL
        assert kwargs["data"] == {
            "client_id": "test-client-id",
            "client_secret": "test-client-secret",
            "grant_type": "refresh_token",
            "refresh_token": "r1",
        }
        assert "json" not in kwargs

    def test_missing_client_config_is_fatal(self, monkeypatch):
        monkeypatch.setattr(settings, "STRAVA_CLIENT_SECRET", None)
        with patch("services.strava_service.requests.post") as mock_post:
            with pytest.raises(StravaConfigError):
                refresh_access_token("r1")
        mock_post.assert_not_called()

    def test_rejected_refresh_uses_provider_message(self):
        with patch(
            "services.strava_service.requests.post",
            return_value=_response(400, {"message": "Bad Request", "errors": [{"field": "refresh_token", "code": "invalid"}]}),
        ):
            with pytest.raises(StravaTokenRefreshError, match="Bad Request"):
                refresh_access_token("r1")

    @pytest.mark.parametrize("missing", ["access_token", "refresh_token", "expires_at"])
    def test_missing_fields_rejected(self, missing):
        payload = {"access_token": "a2", "refresh_token": "r2", "expires_at": 1_900_000_000}
        del payload[missing]
        with patch("services.strava_service.requests.post", return_value=_response(200, payload)):
            with pytest.raises(StravaTokenRefreshError, match=missing):
                refresh_access_token("r1")

    def test_network_error_is_refresh_error(self):
        with patch("services.strava_service.requests.post", side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(StravaTokenRefreshError):
                refresh_access_token("r1")


class TestEnsureFreshConnection:

    def test_valid_token_is_not_refreshed(self, db_session, test_athlete, make_connection, now):
        connection = make_connection(test_athlete, expires_at=now + timedelta(hours=1))

        with patch("services.strava_service.requests.post") as mock_post:
            creds = ensure_fresh_connection(db_session, connection, now=now)

        mock_post.assert_not_called()
        assert creds.access_token == "access-1"
        assert creds.refresh_token == "refresh-1"

    def test_expiring_within_buffer_refreshes_and_persists(self, db_session, test_athlete, make_connection, now):
        connection = make_connection(test_athlete, expires_at=now + timedelta(seconds=30), scope="read")
        new_expiry = int((now + timedelta(hours=6)).timestamp())
        payload = {"access_token": "access-2", "refresh_token": "refresh-2", "expires_at": new_expiry, "scope": "activity:read_all"}

        with patch("services.strava_service.requests.post", return_value=_response(200, payload)):
            creds = ensure_fresh_connection(db_session, connection, now=now)

        assert creds.access_token == "access-2"
        db_session.refresh(connection)
        assert decrypt_token(connection.access_token) == "access-2"
        assert decrypt_token(connection.refresh_token) == "refresh-2"
        assert connection.expires_at.replace(tzinfo=timezone.utc) == datetime.fromtimestamp(new_expiry, tz=timezone.utc)
        assert connection.scope == "activity:read_all"

    def test_scope_falls_back_to_stored_value(self, db_session, test_athlete, make_connection, now):
        connection = make_connection(test_athlete, expires_at=now - timedelta(minutes=1), scope="read,activity:read")
        payload = {"access_token": "a2", "refresh_token": "r2", "expires_at": int((now + timedelta(hours=6)).timestamp())}

        with patch("services.strava_service.requests.post", return_value=_response(200, payload)):
            creds = ensure_fresh_connection(db_session, connection, now=now)

        assert creds.scope == "read,activity:read"
        db_session.refresh(connection)
        assert connection.scope == "read,activity:read"

    def test_failed_refresh_leaves_stored_tokens_untouched(self, db_session, test_athlete, make_connection, now):
        connection = make_connection(test_athlete, expires_at=now - timedelta(minutes=1))
        before = (connection.access_token, connection.refresh_token, connection.expires_at)

        with patch("services.strava_service.requests.post", return_value=_response(200, {"access_token": "only"})):
            with pytest.raises(StravaTokenRefreshError):
                ensure_fresh_connection(db_session, connection, now=now)

        db_session.refresh(connection)
        assert (connection.access_token, connection.refresh_token) == before[:2]


class TestFetchRecentActivities:

    def test_passes_window_and_page_size(self):
        with patch("services.strava_service.requests.get", return_value=_response(200, [{"id": 1}])) as mock_get:
            result = fetch_recent_activities("tok", 1_700_000_000, 50)

        assert result == [{"id": 1}]
        kwargs = mock_get.call_args.kwargs
        assert kwargs["params"] == {"after": 1_700_000_000, "per_page": 50}
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert mock_get.call_args.args[0].endswith("/athlete/activities")

    def test_429_raises_rate_limit_with_retry_after(self):
        with patch("services.strava_service.requests.get", return_value=_response(429, {"message": "Rate Limit Exceeded"}, {"Retry-After": "120"})):
            with pytest.raises(StravaRateLimitError) as e:
                fetch_recent_activities("tok", 0)
        assert e.value.retry_after_s == 120

    def test_rate_limit_body_on_403_is_rate_limit(self):
        body = {"message": "Rate Limit Exceeded", "errors": [{"resource": "Application", "field": "rate limit", "code": "exceeded"}]}
        with patch("services.strava_service.requests.get", return_value=_response(403, body)):
            with pytest.raises(StravaRateLimitError) as e:
                fetch_recent_activities("tok", 0)
        assert e.value.retry_after_s > 0

    def test_non_array_body_is_fetch_error(self):
        with patch("services.strava_service.requests.get", return_value=_response(200, {"activities": []})):
            with pytest.raises(StravaFetchError):
                fetch_recent_activities("tok", 0)

    def test_invalid_json_is_fetch_error(self):
        with patch("services.strava_service.requests.get", return_value=_response(200, json_error=True)):
            with pytest.raises(StravaFetchError):
                fetch_recent_activities("tok", 0)

    def test_server_error_is_fetch_error(self):
        with patch("services.strava_service.requests.get", return_value=_response(502, None)):
            with pytest.raises(StravaFetchError, match="502"):
                fetch_recent_activities("tok", 0)

    def test_timeout_is_fetch_error(self):
        with patch("services.strava_service.requests.get", side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(StravaFetchError):
                fetch_recent_activities("tok", 0)


class TestFetchActivityById:

    def test_returns_object(self):
        with patch("services.strava_service.requests.get", return_value=_response(200, {"id": 99})) as mock_get:
            assert fetch_activity_by_id("tok", "99") == {"id": 99}
        assert mock_get.call_args.args[0].endswith("/activities/99")

    def test_non_object_body_is_fetch_error(self):
        with patch("services.strava_service.requests.get", return_value=_response(200, [{"id": 99}])):
            with pytest.raises(StravaFetchError):
                fetch_activity_by_id("tok", "99")
