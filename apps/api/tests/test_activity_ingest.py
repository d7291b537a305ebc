"""
Tests for idempotent CompletedActivity ingestion.

Covers:
- normalisation (minutes rounding, km, RUN-only pace, rounded HR, compact metrics)
- created -> unchanged -> updated on repeated ingestion of the same provider id
- sibling metrics namespaces survive an update
"""
from models import CompletedActivity
from services.activity_ingest import (
    INGEST_CREATED,
    INGEST_UNCHANGED,
    INGEST_UPDATED,
    metrics_changed,
    normalize_strava_activity,
    seconds_to_minutes_rounded,
    upsert_completed_activity,
)
from services.strava_payload import parse_strava_activity


def _normalized(raw):
    return normalize_strava_activity(parse_strava_activity(raw))


class TestNormalisation:

    def test_minutes_rounding(self):
        assert seconds_to_minutes_rounded(10) == 1
        assert seconds_to_minutes_rounded(89) == 1
        assert seconds_to_minutes_rounded(90) == 2
        assert seconds_to_minutes_rounded(150) == 3
        assert seconds_to_minutes_rounded(3600) == 60

    def test_run_metrics(self, activity_factory):
        n = _normalized(activity_factory(elapsed_time=3630, distance=10000.0, average_speed=2.9))
        assert n.duration_minutes == 61
        assert n.distance_km == 10.0
        assert n.discipline == "RUN"
        assert n.metrics["avgPaceSecPerKm"] == 345  # 1000 / 2.9 = 344.8
        assert n.metrics["avgHr"] == 152
        assert n.metrics["maxHr"] == 172
        assert n.metrics["activityId"] == "1001"
        assert n.metrics["summaryPolyline"] == "abc123"

    def test_pace_only_for_runs(self, activity_factory):
        n = _normalized(activity_factory(type="Ride", sport_type="Ride", average_speed=8.0))
        assert n.discipline == "BIKE"
        assert "avgPaceSecPerKm" not in n.metrics
        assert n.metrics["avgSpeedMps"] == 8.0

    def test_absent_values_dropped(self, activity_factory):
        raw = activity_factory()
        for key in ("average_heartrate", "max_heartrate", "map", "distance"):
            del raw[key]
        n = _normalized(raw)
        assert n.distance_km is None
        for key in ("avgHr", "maxHr", "summaryPolyline", "distanceMeters", "averageHeartrateBpm"):
            assert key not in n.metrics

    def test_metrics_changed_compares_new_keys_only(self):
        assert metrics_changed(None, {"a": 1})
        assert not metrics_changed({"a": 1, "extra": 2}, {"a": 1})
        assert metrics_changed({"a": 1}, {"a": 2})


class TestUpsert:

    def test_first_ingest_creates(self, db_session, test_athlete, activity_factory):
        result = upsert_completed_activity(db_session, test_athlete.id, _normalized(activity_factory()))
        db_session.commit()

        assert result.kind == INGEST_CREATED
        row = db_session.get(CompletedActivity, result.activity.id)
        assert row.source == "STRAVA"
        assert row.external_activity_id == "1001"
        assert row.duration_minutes == 60
        assert row.metrics_json["strava"]["name"] == "Morning Run"

    def test_repeat_ingest_is_unchanged(self, db_session, test_athlete, activity_factory):
        first = upsert_completed_activity(db_session, test_athlete.id, _normalized(activity_factory()))
        db_session.commit()
        second = upsert_completed_activity(db_session, test_athlete.id, _normalized(activity_factory()))
        db_session.commit()

        assert second.kind == INGEST_UNCHANGED
        assert second.activity.id == first.activity.id
        count = (
            db_session.query(CompletedActivity)
            .filter(CompletedActivity.athlete_id == test_athlete.id)
            .count()
        )
        assert count == 1

    def test_changed_payload_updates_and_keeps_sibling_namespaces(self, db_session, test_athlete, activity_factory):
        first = upsert_completed_activity(db_session, test_athlete.id, _normalized(activity_factory()))
        first.activity.metrics_json = {**first.activity.metrics_json, "garmin": {"trainingEffect": 3.1}}
        db_session.commit()

        result = upsert_completed_activity(
            db_session,
            test_athlete.id,
            _normalized(activity_factory(name="Renamed Run", elapsed_time=4000)),
        )
        db_session.commit()

        assert result.kind == INGEST_UPDATED
        row = db_session.get(CompletedActivity, first.activity.id)
        db_session.refresh(row)
        assert row.duration_minutes == 67
        assert row.metrics_json["strava"]["name"] == "Renamed Run"
        assert row.metrics_json["garmin"] == {"trainingEffect": 3.1}

    def test_same_provider_id_for_different_athletes_is_distinct(self, db_session, make_athlete, activity_factory):
        a = make_athlete()
        b = make_athlete()
        ra = upsert_completed_activity(db_session, a.id, _normalized(activity_factory()))
        rb = upsert_completed_activity(db_session, b.id, _normalized(activity_factory()))
        db_session.commit()

        assert ra.kind == INGEST_CREATED
        assert rb.kind == INGEST_CREATED
        assert ra.activity.id != rb.activity.id
