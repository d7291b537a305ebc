"""
Tests for the typed Strava activity payload and discipline mapping.
"""
from datetime import datetime, timezone

import pytest

from services.strava_payload import map_strava_discipline, parse_strava_activity


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Run", "RUN"),
        ("TrailRun", "RUN"),
        ("VirtualRun", "RUN"),
        ("Ride", "BIKE"),
        ("GravelRide", "BIKE"),
        ("EBikeRide", "BIKE"),
        ("Swim", "SWIM"),
        ("WeightTraining", "OTHER"),
        ("", "OTHER"),
        (None, "OTHER"),
    ],
)
def test_map_strava_discipline(raw, expected):
    assert map_strava_discipline(raw) == expected


def test_sport_type_takes_precedence_over_type(activity_factory):
    payload = parse_strava_activity(activity_factory(type="Ride", sport_type="TrailRun"))
    assert payload.discipline == "RUN"
    assert payload.sport == "TrailRun"


def test_falls_back_to_type_when_sport_type_missing(activity_factory):
    raw = activity_factory(type="Swim")
    del raw["sport_type"]
    payload = parse_strava_activity(raw)
    assert payload.discipline == "SWIM"


def test_parses_required_fields(activity_factory):
    payload = parse_strava_activity(activity_factory(activity_id=42, start_date="2026-03-09T07:02:00Z"))
    assert payload.id == 42
    assert payload.external_id == "42"
    assert payload.start_date == datetime(2026, 3, 9, 7, 2, tzinfo=timezone.utc)
    assert payload.elapsed_time == 3600
    assert payload.summary_polyline == "abc123"


@pytest.mark.parametrize("missing", ["id", "start_date", "elapsed_time"])
def test_missing_required_field_rejects_activity(missing, activity_factory):
    raw = activity_factory()
    del raw[missing]
    assert parse_strava_activity(raw) is None


def test_wrong_typed_required_field_rejects_activity(activity_factory):
    assert parse_strava_activity(activity_factory(elapsed_time="3600")) is None
    assert parse_strava_activity(activity_factory(start_date="yesterday")) is None
    assert parse_strava_activity(activity_factory(activity_id=True)) is None


def test_wrong_typed_optional_field_is_treated_as_absent(activity_factory):
    payload = parse_strava_activity(activity_factory(distance="10km", average_heartrate=True, name=123))
    assert payload is not None
    assert payload.distance is None
    assert payload.average_heartrate is None
    assert payload.name is None


def test_non_mapping_is_rejected():
    assert parse_strava_activity(None) is None
    assert parse_strava_activity(["not", "a", "dict"]) is None
