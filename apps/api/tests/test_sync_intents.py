"""
Tests for the durable sync intent queue.

Covers:
- claim exclusivity (second claimer gets nothing)
- lease recovery of orphaned PROCESSING rows
- backoff reschedule and terminal FAILED on the 10th attempt
- done resets attempts and clears the error
- rate-limit deferral never fails an intent
- releasing a claim returns the attempt and leaves the intent due
- coalescing of duplicate PENDING intents and the safety sweep
"""
from datetime import timedelta

from models import StravaSyncIntent
from services.sync_intents import (
    claim_intent,
    count_pending_intents,
    defer_intent,
    enqueue_stale_connection_intents,
    enqueue_sync_intent,
    mark_intent_done,
    mark_intent_failed_attempt,
    recover_expired_leases,
    release_intent,
    select_eligible_intents,
)


def _reload(db, intent):
    db.refresh(intent)
    return intent


class TestEnqueue:

    def test_pending_duplicates_coalesce(self, db_session, test_athlete):
        a = enqueue_sync_intent(db_session, test_athlete.id, "555", source="webhook")
        b = enqueue_sync_intent(db_session, test_athlete.id, "555", source="webhook")
        c = enqueue_sync_intent(db_session, test_athlete.id, None)

        assert a.id == b.id
        assert c.id != a.id
        assert c.strava_activity_id is None

    def test_safety_sweep_skips_fresh_and_busy_connections(self, db_session, make_athlete, make_connection, now):
        stale = make_athlete()
        make_connection(stale, last_sync_at=now - timedelta(hours=12))
        never = make_athlete()
        make_connection(never, last_sync_at=None)
        fresh = make_athlete()
        make_connection(fresh, last_sync_at=now - timedelta(minutes=5))
        busy = make_athlete()
        make_connection(busy, last_sync_at=None)
        enqueue_sync_intent(db_session, busy.id, None)

        created = enqueue_stale_connection_intents(db_session, now, stale_after=timedelta(hours=6), limit=10)

        assert created == 2
        queued = {
            i.athlete_id
            for i in db_session.query(StravaSyncIntent).filter(StravaSyncIntent.source == "sweep").all()
        }
        assert queued == {stale.id, never.id}

        # Second sweep finds open intents everywhere
        assert enqueue_stale_connection_intents(db_session, now, stale_after=timedelta(hours=6), limit=10) == 0


class TestClaim:

    def test_claim_is_exclusive(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")

        assert claim_intent(db_session, intent.id, now) is True
        assert claim_intent(db_session, intent.id, now) is False

        intent = _reload(db_session, intent)
        assert intent.status == "PROCESSING"
        assert intent.attempts == 1
        assert intent.lease_expires_at is not None

    def test_not_yet_due_intent_is_not_claimable(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        intent.next_attempt_at = now + timedelta(minutes=5)
        db_session.commit()

        assert select_eligible_intents(db_session, now, 10) == []
        assert claim_intent(db_session, intent.id, now) is False
        assert count_pending_intents(db_session, now) == 0
        assert count_pending_intents(db_session, now + timedelta(minutes=5)) == 1

    def test_eligible_intents_oldest_first_and_bounded(self, db_session, test_athlete, now):
        ids = []
        for n in range(3):
            intent = enqueue_sync_intent(db_session, test_athlete.id, str(n))
            intent.created_at = now - timedelta(minutes=10 - n)
            ids.append(intent.id)
        db_session.commit()

        selected = select_eligible_intents(db_session, now, limit=2)
        assert [i.id for i in selected] == ids[:2]

    def test_eligible_intents_scoped_to_athlete(self, db_session, make_athlete, now):
        a = make_athlete()
        b = make_athlete()
        enqueue_sync_intent(db_session, a.id, "1")
        enqueue_sync_intent(db_session, b.id, "2")

        selected = select_eligible_intents(db_session, now, 10, athlete_id=b.id)
        assert [i.athlete_id for i in selected] == [b.id]


class TestLeaseRecovery:

    def test_expired_lease_returns_to_pending(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        claim_intent(db_session, intent.id, now - timedelta(minutes=30), lease_timeout_s=15 * 60)

        recovered = recover_expired_leases(db_session, now)

        assert recovered == 1
        intent = _reload(db_session, intent)
        assert intent.status == "PENDING"
        assert intent.lease_expires_at is None
        # The crashed attempt still counts
        assert intent.attempts == 1

    def test_live_lease_is_left_alone(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        claim_intent(db_session, intent.id, now - timedelta(minutes=5), lease_timeout_s=15 * 60)

        assert recover_expired_leases(db_session, now) == 0
        assert _reload(db_session, intent).status == "PROCESSING"


class TestOutcomes:

    def test_failed_attempt_reschedules_with_backoff(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        claim_intent(db_session, intent.id, now)

        status = mark_intent_failed_attempt(db_session, intent.id, now, "boom")

        assert status == "PENDING"
        intent = _reload(db_session, intent)
        assert intent.last_error == "boom"
        # attempts == 1 -> 120 s
        assert intent.next_attempt_at.replace(tzinfo=None) == (now + timedelta(seconds=120)).replace(tzinfo=None)
        assert intent.processed_at is None

    def test_tenth_attempt_is_terminal(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        intent.attempts = 9
        db_session.commit()
        claim_intent(db_session, intent.id, now)

        status = mark_intent_failed_attempt(db_session, intent.id, now, "x" * 2000)

        assert status == "FAILED"
        intent = _reload(db_session, intent)
        assert intent.attempts == 10
        assert intent.next_attempt_at is None
        assert intent.processed_at is not None
        assert len(intent.last_error) == 500

    def test_done_resets_attempts_and_error(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        claim_intent(db_session, intent.id, now)
        mark_intent_failed_attempt(db_session, intent.id, now, "transient")
        later = now + timedelta(hours=1)
        claim_intent(db_session, intent.id, later)

        mark_intent_done(db_session, intent.id, later)

        intent = _reload(db_session, intent)
        assert intent.status == "DONE"
        assert intent.attempts == 0
        assert intent.last_error is None
        assert intent.next_attempt_at is None
        assert intent.processed_at is not None

    def test_defer_never_fails_and_uses_retry_after(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        intent.attempts = 9
        db_session.commit()
        claim_intent(db_session, intent.id, now)

        retry_at = defer_intent(db_session, intent.id, now, retry_after_s=900)

        intent = _reload(db_session, intent)
        assert intent.status == "PENDING"
        assert intent.attempts == 9
        # backoff(10) = 15360 s beats Retry-After
        assert retry_at == now + timedelta(seconds=15360)

    def test_defer_delay_is_never_zero(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, "1")
        claim_intent(db_session, intent.id, now)

        retry_at = defer_intent(db_session, intent.id, now, retry_after_s=0)

        assert retry_at > now
        assert select_eligible_intents(db_session, now, 10) == []

    def test_release_returns_claim_untouched(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, None)
        assert claim_intent(db_session, intent.id, now)

        release_intent(db_session, intent.id, now, "STRAVA_CLIENT_ID not set")

        intent = _reload(db_session, intent)
        assert intent.status == "PENDING"
        assert intent.attempts == 0
        assert intent.lease_expires_at is None
        assert intent.next_attempt_at is None
        assert intent.last_error == "STRAVA_CLIENT_ID not set"
        assert count_pending_intents(db_session, now) == 1

    def test_release_ignores_unclaimed_intent(self, db_session, test_athlete, now):
        intent = enqueue_sync_intent(db_session, test_athlete.id, None)
        intent.attempts = 3
        db_session.commit()

        release_intent(db_session, intent.id, now)

        assert _reload(db_session, intent).attempts == 3
