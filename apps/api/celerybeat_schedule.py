"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Drain the Strava sync intent queue. Overlapping runs are safe:
    # intents are claimed by conditional UPDATE.
    'drain-strava-sync-intents': {
        'task': 'tasks.drain_strava_sync_intents',
        'schedule': crontab(minute='*/5'),  # Every 5 minutes
    },
    # Safety sweep - queue a poll for connections that have gone quiet
    # (missed webhooks, dropped intents).
    'enqueue-strava-safety-sweep': {
        'task': 'tasks.enqueue_strava_safety_sweep',
        'schedule': crontab(minute=7),  # Hourly
    },
}
