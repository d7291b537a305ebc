"""
Strava sync worker entry point.

Run with `celery -A main worker -B` from this directory. The worker executes
the queue drain, the backfill sweep and the stale-connection safety sweep;
the embedded beat scheduler fires them on the cadence in
celerybeat_schedule.py.
"""
import os
import sys

# The API package sits beside this directory locally and at /api in the image.
API_DIR = os.environ.get(
    "STRAVA_SYNC_API_DIR",
    os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "api"),
)
sys.path.insert(0, API_DIR)

from tasks import celery_app  # noqa: E402

SYNC_TASKS = (
    "tasks.drain_strava_sync_intents",
    "tasks.strava_backfill_sweep",
    "tasks.enqueue_strava_safety_sweep",
)

missing = [name for name in SYNC_TASKS if name not in celery_app.tasks]
if missing:
    raise RuntimeError(f"Strava sync tasks not registered: {', '.join(missing)}")

app = celery_app
