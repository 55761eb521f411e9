from celery import Celery
from kombu import Queue

from core.env import env_str
from core.logging import setup_logging
from jobs.schedule import as_beat_schedule, load_schedule_entries

setup_logging()

CELERY_BROKER_URL = env_str("CELERY_BROKER_URL", "redis://redis:6379/0") or "redis://redis:6379/0"
CELERY_RESULT_BACKEND = env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1") or "redis://redis:6379/1"
CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "UTC") or "UTC"
CELERY_BILLING_QUEUE = env_str("CELERY_BILLING_QUEUE", "billing") or "billing"

app = Celery(
    "billing",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["jobs.tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone=CELERY_TIMEZONE,
    task_default_queue=CELERY_BILLING_QUEUE,
    task_queues=(Queue(CELERY_BILLING_QUEUE),),
    task_acks_late=True,
    beat_schedule={},
)

yaml_timezone, entries = load_schedule_entries()
app.conf.beat_schedule.update(as_beat_schedule(entries))
if yaml_timezone:
    app.conf.update(timezone=yaml_timezone)
current_tz = getattr(app.conf, "timezone", None) or "UTC"
app.conf.enable_utc = str(current_tz).upper() == "UTC"
