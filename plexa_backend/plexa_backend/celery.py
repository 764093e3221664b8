import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "plexa_backend.settings")

app = Celery("plexa_backend")

# Load config from Django settings (CELERY_BROKER_URL, etc.)
app.config_from_object("django.conf:settings", namespace="CELERY")

# Autodiscover tasks in installed apps
app.autodiscover_tasks()

# Ensure the lifecycle tasks module is registered
app.conf.imports = tuple(
    {*(app.conf.imports or ()), "plexa_backend.celery_tasks.tasks"}
)


CELERY_BEAT_SCHEDULE = {
    "generate-renewal-invoices-daily": {
        "task": "plexa_backend.celery_tasks.tasks.generate_renewal_invoices",
        "schedule": crontab(minute=0, hour=0),
        "options": {"queue": "default"},
    },
    "delete-expired-suspended-servers-daily": {
        "task": "plexa_backend.celery_tasks.tasks.delete_expired_suspended_servers",
        "schedule": crontab(minute=0, hour=0),
        "options": {"queue": "default"},
    },
    "suspend-overdue-servers-daily": {
        "task": "plexa_backend.celery_tasks.tasks.suspend_overdue_servers",
        "schedule": crontab(minute=5, hour=0),
        "options": {"queue": "default"},
    },
    # Fires at the minimum interval; the task itself honours radar_interval.
    "radar-scan": {
        "task": "plexa_backend.celery_tasks.tasks.radar_scan",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "default"},
    },
}

app.conf.beat_schedule = CELERY_BEAT_SCHEDULE
