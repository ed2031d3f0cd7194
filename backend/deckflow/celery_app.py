from celery import Celery

from deckflow.config import settings

celery_app = Celery(
    "deckflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["deckflow.maintenance"],
)
celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    beat_schedule={
        "recover-stalled-jobs": {
            "task": "deckflow.maintenance.recover_stalled_jobs",
            "schedule": float(settings.stalled_scan_interval_seconds),
        },
        "reconcile-orphaned-jobs": {
            "task": "deckflow.maintenance.reconcile_orphaned_jobs",
            "schedule": float(settings.reconcile_interval_seconds),
        },
        "purge-finished-entries": {
            "task": "deckflow.maintenance.purge_finished_entries",
            "schedule": 60.0 * 60.0,
        },
    },
)
