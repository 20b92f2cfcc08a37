"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "shelfsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.sync", "workers.scheduler", "workers.webhook_retry"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.sync.*": {"queue": "sync"},
        "workers.webhook_retry.*": {"queue": "webhooks"},
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Merchant-scoped jobs fan out via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        # ── Webhook Events ─────────────────────────────────────────
        "process-webhook-retries-1m": {
            "task": "workers.webhook_retry.process_webhook_retries",
            "schedule": crontab(minute="*"),
            "options": {"queue": "webhooks"},
        },
        "cleanup-webhook-events-daily": {
            "task": "workers.webhook_retry.cleanup_webhook_events",
            "schedule": crontab(hour=3, minute=0),
            "options": {"queue": "webhooks"},
        },
        # ── Reconciliation ─────────────────────────────────────────
        "reconcile-committed-inventory-daily": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=4, minute=0),
            "kwargs": {"task_name": "workers.sync.reconcile_committed_inventory"},
            "options": {"queue": "sync"},
        },
        "sync-sales-velocity-daily": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=5, minute=0),  # After committed inventory
            "kwargs": {"task_name": "workers.sync.sync_sales_velocity"},
            "options": {"queue": "sync"},
        },
        # ── Data Sync ──────────────────────────────────────────────
        "run-full-sync-6h": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute=15, hour="*/6"),
            "kwargs": {"task_name": "workers.sync.run_full_sync"},
            "options": {"queue": "sync"},
        },
    },
)
