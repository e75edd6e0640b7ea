"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat schedule is defined here for periodic tasks.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config/settings so workers see the same settings as the CLI
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)
    print(f"[Celery] Loaded environment from: {env_file}")

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_init, worker_process_shutdown
from kombu import Exchange, Queue

from config import log_missing_env_vars, settings

REDIS_URL: str = os.environ.get("REDIS_URL", settings.REDIS_URL)

celery_app = Celery(
    "slack_archive",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "workers.tasks.sync",
        "workers.tasks.monitor",
    ],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=settings.SYNC_TIME_LIMIT_SECONDS,
    task_soft_time_limit=settings.SYNC_SOFT_TIME_LIMIT_SECONDS,

    # Result settings
    result_expires=60 * 60 * 24,  # Results expire after 24 hours

    # Worker settings
    # Sync jobs sleep between Slack calls; one task at a time per worker process
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    # Queue configuration
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("slack_sync", Exchange("slack_sync"), routing_key="slack_sync.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_routes={
        "workers.tasks.sync.*": {"queue": "slack_sync"},
        "workers.tasks.monitor.*": {"queue": "default"},
    },
)

celery_app.conf.beat_schedule = {
    # Incremental sync for every active user with a token, staggered
    "hourly-slack-sync-all-users": {
        "task": "workers.tasks.sync.dispatch_all_user_syncs",
        "schedule": crontab(minute=0),
        "options": {"queue": "slack_sync"},
    },

    "monitor-slack-sync-jobs": {
        "task": "workers.tasks.monitor.monitor_sync_jobs",
        "schedule": timedelta(minutes=30),
        "options": {"queue": "default"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release pooled database connections when a worker process exits."""
    try:
        from models.database import dispose_engine
        dispose_engine()
        print("[Celery] Database connections cleaned up on worker shutdown")
    except Exception as e:
        print(f"[Celery] Error cleaning up database connections: {e}")


@worker_init.connect
def report_missing_env_vars(**kwargs) -> None:
    """Note unset configuration once per worker start."""
    log_missing_env_vars(logging.getLogger("config"))
