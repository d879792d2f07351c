"""
Celery application setup for the Playbook Engine.

Configures Celery using environment-driven settings so workers and the API
share the same broker/result backend. Tasks live in playbook_engine.tasks.

Queue Architecture:
- sync: Reference Store -> vector index syncs (periodic and on demand)
- maintenance: lightweight housekeeping
"""
import os

from celery import Celery
from kombu import Queue

from playbook_engine.config import settings
from playbook_engine.core.shared.config_loader import config_loader


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


app = Celery(
    "playbook_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["playbook_engine.tasks"],
)

app.conf.task_queues = (
    Queue("sync", routing_key="sync"),
    Queue("maintenance", routing_key="maintenance"),
)

# Core settings with sensible defaults, overridable via env
app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "600")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "900")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "sync"),
    task_routes={
        "playbook_engine.tasks.sync_all_collections_task": {"queue": "sync"},
        "playbook_engine.tasks.sync_scope_task": {"queue": "sync"},
    },
)

# ============================================================================
# Celery Beat Schedule
# ============================================================================

sync_config = config_loader.get_sync_config()

beat_schedule = {}
if sync_config.enabled:
    beat_schedule["sync-all-collections"] = {
        "task": "playbook_engine.tasks.sync_all_collections_task",
        "schedule": sync_config.interval_seconds,
        "options": {"queue": "sync"},
    }

app.conf.beat_schedule = beat_schedule
app.conf.timezone = "UTC"
