from __future__ import annotations

import os
import threading
import time

from celery import Celery
from celery.app.task import Task
from celery.schedules import crontab
from celery.signals import setup_logging, task_postrun, task_prerun, worker_process_init
from kombu import Queue

from gridrank.core.config import get_settings
from gridrank.core.logging_config import configure_logging
from gridrank.core.metrics import celery_task_duration_seconds, tasks_in_progress
from gridrank.core.tracing import install_tracer_provider
from gridrank.db.redis_client import get_redis_client

settings = get_settings()

GRID_SCAN_QUEUE = "grid_scan_queue"
DEFAULT_QUEUE = "default_queue"

_task_start_lock = threading.Lock()
_task_started_at: dict[str, float] = {}


def _queue_for_task_name(task_name: str | None) -> str:
    if task_name and task_name.startswith("local."):
        return GRID_SCAN_QUEUE
    return DEFAULT_QUEUE


def _resolve_prefetch_multiplier(default_multiplier: int) -> int:
    raw = os.getenv("CELERY_WORKER_PREFETCH_MULTIPLIER")
    try:
        value = int(raw) if raw is not None else int(default_multiplier)
    except ValueError:
        value = int(default_multiplier)
    return max(1, value)


@setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    configure_logging(log_level=settings.log_level, app_env=settings.app_env, json_logs=settings.log_json)


@worker_process_init.connect
def _configure_worker_tracing(**_kwargs) -> None:
    install_tracer_provider(settings.otel_exporter_endpoint, service_name="gridrank-worker")


@task_prerun.connect
def _record_task_start(task_id=None, task=None, **_kwargs) -> None:
    if not task_id:
        return
    with _task_start_lock:
        _task_started_at[task_id] = time.perf_counter()
    tasks_in_progress.labels(queue_name=_queue_for_task_name(getattr(task, "name", None))).inc()


@task_postrun.connect
def _record_task_duration(task_id=None, task=None, **_kwargs) -> None:
    if not task_id:
        return
    with _task_start_lock:
        started_at = _task_started_at.pop(task_id, None)
    if started_at is None:
        return
    task_name = getattr(task, "name", None) or "unknown"
    queue_name = _queue_for_task_name(task_name)
    tasks_in_progress.labels(queue_name=queue_name).dec()
    celery_task_duration_seconds.labels(task_name=task_name, queue_name=queue_name).observe(time.perf_counter() - started_at)


def create_celery_app() -> Celery:
    is_test_env = settings.app_env.lower() == "test"
    if not is_test_env:
        # Fail fast when Redis is unavailable in non-test environments.
        get_redis_client()

    class GridRankTask(Task):
        def retry(self, *args, **kwargs):
            if is_test_env:
                exc = kwargs.get("exc")
                if exc is not None:
                    raise exc
                raise RuntimeError("Retry requested during tests without an underlying exception.")
            return super().retry(*args, **kwargs)

    if is_test_env:
        broker, backend = "memory://", "cache+memory://"
        task_always_eager, task_eager_propagates = True, True
    else:
        broker, backend = settings.celery_broker_url, settings.celery_result_backend
        task_always_eager = settings.celery_task_always_eager
        task_eager_propagates = settings.celery_task_eager_propagates

    celery = Celery("gridrank", broker=broker, backend=backend)
    celery.Task = GridRankTask
    celery.conf.update(
        task_always_eager=task_always_eager,
        task_eager_propagates=task_eager_propagates,
        worker_prefetch_multiplier=_resolve_prefetch_multiplier(settings.celery_worker_prefetch_multiplier),
        # A redelivered grid scan resumes from the points already saved.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_default_queue=DEFAULT_QUEUE,
        task_queues=(Queue(GRID_SCAN_QUEUE), Queue(DEFAULT_QUEUE)),
        task_routes={
            "local.*": {"queue": GRID_SCAN_QUEUE},
            "*": {"queue": DEFAULT_QUEUE},
        },
        task_annotations={
            "local.run_grid_scan": {"soft_time_limit": settings.celery_grid_scan_soft_time_limit_seconds},
        },
        timezone="UTC",
        beat_schedule={
            "local-run-due-scans": {
                "task": "local.run_due_scans",
                "schedule": crontab(hour=6, minute=0),
                "kwargs": {"limit": settings.scan_due_batch_limit},
            },
        },
    )
    celery.autodiscover_tasks(["gridrank.tasks"])
    return celery


celery_app = create_celery_app()
