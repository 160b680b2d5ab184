"""Celery entry point for hashsync workers."""

from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from celery.signals import worker_process_init

from hashsync.config import settings
from hashsync.logging import configure_logging
from hashsync.runtime import HashSync, build_runtime, get_runtime, set_runtime

LOGGER = logging.getLogger(__name__)

celery_app = Celery("hashsync")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.result_backend = settings.celery.result_backend
celery_app.conf.task_default_queue = settings.celery.publish_queue
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"

_DELIVER_TASK_NAME = "hashsync.deliver"
_RETRY_TASK_NAME = "hashsync.retry_deliveries"
_DETECT_TASK_NAME = "hashsync.detect_changes"

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule[_RETRY_TASK_NAME] = {
    "task": _RETRY_TASK_NAME,
    "schedule": float(settings.celery.retry_scan_interval_seconds),
}
if settings.celery.detect_interval_seconds > 0:
    beat_schedule[_DETECT_TASK_NAME] = {
        "task": _DETECT_TASK_NAME,
        "schedule": float(settings.celery.detect_interval_seconds),
        "options": {"queue": settings.celery.detect_changes_queue},
    }
celery_app.conf.beat_schedule = beat_schedule


def enqueue_delivery(delivery_id: int) -> None:
    """Queue one delivery attempt on the publish queue."""
    celery_app.send_task(
        _DELIVER_TASK_NAME,
        args=[delivery_id],
        queue=settings.celery.publish_queue,
    )


def build_worker_runtime() -> HashSync:
    """Build a runtime whose new pending deliveries go straight to the queue."""
    runtime = build_runtime(submitter=enqueue_delivery)
    set_runtime(runtime)
    return runtime


@worker_process_init.connect
def _init_worker(**_: Any) -> None:
    configure_logging(level=settings.log_level, json_output=settings.log_json, service="hashsync-worker")
    build_worker_runtime()


@celery_app.task(name=_DELIVER_TASK_NAME)
def deliver(delivery_id: int) -> str:
    """Dispatch one delivery record and return its resulting status."""
    status = get_runtime().dispatcher.dispatch(int(delivery_id))
    LOGGER.debug("Delivery %s finished as %s", delivery_id, status)
    return status


@celery_app.task(name=_RETRY_TASK_NAME)
def retry_deliveries(limit: int | None = None) -> int:
    """Queue every due pending or deferred delivery."""
    due = get_runtime().dispatcher.due_ids(limit)
    for delivery_id in due:
        enqueue_delivery(delivery_id)
    if due:
        LOGGER.info("Queued %s due deliveries", len(due))
    return len(due)


@celery_app.task(name=_DETECT_TASK_NAME)
def detect_changes(entity_type: str | None = None) -> list[dict[str, Any]]:
    """Run a drift pass and return the per-type reports."""
    reports = get_runtime().drift.run(entity_type)
    return [report.as_dict() for report in reports]
