"""Celery application for on-demand enrichment bursts."""

from __future__ import annotations

import os
from typing import Mapping

from celery import Celery

DEFAULT_BROKER_URL = "memory://"
DEFAULT_RESULT_BACKEND = "cache+memory://"


def _eager_enabled(env: Mapping[str, str]) -> bool:
    value = env.get("HARVESTER_CELERY_TASK_ALWAYS_EAGER")
    if value is None or not value.strip():
        return True
    return value.strip().lower() in {"1", "true", "yes", "on"}


def create_celery_app(env: Mapping[str, str] | None = None) -> Celery:
    """Build the Celery app; broker and backend default to in-memory transports."""

    if env is None:
        env = os.environ

    app = Celery(
        "harvester",
        broker=env.get("HARVESTER_CELERY_BROKER_URL") or DEFAULT_BROKER_URL,
        backend=env.get("HARVESTER_CELERY_RESULT_BACKEND") or DEFAULT_RESULT_BACKEND,
        include=["harvester.tasks"],
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_always_eager=_eager_enabled(env),
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
    )
    return app


celery_app = create_celery_app()


__all__ = ["celery_app", "create_celery_app"]
