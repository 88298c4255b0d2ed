from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any

from app.automations.engine import AutomationEngine
from app.automations.ingress import from_envelope
from app.context import reset_correlation_id, set_correlation_id
from app.core.celery_app import celery_app
from app.core.database import SessionLocal


logger = logging.getLogger("app.automations.tasks")
_engine: AutomationEngine | None = None


@contextmanager
def _task_session_scope():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_engine() -> AutomationEngine:
    global _engine
    if _engine is None:
        _engine = AutomationEngine(_task_session_scope)
    return _engine


@celery_app.task(name="app.automations.process_event")
def process_event(envelope: dict[str, Any]) -> list[str]:
    event = from_envelope(envelope)
    if event is None:
        logger.warning("automation_event_rejected", extra={"event_id": envelope.get("event_id")})
        return []
    token = set_correlation_id(event.correlation_id)
    try:
        return [str(run_id) for run_id in get_engine().consumer.dispatch(event)]
    finally:
        reset_correlation_id(token)


@celery_app.task(name="app.automations.execute_run")
def execute_run(run_id: str) -> str | None:
    with _task_session_scope() as session:
        try:
            run = get_engine().executor.execute(session, uuid.UUID(run_id))
        except Exception as exc:
            # execute() has already failed the run; the task itself still errors.
            logger.exception("automation_execute_run_failed", extra={"run_id": run_id, "error": str(exc)[:500]})
            raise
        return run.status if run is not None else None


@celery_app.task(name="app.automations.sweep_waiting_runs")
def sweep_waiting_runs() -> list[str]:
    with _task_session_scope() as session:
        return [str(run_id) for run_id in get_engine().sweeper.sweep(session)]
