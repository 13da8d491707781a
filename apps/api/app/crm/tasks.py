from __future__ import annotations

import json
import logging
import smtplib
from collections.abc import Generator
from contextlib import contextmanager
from email.message import EmailMessage
from typing import Any

import httpx
import redis
from celery.signals import task_failure, task_postrun, task_prerun
from sqlalchemy.orm import Session

from app.context import reset_correlation_id, set_correlation_id
from app.core import database
from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.crm.errors import SideEffectError
from app.crm.models import CRMNotification


logger = logging.getLogger("app.crm.tasks")

settings = get_settings()
_retry_kwargs = {"max_retries": settings.side_effect_task_max_retries}

EMAIL_TEMPLATES: dict[str, dict[str, str]] = {
    "new_lead": {
        "subject": "New lead: {lead_name}",
        "body": "Name: {lead_name}\nEmail: {lead_email}\nSource: {source}\n{notes}",
    },
    "lead_converted": {
        "subject": "{customer_name} is now a customer",
        "body": "Lead {lead_name} was converted to customer {customer_name} on plan {plan}.",
    },
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_email(template: str, variables: dict[str, Any]) -> tuple[str, str]:
    entry = EMAIL_TEMPLATES.get(template)
    if entry is None:
        raise SideEffectError("send_email", f"unknown template '{template}'")
    values = _Defaults({key: "" if value is None else value for key, value in variables.items()})
    return entry["subject"].format_map(values), entry["body"].format_map(values)


@contextmanager
def _session_scope() -> Generator[Session, None, None]:
    session = database.SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def persist_notification(
    session: Session,
    *,
    user_id: str,
    organization_id: str,
    type: str,
    title: str,
    body: str | None,
    data: dict[str, Any] | None,
) -> CRMNotification:
    notification = CRMNotification(
        user_id=user_id,
        organization_id=organization_id,
        type=type,
        title=title,
        body=body,
        data=data or {},
    )
    session.add(notification)
    session.flush()
    return notification


def deliver_email(to: str, subject: str, body: str) -> None:
    if not settings.smtp_host:
        logger.info("email.logged", extra={"status": "not_sent", "task": "send_email"})
        return
    message = EmailMessage()
    message["From"] = settings.email_from
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as client:
        client.send_message(message)


@celery_app.task(name="app.crm.tasks.notify")
def notify(
    user_id: str,
    organization_id: str,
    type: str,
    title: str,
    body: str | None,
    data: dict[str, Any] | None = None,
) -> None:
    with _session_scope() as session:
        persist_notification(
            session,
            user_id=user_id,
            organization_id=organization_id,
            type=type,
            title=title,
            body=body,
            data=data,
        )


@celery_app.task(
    name="app.crm.tasks.send_email",
    autoretry_for=(smtplib.SMTPException, OSError),
    retry_backoff=True,
    retry_kwargs=_retry_kwargs,
)
def send_email(to: str, template: str, variables: dict[str, Any]) -> None:
    subject, body = render_email(template, variables)
    deliver_email(to, subject, body)


@celery_app.task(
    name="app.crm.tasks.evaluate_automations",
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
    retry_kwargs=_retry_kwargs,
)
def evaluate_automations(lead_id: str, status: str) -> None:
    response = httpx.post(settings.automation_evaluator_url, json={"lead_id": lead_id, "status": status}, timeout=10.0)
    response.raise_for_status()


@celery_app.task(
    name="app.crm.tasks.broadcast",
    autoretry_for=(redis.RedisError,),
    retry_backoff=True,
    retry_kwargs=_retry_kwargs,
)
def broadcast(channel: str, event: str, payload: dict[str, Any]) -> None:
    client = redis.Redis.from_url(settings.redis_url)
    try:
        client.publish(channel, json.dumps({"event": event, "payload": payload}))
    finally:
        client.close()


@celery_app.task(
    name="app.crm.tasks.sync_external",
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
    retry_kwargs=_retry_kwargs,
)
def sync_external(customer: dict[str, Any], organization_id: str) -> None:
    response = httpx.post(
        settings.org_sync_url,
        json={"customer": customer, "organizationId": organization_id},
        headers={"X-Sync-Key": settings.org_sync_key},
        timeout=10.0,
    )
    response.raise_for_status()


_correlation_tokens: dict[str, Any] = {}


def _request_correlation_id(task: Any) -> str | None:
    headers = getattr(task.request, "headers", None) or {}
    return headers.get("correlation_id") or getattr(task.request, "correlation_id", None)


@task_prerun.connect
def _bind_correlation_id(task_id: str | None = None, task: Any = None, **_: Any) -> None:
    if task is None or task_id is None:
        return
    _correlation_tokens[task_id] = set_correlation_id(_request_correlation_id(task))


@task_postrun.connect
def _unbind_correlation_id(task_id: str | None = None, **_: Any) -> None:
    token = _correlation_tokens.pop(task_id, None) if task_id else None
    if token is not None:
        reset_correlation_id(token)


@task_failure.connect
def _log_task_failure(sender: Any = None, task_id: str | None = None, exception: BaseException | None = None, **_: Any) -> None:
    logger.error(
        "side_effect.task_failed",
        exc_info=exception,
        extra={"task": getattr(sender, "name", None), "error": str(exception)[:500] if exception else None},
    )
