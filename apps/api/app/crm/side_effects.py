from __future__ import annotations

import json
import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from celery import Celery

from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.core.config import Settings
from app.metrics import observe_side_effect


logger = logging.getLogger("app.crm.side_effects")

DISPATCH_HISTORY_LIMIT = 1000

# Most recent dispatches only; older entries fall off.
dispatched: deque[dict[str, Any]] = deque(maxlen=DISPATCH_HISTORY_LIMIT)

TASK_NAMES = {
    "notify": "app.crm.tasks.notify",
    "send_email": "app.crm.tasks.send_email",
    "evaluate_automations": "app.crm.tasks.evaluate_automations",
    "broadcast": "app.crm.tasks.broadcast",
    "sync_external": "app.crm.tasks.sync_external",
}


def org_channel(organization_id: str) -> str:
    return f"org_{organization_id}"


def user_channel(user_id: str) -> str:
    return f"user_{user_id}"


def _jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(payload, default=str))


class SideEffectDispatcher:
    """Fire-and-forget notification, email, automation, broadcast and sync calls.

    Callers invoke these after their primary data is committed. A dispatch never
    raises: failures are logged and counted, and nothing is rolled back.
    Subclasses decide where the work is handed off by implementing ``_submit``.
    """

    def notify(
        self,
        user_id: str,
        organization_id: str,
        type: str,
        title: str,
        body: str | None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self._dispatch(
            "notify",
            {
                "user_id": user_id,
                "organization_id": organization_id,
                "type": type,
                "title": title,
                "body": body,
                "data": data or {},
            },
        )

    def send_email(self, to: str, template: str, variables: dict[str, Any]) -> None:
        self._dispatch("send_email", {"to": to, "template": template, "variables": variables})

    def evaluate_automations(self, lead_id: Any, status: str) -> None:
        self._dispatch("evaluate_automations", {"lead_id": lead_id, "status": status})

    def broadcast(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        self._dispatch("broadcast", {"channel": channel, "event": event, "payload": payload})

    def sync_external(self, customer: dict[str, Any], organization_id: str) -> None:
        self._dispatch("sync_external", {"customer": customer, "organization_id": organization_id})

    def close(self) -> None:
        return None

    def _dispatch(self, effect: str, payload: dict[str, Any]) -> None:
        correlation_id = get_correlation_id()
        try:
            serialized = _jsonable(payload)
            dispatched.append({"effect": effect, "payload": serialized, "correlation_id": correlation_id})
            self._submit(effect, serialized, correlation_id)
        except Exception as exc:
            observe_side_effect(effect, "failed")
            logger.exception("side_effect.dispatch_failed", extra={"effect": effect, "error": str(exc)[:500]})
            return
        observe_side_effect(effect, "dispatched")
        logger.debug("side_effect.dispatched", extra={"effect": effect})

    def _submit(self, effect: str, payload: dict[str, Any], correlation_id: str | None) -> None:
        raise NotImplementedError


class InMemorySideEffectDispatcher(SideEffectDispatcher):
    """Keeps the most recent dispatched calls in memory without running them; used by tests."""

    def __init__(self, history_limit: int = DISPATCH_HISTORY_LIMIT) -> None:
        self.calls: deque[tuple[str, dict[str, Any]]] = deque(maxlen=history_limit)

    def _submit(self, effect: str, payload: dict[str, Any], correlation_id: str | None) -> None:
        self.calls.append((effect, payload))

    def calls_for(self, effect: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.calls if name == effect]

    def clear(self) -> None:
        self.calls.clear()


def _run_task(effect: str, run: Callable[..., Any], payload: dict[str, Any], correlation_id: str | None) -> None:
    token = set_correlation_id(correlation_id)
    try:
        run(**payload)
    except Exception as exc:
        observe_side_effect(effect, "failed")
        logger.exception("side_effect.task_failed", extra={"effect": effect, "error": str(exc)[:500]})
    finally:
        reset_correlation_id(token)


class InProcessSideEffectDispatcher(SideEffectDispatcher):
    """Runs the worker task bodies on a thread pool inside the API process.

    For deployments without a Celery worker. The request only submits the call;
    ``close`` waits for submitted work to finish.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._max_workers = max_workers
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    def _submit(self, effect: str, payload: dict[str, Any], correlation_id: str | None) -> None:
        from app.crm import tasks

        task = getattr(tasks, effect)
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="side-effect")
            self._executor.submit(_run_task, effect, task.run, payload, correlation_id)

    def close(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)


class CelerySideEffectDispatcher(SideEffectDispatcher):
    """Hands each call to a Celery worker through the broker without waiting for it."""

    def __init__(self, celery: Celery | None = None) -> None:
        if celery is None:
            from app.core.celery_app import celery_app

            celery = celery_app
        self._celery = celery

    def _submit(self, effect: str, payload: dict[str, Any], correlation_id: str | None) -> None:
        self._celery.send_task(
            TASK_NAMES[effect],
            kwargs=payload,
            headers={"correlation_id": correlation_id},
        )


def build_side_effect_dispatcher(settings: Settings) -> SideEffectDispatcher:
    """``auto`` uses Celery in prod and runs the tasks in-process elsewhere."""
    backend_choice = settings.side_effects_backend.lower()
    if backend_choice == "auto":
        backend_choice = "celery" if settings.app_env.lower() in {"prod", "production"} else "inprocess"
    if backend_choice == "celery":
        return CelerySideEffectDispatcher()
    if backend_choice == "memory":
        return InMemorySideEffectDispatcher()
    return InProcessSideEffectDispatcher()
