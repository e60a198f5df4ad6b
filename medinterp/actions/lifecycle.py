from __future__ import annotations

"""
Action lifecycle state machine.

    detected --execute--> executing --2xx--> completed
    executing --non-2xx / network error / no endpoint--> failed

Design intent:
- Persist every status change through the store's compare-and-set transition.
- Allow at most one in-flight execution per action id (marker set, no global lock).
- Keep webhook faults terminal for the action and invisible to the session loop.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from medinterp.actions.webhook import Dispatcher, WebhookDispatcher, WebhookResult, build_webhook_payload
from medinterp.internal_core.config import InterpreterConfig
from medinterp.internal_core.contracts import KNOWN_ACTION_TYPES, Action, utc_now_iso
from medinterp.internal_core.conversation_store import InMemoryConversationStore
from medinterp.internal_core.errors import ActionTransitionError, WebhookDispatchError

logger = logging.getLogger(__name__)

WEBHOOK_NOT_CONFIGURED = "Webhook URL not configured"

ActionListener = Callable[[Action], Any]


class ActionLifecycle:
    def __init__(
        self,
        store: InMemoryConversationStore,
        dispatcher: Dispatcher,
        *,
        webhook_url: Optional[str],
        max_retries: int = 0,
        retry_backoff_sec: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._webhook_url = (webhook_url or "").strip() or None
        self._max_retries = max(0, int(max_retries))
        self._retry_backoff_sec = max(0.0, float(retry_backoff_sec))
        self._sleep = sleep
        self._in_flight: set[str] = set()
        self._tasks: dict[asyncio.Task, str] = {}
        self._listeners: list[ActionListener] = []

    @classmethod
    def from_config(
        cls,
        store: InMemoryConversationStore,
        cfg: InterpreterConfig,
        dispatcher: Optional[Dispatcher] = None,
    ) -> "ActionLifecycle":
        return cls(
            store,
            dispatcher or WebhookDispatcher(timeout_sec=cfg.WEBHOOK_TIMEOUT_SECONDS),
            webhook_url=cfg.webhook_url,
            max_retries=cfg.WEBHOOK_MAX_RETRIES,
            retry_backoff_sec=cfg.WEBHOOK_RETRY_BACKOFF_SEC,
        )

    @property
    def webhook_configured(self) -> bool:
        return self._webhook_url is not None

    def is_in_flight(self, action_id: str) -> bool:
        return action_id in self._in_flight

    def add_listener(self, listener: ActionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ActionListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, action: Action) -> None:
        for listener in list(self._listeners):
            try:
                listener(action)
            except Exception:
                logger.warning("action_listener_failed action_id=%s", action.id, exc_info=True)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit(
        self,
        action_type: str,
        parameters: Optional[dict[str, Any]],
        conversation_id: str,
        *,
        execute: bool = True,
    ) -> str:
        if action_type not in KNOWN_ACTION_TYPES:
            logger.info("action_type_unrecognized action_type=%s", action_type)
        action = self._store.create_action(conversation_id, action_type, parameters or {})
        logger.info(
            "action_detected action_id=%s type=%s conversation_id=%s",
            action.id,
            action.action_type,
            conversation_id,
        )
        self._notify(action)
        if execute:
            self._spawn(action.id, conversation_id)
        return action.id

    async def execute(self, action_id: str) -> Action:
        if action_id in self._in_flight:
            logger.info("action_execute_skipped_in_flight action_id=%s", action_id)
            return self._store.get_action(action_id)

        current = self._store.get_action(action_id)
        if current.status != "detected":
            logger.info("action_execute_skipped action_id=%s status=%s", action_id, current.status)
            return current

        self._in_flight.add(action_id)
        try:
            return await self._run(current)
        except ActionTransitionError as exc:
            # Another writer moved the record first; its terminal state stands.
            logger.warning("action_transition_lost action_id=%s detail=%s", action_id, exc)
            return self._store.get_action(action_id)
        finally:
            self._in_flight.discard(action_id)

    def apply_update(self, action_id: str, *, status: Optional[str] = None, **fields: Any) -> Action:
        current = self._store.get_action(action_id)
        if status and status != current.status:
            updated = self._store.transition_action(
                action_id,
                expected=current.status,
                target=status,
                **fields,
            )
        elif fields:
            updated = self._store.update_action(action_id, **fields)
        else:
            return current
        self._notify(updated)
        return updated

    async def drain(self, conversation_id: Optional[str] = None) -> None:
        """Wait for background executions; only one conversation's when an id is given."""
        while True:
            pending = [
                task
                for task, owner in self._tasks.items()
                if conversation_id is None or owner == conversation_id
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(self, action_id: str, conversation_id: str) -> None:
        task = asyncio.create_task(self.execute(action_id), name=f"action-execute-{action_id}")
        self._tasks[task] = conversation_id
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("action_execute_task_failed name=%s", task.get_name(), exc_info=exc)

    def _transition(self, action: Action, target: str, **fields: Any) -> Action:
        updated = self._store.transition_action(
            action.id,
            expected=action.status,
            target=target,
            **fields,
        )
        logger.info("action_transition action_id=%s %s->%s", action.id, action.status, target)
        self._notify(updated)
        return updated

    def _fail(self, action: Action, message: str, result: Optional[WebhookResult] = None) -> Action:
        fields: dict[str, Any] = {"error_message": message}
        if result is not None:
            fields["webhook_status"] = result.http_status
            fields["webhook_response"] = result.response_body
        return self._transition(action, "failed", **fields)

    def _complete(self, action: Action, result: WebhookResult) -> Action:
        completed = self._transition(
            action,
            "completed",
            completed_at=utc_now_iso(),
            webhook_status=result.http_status,
            webhook_response=result.response_body,
        )
        self._record_execution_note(completed)
        return completed

    def _record_execution_note(self, action: Action) -> None:
        text = (
            f"Action executed: {action.action_type} with parameters: "
            f"{json.dumps(action.parameters, ensure_ascii=False)}"
        )
        try:
            self._store.add_utterance(
                action.conversation_id,
                role="system",
                text=text,
                original_lang="en",
            )
        except Exception:
            logger.warning("action_note_save_failed action_id=%s", action.id, exc_info=True)

    def _backoff(self, attempt: int) -> float:
        return self._retry_backoff_sec * (2 ** max(0, attempt - 1))

    async def _retry_pause(self, action: Action, attempt: int) -> Action:
        action = self._store.update_action(action.id, retry_count=attempt)
        delay = self._backoff(attempt)
        logger.info("action_webhook_retry action_id=%s attempt=%s delay_sec=%.2f", action.id, attempt, delay)
        await self._sleep(delay)
        return action

    async def _run(self, action: Action) -> Action:
        url = self._webhook_url
        action = self._transition(action, "executing", executed_at=utc_now_iso(), webhook_url=url)
        if url is None:
            logger.warning("action_webhook_not_configured action_id=%s", action.id)
            return self._fail(action, WEBHOOK_NOT_CONFIGURED)

        payload = build_webhook_payload(action)
        attempt = 0
        while True:
            try:
                result = await self._dispatcher.dispatch(url, payload)
            except WebhookDispatchError as exc:
                if attempt < self._max_retries:
                    attempt += 1
                    action = await self._retry_pause(action, attempt)
                    continue
                return self._fail(action, f"Webhook request failed: {exc}")
            except Exception as exc:
                logger.exception("action_webhook_unexpected_error action_id=%s", action.id)
                return self._fail(action, str(exc) or type(exc).__name__)

            if result.ok:
                return self._complete(action, result)
            if result.http_status >= 500 and attempt < self._max_retries:
                attempt += 1
                action = await self._retry_pause(action, attempt)
                continue
            reason = f": {result.reason}" if result.reason else ""
            return self._fail(
                action,
                f"Webhook failed with status {result.http_status}{reason}",
                result,
            )
