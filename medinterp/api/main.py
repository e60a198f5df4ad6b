from __future__ import annotations

"""
HTTP and WebSocket surface for the medical interpreter backend.

Design intent:
- Keep API orchestration thin and typed.
- Delegate domain logic to session/actions/summary modules.
- Route every action status change through the lifecycle's guarded transitions.
"""

import asyncio
import base64
import binascii
import functools
import json
import logging
from typing import Any, Awaitable, Callable, Literal, Sequence

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from medinterp.actions.lifecycle import ActionLifecycle
from medinterp.internal_core.config import InterpreterConfig, load_config
from medinterp.internal_core.contracts import Action, ActionStatus, Language, Role, Utterance
from medinterp.internal_core.conversation_store import InMemoryConversationStore
from medinterp.internal_core.errors import ActionTransitionError, SessionStateError, TransportError
from medinterp.language.classifier import detect_language
from medinterp.session.controller import SessionController
from medinterp.session.state import SessionNotification
from medinterp.session.transport import OpenAIRealtimeTransport, TransportFactory
from medinterp.summary.summarizer import summarize_conversation

Summarizer = Callable[[Sequence[Utterance]], Awaitable[tuple[str, list[dict[str, Any]]]]]


class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateConversationRequest(_CamelRequest):
    conversation_id: str | None = Field(default=None, min_length=1, max_length=128)


class AddUtteranceRequest(_CamelRequest):
    role: Role
    text: str = Field(min_length=1)
    original_lang: Language | None = None
    translated_text: str | None = None
    audio_url: str | None = None
    timestamp: str | None = None


class CreateActionRequest(_CamelRequest):
    conversation_id: str = Field(min_length=1)
    action_type: str = Field(min_length=1)
    parameters: dict[str, Any] | str | None = None
    status: Literal["detected"] | None = None
    execute: bool = False


class UpdateActionRequest(_CamelRequest):
    action_id: str = Field(min_length=1)
    status: ActionStatus | None = None
    webhook_status: int | None = None
    webhook_response: str | None = None
    error_message: str | None = None
    executed_at: str | None = None
    completed_at: str | None = None


app = FastAPI(title="medinterp backend service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_config() -> InterpreterConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, InterpreterConfig):
        return existing
    created = load_config()
    setattr(app.state, "config", created)
    return created


def _get_store() -> InMemoryConversationStore:
    existing = getattr(app.state, "store", None)
    if isinstance(existing, InMemoryConversationStore):
        return existing
    created = InMemoryConversationStore()
    setattr(app.state, "store", created)
    return created


def _get_lifecycle() -> ActionLifecycle:
    existing = getattr(app.state, "lifecycle", None)
    if isinstance(existing, ActionLifecycle):
        return existing
    created = ActionLifecycle.from_config(_get_store(), _get_config())
    setattr(app.state, "lifecycle", created)
    return created


def _get_transport_factory() -> TransportFactory:
    configured = getattr(app.state, "transport_factory", None)
    if callable(configured):
        return configured
    cfg = _get_config()
    return lambda: OpenAIRealtimeTransport(cfg)


def _get_summarizer() -> Summarizer:
    configured = getattr(app.state, "summarizer", None)
    if callable(configured):
        return configured
    return functools.partial(summarize_conversation, cfg=_get_config())


def _missing_key_detail(exc: KeyError) -> str:
    return str(exc.args[0]) if exc.args else "Not found"


def _decode_parameters(raw: dict[str, Any] | str | None) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    text = raw.strip()
    if not text:
        return {}
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid parameters JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise HTTPException(status_code=400, detail="parameters must be a JSON object.")
    return decoded


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True)


async def _finalize_conversation(conversation_id: str) -> dict[str, Any]:
    store = _get_store()
    try:
        conversation = store.get_conversation(conversation_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=_missing_key_detail(exc)) from exc

    summary, actions = await _get_summarizer()(conversation.utterances)
    finalized = store.finalize_conversation(conversation_id, summary=summary, actions=actions)
    logger.info(
        "conversation_finalized conversation_id=%s utterances=%s actions=%s",
        conversation_id,
        len(finalized.utterances),
        len(actions),
    )
    return {"conversation": _dump(finalized), "summary": summary, "actions": actions}


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/config/check")
async def config_check() -> dict[str, bool]:
    cfg = _get_config()
    return {
        "openai_configured": cfg.openai_api_key is not None,
        "webhook_configured": cfg.webhook_url is not None,
    }


# ----------------------------------------------------------------------
# Conversations
# ----------------------------------------------------------------------


@app.post("/conversations")
async def create_conversation(payload: CreateConversationRequest | None = None) -> dict[str, Any]:
    requested_id = payload.conversation_id if payload is not None else None
    try:
        conversation = _get_store().create_conversation(requested_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.info("conversation_created conversation_id=%s", conversation.id)
    return {"conversation": _dump(conversation)}


@app.get("/conversations")
async def list_conversations() -> dict[str, Any]:
    return {"conversations": [_dump(item) for item in _get_store().list_conversations()]}


@app.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str) -> dict[str, Any]:
    try:
        conversation = _get_store().get_conversation(conversation_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=_missing_key_detail(exc)) from exc
    return {"conversation": _dump(conversation)}


@app.post("/conversations/{conversation_id}/utterances")
async def add_utterance(conversation_id: str, payload: AddUtteranceRequest) -> dict[str, Any]:
    original_lang = payload.original_lang or detect_language(payload.text)
    try:
        utterance = _get_store().add_utterance(
            conversation_id,
            role=payload.role,
            text=payload.text,
            original_lang=original_lang,
            translated_text=payload.translated_text,
            audio_url=payload.audio_url,
            timestamp=payload.timestamp,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=_missing_key_detail(exc)) from exc
    return {"utterance": _dump(utterance)}


@app.post("/conversations/{conversation_id}/end")
async def end_conversation(conversation_id: str) -> dict[str, Any]:
    return await _finalize_conversation(conversation_id)


# ----------------------------------------------------------------------
# Actions
# ----------------------------------------------------------------------


@app.post("/actions")
async def create_action(payload: CreateActionRequest) -> dict[str, Any]:
    parameters = _decode_parameters(payload.parameters)
    lifecycle = _get_lifecycle()
    try:
        action_id = await lifecycle.submit(
            payload.action_type,
            parameters,
            payload.conversation_id,
            execute=False,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=_missing_key_detail(exc)) from exc

    action: Action
    if payload.execute:
        action = await lifecycle.execute(action_id)
    else:
        action = _get_store().get_action(action_id)
    return {"success": True, "actionId": action_id, "action": _dump(action)}


@app.get("/actions")
async def list_actions(
    conversation_id: str | None = Query(default=None, alias="conversationId"),
    status: ActionStatus | None = Query(default=None),
) -> dict[str, Any]:
    actions = _get_store().list_actions(conversation_id=conversation_id or None, status=status)
    return {"actions": [_dump(item) for item in actions]}


@app.patch("/actions")
async def update_action(payload: UpdateActionRequest) -> dict[str, Any]:
    fields = payload.model_dump(exclude_none=True, exclude={"action_id", "status"})
    try:
        action = _get_lifecycle().apply_update(payload.action_id, status=payload.status, **fields)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=_missing_key_detail(exc)) from exc
    except ActionTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "action": _dump(action)}


@app.post("/actions/{action_id}/execute")
async def execute_action(action_id: str) -> dict[str, Any]:
    try:
        action = await _get_lifecycle().execute(action_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=_missing_key_detail(exc)) from exc
    return {"success": action.status == "completed", "action": _dump(action)}


# ----------------------------------------------------------------------
# Live session socket
# ----------------------------------------------------------------------


def _notification_message(notification: SessionNotification) -> dict[str, Any]:
    return {"type": notification.type, "payload": notification.payload}


async def _pump_outbox(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    # Single writer: acks and controller notifications share one ordered queue.
    while True:
        message = await outbox.get()
        try:
            await websocket.send_json(message)
        finally:
            outbox.task_done()


async def _flush_outbox(outbox: asyncio.Queue, sender: asyncio.Task, timeout_sec: float = 5.0) -> None:
    if sender.done():
        return
    pending = asyncio.ensure_future(outbox.join())
    try:
        await asyncio.wait({pending, sender}, timeout=timeout_sec, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending.cancel()


@app.websocket("/ws/session")
async def session_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    store = _get_store()
    conversation_id = str(websocket.query_params.get("conversation_id", "")).strip()
    if conversation_id:
        try:
            store.get_conversation(conversation_id)
        except KeyError:
            await websocket.send_json({"type": "error", "detail": "unknown_conversation"})
            await websocket.close(code=1008)
            return
    else:
        conversation_id = store.create_conversation().id

    outbox: asyncio.Queue = asyncio.Queue()
    controller = SessionController(
        conversation_id,
        store=store,
        lifecycle=_get_lifecycle(),
        transport_factory=_get_transport_factory(),
    )
    unsubscribe = controller.subscribe(lambda item: outbox.put_nowait(_notification_message(item)))
    sender = asyncio.create_task(_pump_outbox(websocket, outbox))
    reader: asyncio.Task | None = None
    outbox.put_nowait({"type": "session", "conversationId": conversation_id})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                outbox.put_nowait({"type": "error", "detail": "invalid_json"})
                continue
            if not isinstance(payload, dict):
                outbox.put_nowait({"type": "error", "detail": "invalid_message"})
                continue

            message_type = str(payload.get("type", "")).strip().lower()
            try:
                if message_type == "start":
                    try:
                        await controller.connect()
                    except TransportError:
                        # The controller already pushed the error notification;
                        # the socket stays open so the client can retry.
                        continue
                    reader = asyncio.create_task(controller.run())
                    outbox.put_nowait({"type": "ack_start", "conversationId": conversation_id})
                    continue

                if message_type == "audio":
                    data_b64 = str(payload.get("data_b64", "")).strip()
                    if not data_b64:
                        outbox.put_nowait({"type": "error", "detail": "missing_data_b64"})
                        continue
                    try:
                        chunk = base64.b64decode(data_b64, validate=True)
                    except (binascii.Error, ValueError):
                        outbox.put_nowait({"type": "error", "detail": "invalid_base64"})
                        continue
                    forwarded = await controller.send_audio(chunk)
                    outbox.put_nowait({"type": "ack_audio", "forwarded": forwarded})
                    continue

                if message_type == "stop":
                    await controller.stop_recording()
                    outbox.put_nowait({"type": "ack_stop"})
                    continue

                if message_type == "resume":
                    await controller.start_recording()
                    outbox.put_nowait({"type": "ack_resume"})
                    continue

                if message_type == "end":
                    await controller.disconnect()
                    await _get_lifecycle().drain(conversation_id)
                    result = await _finalize_conversation(conversation_id)
                    outbox.put_nowait({"type": "ended", **result})
                    await _flush_outbox(outbox, sender)
                    await websocket.close()
                    break
            except (SessionStateError, TransportError) as exc:
                outbox.put_nowait({"type": "error", "detail": str(exc)})
                continue

            outbox.put_nowait({"type": "error", "detail": "unknown_message_type"})
    except WebSocketDisconnect:
        logger.info("session_socket_closed conversation_id=%s", conversation_id)
    finally:
        await controller.disconnect()
        unsubscribe()
        if reader is not None:
            reader.cancel()
        sender.cancel()


if __name__ == "__main__":
    import uvicorn

    from medinterp.internal_core.config import configure_logging

    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
