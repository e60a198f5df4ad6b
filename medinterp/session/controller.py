from __future__ import annotations

"""
Dialogue session controller for one live interpreted conversation.

Design intent:
- Own the transport lifecycle: disconnected -> connecting -> connected -> disconnected.
- Process transport events strictly one at a time, in arrival order.
- Apply noise/command/language classification before anything is stored.
- Forward parsed candidate actions to the lifecycle; never execute them here.
- Keep persistence and parse faults local (logged); only transport faults reach the user.
"""

import asyncio
import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from medinterp.actions.lifecycle import ActionLifecycle
from medinterp.internal_core.contracts import Action, Language, Utterance
from medinterp.internal_core.conversation_store import InMemoryConversationStore
from medinterp.internal_core.errors import SessionStateError, TransportError
from medinterp.language.classifier import opposite_language, role_for_language, score_language
from medinterp.language.commands import is_repeat_command
from medinterp.language.noise import is_meaningful_speech
from medinterp.session.events import (
    ErrorEvent,
    FunctionCallDelta,
    FunctionCallDone,
    ToolCalls,
    TranscriptionCompleted,
    TranslationCompleted,
    TransportEvent,
    UnknownEvent,
    parse_transport_event,
)
from medinterp.session.state import SessionNotification, SessionState
from medinterp.session.transport import (
    BUFFER_CLEAR_EVENT,
    BUFFER_COMMIT_EVENT,
    DETECT_ACTION_TOOL_NAME,
    RealtimeTransport,
    TransportFactory,
    audio_append_event,
)

logger = logging.getLogger(__name__)

_RECOVERABLE_ERROR_RE = re.compile(r"buffer too small", flags=re.IGNORECASE)

PlaybackCallback = Callable[[str, Language], Any]
NotificationListener = Callable[[SessionNotification], None]


@dataclass(frozen=True)
class CandidateAction:
    action_type: str
    parameters: dict[str, Any] = field(default_factory=dict)


def parse_candidate_action(arguments: str | None) -> CandidateAction | None:
    """
    Parse complete `detect_medical_action` arguments.

    Returns None (after logging) for anything that is not a JSON object with
    a non-empty `action_type`; a bad payload must never stop the session.
    """
    raw = str(arguments or "").strip()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("action_arguments_unparseable size=%s", len(raw))
        return None
    if not isinstance(data, dict):
        logger.warning("action_arguments_not_object type=%s", type(data).__name__)
        return None

    action_type = str(data.get("action_type") or data.get("actionType") or "").strip()
    if not action_type:
        logger.warning("action_arguments_missing_type keys=%s", sorted(data))
        return None

    parameters = data.get("parameters")
    if isinstance(parameters, str):
        try:
            parameters = json.loads(parameters)
        except json.JSONDecodeError:
            logger.warning("action_parameters_unparseable action_type=%s", action_type)
            return None
    if parameters is None:
        parameters = {}
    if not isinstance(parameters, dict):
        logger.warning("action_parameters_not_object action_type=%s", action_type)
        return None
    return CandidateAction(action_type=action_type, parameters=parameters)


class SessionController:
    def __init__(
        self,
        conversation_id: str,
        *,
        store: InMemoryConversationStore,
        lifecycle: ActionLifecycle,
        transport_factory: TransportFactory,
        playback: Optional[PlaybackCallback] = None,
    ) -> None:
        self._conversation_id = conversation_id
        self._store = store
        self._lifecycle = lifecycle
        self._transport_factory = transport_factory
        self._playback = playback
        self._transport: RealtimeTransport | None = None
        self._state = SessionState(conversation_id=conversation_id)
        self._last_speaker_lang: Language | None = None
        self._call_names: dict[str, str] = {}
        self._handled_calls: set[str] = set()
        self._listeners: list[NotificationListener] = []
        self._watching_actions = False

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    def snapshot(self) -> SessionState:
        return self._state

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _emit(self, kind: str, payload: dict[str, Any]) -> None:
        notification = SessionNotification(type=kind, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.warning("session_listener_failed type=%s", kind, exc_info=True)

    def _set_state(self, **changes: Any) -> None:
        updated = self._state.model_copy(update=changes)
        if updated == self._state:
            return
        self._state = updated
        self._emit("state", updated.model_dump())

    def _on_action_update(self, action: Action) -> None:
        if action.conversation_id != self._conversation_id:
            return
        self._emit("action", action.model_dump(by_alias=True))

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, *, auto_record: bool = True) -> None:
        if self._state.phase != "disconnected":
            raise SessionStateError("connect", self._state.phase)

        self._set_state(phase="connecting", error=None)
        transport: RealtimeTransport | None = None
        try:
            transport = self._transport_factory()
            await transport.open()
        except Exception as exc:
            if transport is not None:
                await self._close_transport(transport)
            message = f"Connection failed: {exc}"
            logger.error("session_connect_failed conversation_id=%s error=%s", self._conversation_id, exc)
            self._set_state(phase="disconnected", recording=False, error=message)
            self._emit("error", {"message": message, "fatal": True})
            if isinstance(exc, TransportError):
                raise
            raise TransportError(message) from exc

        self._transport = transport
        if not self._watching_actions:
            self._lifecycle.add_listener(self._on_action_update)
            self._watching_actions = True
        self._set_state(phase="connected")
        logger.info("session_connected conversation_id=%s", self._conversation_id)
        if auto_record:
            await self.start_recording()

    async def disconnect(self, *, error: Optional[str] = None) -> None:
        transport = self._transport
        self._transport = None
        if self._watching_actions:
            self._lifecycle.remove_listener(self._on_action_update)
            self._watching_actions = False
        changes: dict[str, Any] = {"phase": "disconnected", "recording": False}
        if error is not None:
            changes["error"] = error
        self._set_state(**changes)
        if transport is not None:
            await self._close_transport(transport)
            logger.info("session_disconnected conversation_id=%s", self._conversation_id)

    async def _close_transport(self, transport: RealtimeTransport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.warning("transport_close_failed conversation_id=%s", self._conversation_id, exc_info=True)

    async def _fatal(self, message: str) -> None:
        logger.error("session_fatal conversation_id=%s error=%s", self._conversation_id, message)
        self._emit("error", {"message": message, "fatal": True})
        await self.disconnect(error=message)

    async def _send(self, event: dict[str, Any]) -> None:
        transport = self._transport
        if transport is None:
            raise SessionStateError("send", self._state.phase)
        try:
            await transport.send(event)
        except TransportError as exc:
            await self._fatal(f"Connection lost: {exc}")
            raise

    def _require_connected(self, operation: str) -> None:
        if self._state.phase != "connected" or self._transport is None:
            raise SessionStateError(operation, self._state.phase)

    async def start_recording(self) -> None:
        self._require_connected("start recording")
        await self._send(BUFFER_CLEAR_EVENT)
        self._set_state(recording=True)

    async def stop_recording(self) -> None:
        self._require_connected("stop recording")
        self._set_state(recording=False)
        await self._send(BUFFER_COMMIT_EVENT)

    async def send_audio(self, chunk: bytes) -> bool:
        if not chunk or self._state.phase != "connected" or not self._state.recording:
            return False
        await self._send(audio_append_event(chunk))
        return True

    async def run(self) -> None:
        """Consume transport events until disconnect or a fatal transport fault."""
        self._require_connected("run")
        transport = self._transport
        try:
            async for raw in transport.events():
                if self._transport is not transport:
                    break
                await self.handle_event(parse_transport_event(raw))
        except TransportError as exc:
            if self._transport is transport:
                await self._fatal(f"Connection lost: {exc}")
            return

        if self._transport is transport:
            await self._fatal("Connection closed by realtime service")

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_event(self, event: TransportEvent) -> None:
        if self._state.phase != "connected":
            logger.debug("event_dropped_not_connected kind=%s", event.kind)
            return

        if isinstance(event, TranscriptionCompleted):
            await self._on_transcript(event.transcript)
        elif isinstance(event, TranslationCompleted):
            await self._on_translation(event.transcript)
        elif isinstance(event, FunctionCallDelta):
            self._on_function_delta(event)
        elif isinstance(event, FunctionCallDone):
            await self._on_function_call(event.name, event.call_id, event.arguments)
        elif isinstance(event, ToolCalls):
            for call in event.calls:
                await self._on_function_call(call.name, call.call_id, call.arguments)
        elif isinstance(event, ErrorEvent):
            await self._on_error(event)
        elif isinstance(event, UnknownEvent):
            if "function" in event.event_type or "tool" in event.event_type:
                logger.info("unhandled_tool_event type=%s", event.event_type)
            else:
                logger.debug("unhandled_event type=%s", event.event_type)
        else:
            logger.warning("unexpected_event_variant type=%s", type(event).__name__)

    async def _on_transcript(self, text: str) -> None:
        if not is_meaningful_speech(text):
            logger.debug("transcript_dropped_noise size=%s", len(text or ""))
            return

        if is_repeat_command(text):
            await self._replay_last_translation(score_language(text).language)
            return

        score = score_language(text)
        role = role_for_language(score.language)
        self._last_speaker_lang = score.language
        logger.info(
            "transcript_classified lang=%s role=%s reason=%s tokens=%s",
            score.language,
            role,
            score.reason,
            score.token_count,
        )
        await self._persist(role=role, text=text, original_lang=score.language)

    async def _on_translation(self, text: str) -> None:
        if not is_meaningful_speech(text):
            logger.debug("translation_dropped_noise size=%s", len(text or ""))
            return

        if self._last_speaker_lang is None:
            language: Language = "es"
        else:
            language = opposite_language(self._last_speaker_lang)
        self._set_state(last_translation=text)
        await self._persist(role="system", text=text, original_lang=language)

    async def _replay_last_translation(self, request_lang: Language) -> None:
        cached = self._state.last_translation
        if not cached:
            logger.info("repeat_requested_without_translation conversation_id=%s", self._conversation_id)
            return

        logger.info("repeat_requested conversation_id=%s lang=%s", self._conversation_id, request_lang)
        self._emit("playback", {"text": cached, "lang": request_lang})
        if self._playback is None:
            return
        try:
            result = self._playback(cached, request_lang)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("playback_failed conversation_id=%s", self._conversation_id, exc_info=True)

    async def _persist(self, *, role: str, text: str, original_lang: Language) -> Optional[Utterance]:
        try:
            utterance = await asyncio.to_thread(
                self._store.add_utterance,
                self._conversation_id,
                role=role,
                text=text,
                original_lang=original_lang,
            )
        except Exception:
            logger.warning(
                "utterance_save_failed conversation_id=%s role=%s",
                self._conversation_id,
                role,
                exc_info=True,
            )
            self._emit(
                "utterance",
                {"role": role, "text": text, "originalLang": original_lang, "persisted": False},
            )
            return None

        self._emit("utterance", {**utterance.model_dump(by_alias=True), "persisted": True})
        return utterance

    def _on_function_delta(self, event: FunctionCallDelta) -> None:
        # Partial arguments are never acted on; only the call name is remembered.
        if event.call_id and event.name:
            self._call_names[event.call_id] = event.name

    async def _on_function_call(
        self,
        name: Optional[str],
        call_id: Optional[str],
        arguments: str,
    ) -> None:
        resolved = name or (self._call_names.get(call_id) if call_id else None)
        if resolved is not None and resolved != DETECT_ACTION_TOOL_NAME:
            logger.info("function_call_ignored name=%s", resolved)
            return
        if call_id and call_id in self._handled_calls:
            logger.debug("function_call_duplicate call_id=%s", call_id)
            return

        candidate = parse_candidate_action(arguments)
        if candidate is None:
            return
        if call_id:
            self._handled_calls.add(call_id)

        try:
            action_id = await self._lifecycle.submit(
                candidate.action_type,
                candidate.parameters,
                self._conversation_id,
            )
        except Exception:
            logger.warning(
                "action_submit_failed conversation_id=%s action_type=%s",
                self._conversation_id,
                candidate.action_type,
                exc_info=True,
            )
            return
        logger.info("candidate_action_forwarded action_id=%s type=%s", action_id, candidate.action_type)

    async def _on_error(self, event: ErrorEvent) -> None:
        if _RECOVERABLE_ERROR_RE.search(event.message or ""):
            logger.info("transport_error_recoverable code=%s message=%s", event.code, event.message)
            return
        await self._fatal(f"API Error: {event.message or 'Unknown error'}")
