from __future__ import annotations

"""
Duplex transport to the realtime speech-translation service.

Design intent:
- Hide the websocket client behind a small open/send/events/close surface.
- Perform the one-time handshake (auth + session configuration) in `open`.
- Convert connection-level failures into `TransportError`; never reconnect here.
"""

import base64
import json
import logging
from typing import Any, AsyncIterator, Callable, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from medinterp.internal_core.config import InterpreterConfig
from medinterp.internal_core.contracts import KNOWN_ACTION_TYPES
from medinterp.internal_core.errors import TransportError

logger = logging.getLogger(__name__)

DETECT_ACTION_TOOL_NAME = "detect_medical_action"

BUFFER_CLEAR_EVENT: dict[str, Any] = {"type": "input_audio_buffer.clear"}
BUFFER_COMMIT_EVENT: dict[str, Any] = {"type": "input_audio_buffer.commit"}

INTERPRETER_INSTRUCTIONS = (
    "You are a medical interpreter between an English-speaking clinician and a "
    "Spanish-speaking patient. Translate each clear utterance into the other language: "
    "Spanish input gets an English reply, English input gets a Spanish reply. "
    "Reply only with the translation, keep medical terminology accurate, and stay "
    "silent on noise, filler sounds or unclear audio. When the clinician orders lab "
    f"work, a follow-up, a prescription or a referral, call {DETECT_ACTION_TOOL_NAME}."
)


def detect_action_tool() -> dict[str, Any]:
    return {
        "type": "function",
        "name": DETECT_ACTION_TOOL_NAME,
        "description": "Detect and extract medical actions from conversation",
        "parameters": {
            "type": "object",
            "properties": {
                "action_type": {"type": "string", "enum": list(KNOWN_ACTION_TYPES)},
                "parameters": {
                    "type": "object",
                    "description": "Action-specific parameters",
                },
            },
            "required": ["action_type", "parameters"],
        },
    }


def session_update_event(cfg: InterpreterConfig) -> dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "modalities": ["text", "audio"],
            "instructions": INTERPRETER_INSTRUCTIONS,
            "voice": cfg.MEDINTERP_REALTIME_VOICE,
            "input_audio_transcription": {"model": "whisper-1"},
            "turn_detection": {
                "type": "server_vad",
                "threshold": 0.7,
                "prefix_padding_ms": 500,
                "silence_duration_ms": 1000,
            },
            "tools": [detect_action_tool()],
            "tool_choice": "auto",
        },
    }


def audio_append_event(chunk: bytes) -> dict[str, Any]:
    return {
        "type": "input_audio_buffer.append",
        "audio": base64.b64encode(chunk).decode("ascii"),
    }


class RealtimeTransport(Protocol):
    async def open(self) -> None: ...

    async def send(self, event: dict[str, Any]) -> None: ...

    def events(self) -> AsyncIterator[Any]: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[], RealtimeTransport]


class OpenAIRealtimeTransport:
    def __init__(self, cfg: InterpreterConfig, *, open_timeout_sec: float = 10.0) -> None:
        self._cfg = cfg
        self._open_timeout_sec = float(open_timeout_sec)
        self._ws: ClientConnection | None = None

    async def open(self) -> None:
        api_key = self._cfg.openai_api_key
        if not api_key:
            raise TransportError("OpenAI API key not configured")

        endpoint = self._cfg.realtime_endpoint()
        try:
            self._ws = await connect(
                endpoint,
                additional_headers={
                    "Authorization": f"Bearer {api_key}",
                    "OpenAI-Beta": "realtime=v1",
                },
                open_timeout=self._open_timeout_sec,
                max_size=None,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise TransportError(f"Failed to connect to realtime service: {exc}") from exc

        logger.info("realtime_transport_open model=%s", self._cfg.MEDINTERP_REALTIME_MODEL)
        await self.send(session_update_event(self._cfg))

    async def send(self, event: dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportError("Realtime transport is not open")
        try:
            await self._ws.send(json.dumps(event))
        except WebSocketException as exc:
            raise TransportError(f"Realtime send failed: {exc}") from exc

    async def events(self) -> AsyncIterator[Any]:
        if self._ws is None:
            raise TransportError("Realtime transport is not open")
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosedOK:
            return
        except WebSocketException as exc:
            raise TransportError(f"Realtime connection lost: {exc}") from exc

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is None:
            return
        try:
            await ws.close()
        except WebSocketException:
            logger.debug("realtime_transport_close_failed", exc_info=True)
