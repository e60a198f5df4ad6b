from __future__ import annotations

"""
Closed event vocabulary consumed from the realtime speech-translation transport.

Design intent:
- Map loosely-typed wire payloads onto a fixed set of typed variants.
- Keep partial function-call payloads distinct from complete ones.
- Route anything unrecognized or malformed to `UnknownEvent` instead of raising.
"""

import json
import logging
from typing import Any, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class _EventModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class TranscriptionCompleted(_EventModel):
    kind: Literal["transcription_completed"] = "transcription_completed"
    transcript: str = ""
    item_id: str | None = None


class TranslationCompleted(_EventModel):
    kind: Literal["translation_completed"] = "translation_completed"
    transcript: str = ""
    response_id: str | None = None


class FunctionCallDelta(_EventModel):
    kind: Literal["function_call_delta"] = "function_call_delta"
    name: str | None = None
    call_id: str | None = None
    arguments: str = ""


class FunctionCallDone(_EventModel):
    kind: Literal["function_call_done"] = "function_call_done"
    name: str | None = None
    call_id: str | None = None
    arguments: str = ""


class ToolCall(_EventModel):
    call_id: str | None = None
    name: str | None = None
    arguments: str = ""


class ToolCalls(_EventModel):
    kind: Literal["tool_calls"] = "tool_calls"
    calls: list[ToolCall] = Field(default_factory=list)


class ErrorEvent(_EventModel):
    kind: Literal["error"] = "error"
    message: str = ""
    code: str | None = None


class UnknownEvent(_EventModel):
    kind: Literal["unknown"] = "unknown"
    event_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


TransportEvent = Union[
    TranscriptionCompleted,
    TranslationCompleted,
    FunctionCallDelta,
    FunctionCallDone,
    ToolCalls,
    ErrorEvent,
    UnknownEvent,
]


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _arguments_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _parse_transcription(raw: dict[str, Any]) -> TransportEvent:
    return TranscriptionCompleted(
        transcript=str(raw.get("transcript") or ""),
        item_id=_opt_str(raw.get("item_id")),
    )


def _parse_translation(raw: dict[str, Any]) -> TransportEvent:
    return TranslationCompleted(
        transcript=str(raw.get("transcript") or ""),
        response_id=_opt_str(raw.get("response_id")),
    )


def _parse_function_delta(raw: dict[str, Any]) -> TransportEvent:
    # The beta API names the fragment `delta`; older payloads used `arguments`.
    fragment = raw.get("delta") if raw.get("delta") is not None else raw.get("arguments")
    return FunctionCallDelta(
        name=_opt_str(raw.get("name")),
        call_id=_opt_str(raw.get("call_id")),
        arguments=_arguments_text(fragment),
    )


def _parse_function_done(raw: dict[str, Any]) -> TransportEvent:
    return FunctionCallDone(
        name=_opt_str(raw.get("name")),
        call_id=_opt_str(raw.get("call_id")),
        arguments=_arguments_text(raw.get("arguments")),
    )


def _parse_output_item(raw: dict[str, Any]) -> TransportEvent:
    # Only function-call items matter here: they carry the name that the
    # later `arguments.done` event omits.
    item = raw.get("item") if isinstance(raw.get("item"), dict) else {}
    if item.get("type") != "function_call":
        return UnknownEvent(event_type=str(raw.get("type", "")), payload=raw)
    return FunctionCallDelta(
        name=_opt_str(item.get("name")),
        call_id=_opt_str(item.get("call_id")),
        arguments=_arguments_text(item.get("arguments")),
    )


def _parse_tool_calls(raw: dict[str, Any]) -> TransportEvent:
    calls: list[ToolCall] = []
    for item in raw.get("tool_calls") or []:
        if not isinstance(item, dict):
            continue
        function = item.get("function") if isinstance(item.get("function"), dict) else {}
        calls.append(
            ToolCall(
                call_id=_opt_str(item.get("id") or item.get("call_id")),
                name=_opt_str(function.get("name")),
                arguments=_arguments_text(function.get("arguments")),
            )
        )
    return ToolCalls(calls=calls)


def _parse_error(raw: dict[str, Any]) -> TransportEvent:
    error = raw.get("error")
    if isinstance(error, dict):
        message = error.get("message") or ""
        code = error.get("code") or error.get("type")
    else:
        message = raw.get("message") or (error if isinstance(error, str) else "")
        code = raw.get("code")
    return ErrorEvent(message=str(message or "Unknown error"), code=_opt_str(code))


_WIRE_PARSERS: dict[str, Callable[[dict[str, Any]], TransportEvent]] = {
    "conversation.item.input_audio_transcription.completed": _parse_transcription,
    "response.audio_transcript.done": _parse_translation,
    "response.output_audio_transcript.done": _parse_translation,
    "response.function_call_delta": _parse_function_delta,
    "response.function_call_arguments.delta": _parse_function_delta,
    "response.output_item.added": _parse_output_item,
    "response.function_call_done": _parse_function_done,
    "response.function_call_arguments.done": _parse_function_done,
    "response.tool_calls": _parse_tool_calls,
    "error": _parse_error,
}


def parse_transport_event(raw: Any) -> TransportEvent:
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("transport_event_not_json size=%s", len(raw))
            return UnknownEvent(event_type="invalid_json")
    if not isinstance(raw, dict):
        return UnknownEvent(event_type=type(raw).__name__)

    event_type = str(raw.get("type", "")).strip()
    parser = _WIRE_PARSERS.get(event_type)
    if parser is None:
        return UnknownEvent(event_type=event_type, payload=raw)
    try:
        return parser(raw)
    except (ValidationError, TypeError, ValueError) as exc:
        logger.warning("transport_event_malformed type=%s error=%s", event_type, exc)
        return UnknownEvent(event_type=event_type, payload=raw)
