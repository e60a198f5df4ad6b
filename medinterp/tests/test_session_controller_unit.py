import asyncio
import base64
import json
from typing import Any

import pytest

from medinterp.actions.lifecycle import WEBHOOK_NOT_CONFIGURED, ActionLifecycle
from medinterp.actions.webhook import WebhookResult
from medinterp.internal_core.conversation_store import InMemoryConversationStore
from medinterp.internal_core.errors import SessionStateError, TransportError
from medinterp.session.controller import SessionController, parse_candidate_action
from medinterp.session.events import parse_transport_event
from medinterp.session.transport import BUFFER_CLEAR_EVENT, BUFFER_COMMIT_EVENT


class FakeTransport:
    def __init__(self, frames: list[Any] | None = None, open_error: Exception | None = None) -> None:
        self.frames = list(frames or [])
        self.open_error = open_error
        self.sent: list[dict[str, Any]] = []
        self.close_calls = 0

    async def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error

    async def send(self, event: dict[str, Any]) -> None:
        self.sent.append(event)

    async def events(self):
        for frame in self.frames:
            yield frame

    async def close(self) -> None:
        self.close_calls += 1


class OkDispatcher:
    def __init__(self, gate: asyncio.Event | None = None) -> None:
        self.gate = gate
        self.calls: list[dict[str, Any]] = []

    async def dispatch(self, url: str, payload: dict[str, Any]) -> WebhookResult:
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        return WebhookResult(200, "ok")


def _make(
    transport: FakeTransport | None = None,
    *,
    webhook_url: str | None = None,
    conversation: bool = True,
    dispatcher: OkDispatcher | None = None,
):
    store = InMemoryConversationStore()
    conversation_id = store.create_conversation("conv_1").id if conversation else "conv_missing"
    dispatcher = dispatcher or OkDispatcher()
    lifecycle = ActionLifecycle(store, dispatcher, webhook_url=webhook_url)
    transport = transport or FakeTransport()
    played: list[tuple[str, str]] = []
    controller = SessionController(
        conversation_id,
        store=store,
        lifecycle=lifecycle,
        transport_factory=lambda: transport,
        playback=lambda text, lang: played.append((text, lang)),
    )
    notifications: list[Any] = []
    controller.subscribe(notifications.append)
    return controller, store, lifecycle, transport, played, notifications


def _transcript(text: str):
    return parse_transport_event(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": text}
    )


def _translation(text: str):
    return parse_transport_event({"type": "response.audio_transcript.done", "transcript": text})


def _function_done(arguments: Any, *, name: str | None = "detect_medical_action", call_id: str = "call_1"):
    raw = {"type": "response.function_call_arguments.done", "call_id": call_id, "arguments": arguments}
    if name is not None:
        raw["name"] = name
    return parse_transport_event(raw)


def test_connect_opens_transport_and_starts_recording() -> None:
    controller, _, _, transport, _, notifications = _make()

    asyncio.run(controller.connect())
    state = controller.snapshot()

    assert state.phase == "connected"
    assert state.recording is True
    assert state.error is None
    assert transport.sent == [BUFFER_CLEAR_EVENT]
    phases = [item.payload["phase"] for item in notifications if item.type == "state"]
    assert phases[:2] == ["connecting", "connected"]


def test_connect_failure_leaves_session_disconnected_with_error() -> None:
    transport = FakeTransport(open_error=TransportError("handshake refused"))
    controller, _, _, _, _, notifications = _make(transport)

    with pytest.raises(TransportError):
        asyncio.run(controller.connect())

    state = controller.snapshot()
    assert state.phase == "disconnected"
    assert state.error == "Connection failed: handshake refused"
    assert transport.close_calls == 1
    errors = [item for item in notifications if item.type == "error"]
    assert errors[-1].payload["fatal"] is True


def test_connect_wraps_unexpected_open_errors() -> None:
    transport = FakeTransport(open_error=OSError("network unreachable"))
    controller, *_ = _make(transport)

    with pytest.raises(TransportError, match="network unreachable"):
        asyncio.run(controller.connect())


def test_connect_twice_is_rejected() -> None:
    controller, *_ = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.connect()

    with pytest.raises(SessionStateError):
        asyncio.run(_run())


def test_english_transcript_is_stored_as_doctor_utterance() -> None:
    controller, store, *_ = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_transcript("I have a headache"))

    asyncio.run(_run())
    utterances = store.get_conversation("conv_1").utterances

    assert len(utterances) == 1
    assert utterances[0].role == "doctor"
    assert utterances[0].original_lang == "en"
    assert utterances[0].text == "I have a headache"


def test_spanish_transcript_then_translation_caches_english_text() -> None:
    controller, store, *_ = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_transcript("el dolor es fuerte"))
        await controller.handle_event(_translation("The pain is strong"))

    asyncio.run(_run())
    utterances = store.get_conversation("conv_1").utterances

    assert [(item.role, item.original_lang) for item in utterances] == [("patient", "es"), ("system", "en")]
    assert controller.snapshot().last_translation == "The pain is strong"


def test_translation_without_prior_speaker_defaults_to_spanish() -> None:
    controller, store, *_ = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_translation("Tiene fiebre"))

    asyncio.run(_run())

    assert store.get_conversation("conv_1").utterances[0].original_lang == "es"


def test_repeat_command_replays_cached_translation_without_persisting() -> None:
    controller, store, _, _, played, notifications = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_transcript("tengo fiebre"))
        await controller.handle_event(_translation("You have a fever"))
        await controller.handle_event(_transcript("repeat that"))

    asyncio.run(_run())

    assert played == [("You have a fever", "en")]
    assert len(store.get_conversation("conv_1").utterances) == 2
    playback = [item for item in notifications if item.type == "playback"]
    assert playback[0].payload["text"] == "You have a fever"


def test_repeat_command_without_cache_is_a_no_op() -> None:
    controller, store, _, _, played, _ = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_transcript("repite eso por favor"))

    asyncio.run(_run())

    assert played == []
    assert store.get_conversation("conv_1").utterances == []


def test_noise_is_dropped_before_classification() -> None:
    controller, store, *_ = _make()

    async def _run() -> None:
        await controller.connect()
        for text in ["um", "hmm", "...", "uh uh"]:
            await controller.handle_event(_transcript(text))
        await controller.handle_event(_translation("mm"))

    asyncio.run(_run())

    assert store.get_conversation("conv_1").utterances == []
    assert controller.snapshot().last_translation is None


def test_persistence_failure_is_logged_and_session_continues() -> None:
    controller, _, _, _, _, notifications = _make(conversation=False)

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_transcript("I have a headache"))

    asyncio.run(_run())

    assert controller.snapshot().phase == "connected"
    utterance_notes = [item for item in notifications if item.type == "utterance"]
    assert utterance_notes[0].payload["persisted"] is False


def test_tool_call_is_forwarded_to_lifecycle() -> None:
    controller, store, lifecycle, *_ = _make()
    arguments = json.dumps({"action_type": "schedule_lab", "parameters": {"tests": ["blood work"]}})

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_function_done(arguments))
        await lifecycle.drain()

    asyncio.run(_run())
    actions = store.list_actions(conversation_id="conv_1")

    assert len(actions) == 1
    assert actions[0].action_type == "schedule_lab"
    assert actions[0].parameters == {"tests": ["blood work"]}
    assert actions[0].status == "failed"
    assert actions[0].error_message == WEBHOOK_NOT_CONFIGURED


def test_tool_call_name_resolved_from_earlier_output_item() -> None:
    controller, store, lifecycle, *_ = _make(webhook_url="https://hooks.example.test/x")
    added = parse_transport_event(
        {
            "type": "response.output_item.added",
            "item": {"type": "function_call", "name": "detect_medical_action", "call_id": "call_9"},
        }
    )
    arguments = json.dumps({"action_type": "refer_specialist", "parameters": {"specialty": "neurology"}})

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(added)
        await controller.handle_event(_function_done(arguments, name=None, call_id="call_9"))
        await lifecycle.drain()

    asyncio.run(_run())
    actions = store.list_actions()

    assert len(actions) == 1
    assert actions[0].status == "completed"


def test_unparseable_tool_call_is_dropped_and_session_survives() -> None:
    controller, store, *_ = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_function_done('{"action_type": "schedule_lab", '))
        await controller.handle_event(_function_done(json.dumps({"parameters": {}}), call_id="call_2"))

    asyncio.run(_run())

    assert store.list_actions() == []
    assert controller.snapshot().phase == "connected"


def test_partial_arguments_and_foreign_tools_are_ignored() -> None:
    controller, store, *_ = _make()
    delta = parse_transport_event(
        {"type": "response.function_call_arguments.delta", "call_id": "call_1", "delta": '{"action_type": "sch'}
    )
    other_tool = _function_done(json.dumps({"action_type": "schedule_lab"}), name="lookup_weather", call_id="call_5")

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(delta)
        await controller.handle_event(other_tool)

    asyncio.run(_run())

    assert store.list_actions() == []


def test_duplicate_call_ids_create_one_action() -> None:
    controller, store, lifecycle, *_ = _make()
    arguments = json.dumps({"action_type": "schedule_followup", "parameters": {"weeks": 2}})

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(_function_done(arguments, call_id="call_dup"))
        await controller.handle_event(_function_done(arguments, call_id="call_dup"))
        await lifecycle.drain()

    asyncio.run(_run())

    assert len(store.list_actions()) == 1


def test_recoverable_error_keeps_session_connected() -> None:
    controller, _, _, transport, _, _ = _make()
    event = parse_transport_event(
        {"type": "error", "error": {"message": "Error committing input audio buffer: buffer too small."}}
    )

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(event)

    asyncio.run(_run())

    assert controller.snapshot().phase == "connected"
    assert controller.snapshot().error is None
    assert transport.close_calls == 0


def test_fatal_error_disconnects_with_user_visible_message() -> None:
    controller, _, _, transport, _, notifications = _make()
    event = parse_transport_event({"type": "error", "error": {"message": "Invalid API key"}})

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(event)

    asyncio.run(_run())
    state = controller.snapshot()

    assert state.phase == "disconnected"
    assert state.recording is False
    assert state.error == "API Error: Invalid API key"
    assert transport.close_calls == 1
    assert any(item.type == "error" for item in notifications)


def test_events_after_disconnect_are_not_forwarded() -> None:
    controller, store, *_ = _make()

    async def _run() -> None:
        await controller.connect()
        await controller.disconnect()
        await controller.handle_event(_transcript("I have a headache"))

    asyncio.run(_run())

    assert store.get_conversation("conv_1").utterances == []
    assert controller.snapshot().phase == "disconnected"


def test_webhook_in_flight_at_disconnect_still_completes_without_notifying() -> None:
    gate = asyncio.Event()
    dispatcher = OkDispatcher(gate)
    controller, store, lifecycle, _, _, notifications = _make(
        webhook_url="https://hooks.example.test/clinic", dispatcher=dispatcher
    )
    arguments = json.dumps({"action_type": "schedule_followup", "parameters": {"days": 14}})

    async def _run() -> tuple[str, int]:
        await controller.connect()
        await controller.handle_event(_function_done(arguments))
        while not dispatcher.calls:
            await asyncio.sleep(0)
        action_id = store.list_actions(conversation_id="conv_1")[0].id
        assert store.get_action(action_id).status == "executing"
        await controller.disconnect()
        seen = len(notifications)
        gate.set()
        await asyncio.wait_for(lifecycle.drain("conv_1"), timeout=1.0)
        return action_id, seen

    action_id, seen_at_disconnect = asyncio.run(_run())
    action = store.get_action(action_id)

    assert action.status == "completed"
    assert action.webhook_status == 200
    assert store.action_history(action_id) == ["detected", "executing", "completed"]
    assert [item for item in notifications[seen_at_disconnect:] if item.type == "action"] == []


@pytest.mark.parametrize(
    "message",
    [
        "Conversation already has an active response in progress",
        "Error committing input audio buffer: buffer is empty",
    ],
)
def test_other_service_errors_are_fatal(message: str) -> None:
    controller, _, _, transport, _, _ = _make()
    event = parse_transport_event({"type": "error", "error": {"message": message}})

    async def _run() -> None:
        await controller.connect()
        await controller.handle_event(event)

    asyncio.run(_run())

    assert controller.snapshot().phase == "disconnected"
    assert controller.snapshot().error == f"API Error: {message}"
    assert transport.close_calls == 1


def test_run_processes_frames_in_order_then_reports_closed_transport() -> None:
    frames = [
        json.dumps({"type": "session.created"}),
        json.dumps({"type": "conversation.item.input_audio_transcription.completed", "transcript": "Me duele la cabeza"}),
        json.dumps({"type": "response.audio_transcript.done", "transcript": "My head hurts"}),
        json.dumps({"type": "conversation.item.input_audio_transcription.completed", "transcript": "How long has it hurt?"}),
    ]
    controller, store, _, transport, _, _ = _make(FakeTransport(frames))

    async def _run() -> None:
        await controller.connect()
        await controller.run()

    asyncio.run(_run())
    utterances = store.get_conversation("conv_1").utterances

    assert [item.role for item in utterances] == ["patient", "system", "doctor"]
    assert [item.original_lang for item in utterances] == ["es", "en", "en"]
    assert controller.snapshot().phase == "disconnected"
    assert controller.snapshot().error == "Connection closed by realtime service"
    assert transport.close_calls == 1


def test_audio_is_forwarded_only_while_recording() -> None:
    controller, _, _, transport, _, _ = _make()

    async def _run() -> list[bool]:
        before = await controller.send_audio(b"\x01\x02")
        await controller.connect(auto_record=False)
        idle = await controller.send_audio(b"\x01\x02")
        await controller.start_recording()
        live = await controller.send_audio(b"\x01\x02")
        await controller.stop_recording()
        return [before, idle, live]

    results = asyncio.run(_run())

    assert results == [False, False, True]
    assert transport.sent == [
        BUFFER_CLEAR_EVENT,
        {"type": "input_audio_buffer.append", "audio": base64.b64encode(b"\x01\x02").decode("ascii")},
        BUFFER_COMMIT_EVENT,
    ]
    assert controller.snapshot().recording is False


def test_parse_candidate_action_accepts_string_parameters() -> None:
    candidate = parse_candidate_action(
        json.dumps({"actionType": "prescribe_medication", "parameters": json.dumps({"drug": "ibuprofen"})})
    )

    assert candidate is not None
    assert candidate.action_type == "prescribe_medication"
    assert candidate.parameters == {"drug": "ibuprofen"}
    assert parse_candidate_action(json.dumps(["schedule_lab"])) is None
    assert parse_candidate_action(json.dumps({"action_type": "schedule_lab", "parameters": 3})) is None
