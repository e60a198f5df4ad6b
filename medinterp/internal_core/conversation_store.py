from __future__ import annotations

import uuid
from threading import RLock
from typing import Any, Dict, List, Optional

from .contracts import (
    Action,
    Conversation,
    Language,
    Role,
    Utterance,
    is_legal_transition,
    utc_now_iso,
)
from .errors import ActionTransitionError

_PATCHABLE_ACTION_FIELDS = frozenset(
    {
        "webhook_url",
        "webhook_status",
        "webhook_response",
        "error_message",
        "executed_at",
        "completed_at",
        "retry_count",
    }
)


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _PATCHABLE_ACTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown action fields: {sorted(unknown)}")


class InMemoryConversationStore:
    """
    Thread-safe in-memory persistence for conversations, utterances and actions.

    Records handed out are frozen pydantic models, so callers only ever see
    snapshots. Action status changes go through `transition_action`, a
    compare-and-set that refuses to move a record out of a terminal status.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._conversations: Dict[str, Dict[str, Any]] = {}
        self._actions: Dict[str, Action] = {}
        self._action_seq: Dict[str, int] = {}
        self._action_history: Dict[str, List[str]] = {}
        self._seq = 0

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _conversation_record(self, conversation_id: str) -> Dict[str, Any]:
        record = self._conversations.get(conversation_id)
        if record is None:
            raise KeyError(f"Unknown conversation_id: {conversation_id}")
        return record

    def _action_record(self, action_id: str) -> Action:
        action = self._actions.get(action_id)
        if action is None:
            raise KeyError(f"Unknown action_id: {action_id}")
        return action

    @staticmethod
    def _to_conversation(record: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=record["id"],
            status=record["status"],
            utterances=list(record["utterances"]),
            summary=record["summary"],
            actions=[dict(item) for item in record["actions"]],
            created_at=record["created_at"],
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, conversation_id: Optional[str] = None) -> Conversation:
        conversation_id = conversation_id or uuid.uuid4().hex
        with self._lock:
            if conversation_id in self._conversations:
                raise ValueError(f"Conversation already exists: {conversation_id}")
            record = {
                "id": conversation_id,
                "status": "active",
                "utterances": [],
                "summary": None,
                "actions": [],
                "created_at": utc_now_iso(),
                "seq": self._next_seq(),
            }
            self._conversations[conversation_id] = record
            return self._to_conversation(record)

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._lock:
            return self._to_conversation(self._conversation_record(conversation_id))

    def list_conversations(self) -> List[Conversation]:
        with self._lock:
            records = sorted(
                self._conversations.values(),
                key=lambda item: item["seq"],
                reverse=True,
            )
            return [self._to_conversation(item) for item in records]

    def add_utterance(
        self,
        conversation_id: str,
        *,
        role: Role,
        text: str,
        original_lang: Language,
        translated_text: Optional[str] = None,
        audio_url: Optional[str] = None,
        utterance_id: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> Utterance:
        utterance = Utterance(
            id=utterance_id or f"utt_{uuid.uuid4().hex}",
            conversation_id=conversation_id,
            role=role,
            text=text,
            original_lang=original_lang,
            translated_text=translated_text,
            timestamp=timestamp or utc_now_iso(),
            audio_url=audio_url,
        )
        with self._lock:
            self._conversation_record(conversation_id)["utterances"].append(utterance)
        return utterance

    def finalize_conversation(
        self,
        conversation_id: str,
        *,
        summary: str,
        actions: Optional[List[Dict[str, Any]]] = None,
    ) -> Conversation:
        with self._lock:
            record = self._conversation_record(conversation_id)
            record["status"] = "completed"
            record["summary"] = summary
            record["actions"] = [dict(item) for item in (actions or [])]
            return self._to_conversation(record)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def create_action(
        self,
        conversation_id: str,
        action_type: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Action:
        with self._lock:
            self._conversation_record(conversation_id)
            action = Action(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                action_type=action_type,
                parameters=dict(parameters or {}),
                status="detected",
                detected_at=utc_now_iso(),
            )
            self._actions[action.id] = action
            self._action_seq[action.id] = self._next_seq()
            self._action_history[action.id] = ["detected"]
            return action

    def get_action(self, action_id: str) -> Action:
        with self._lock:
            return self._action_record(action_id)

    def list_actions(
        self,
        conversation_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Action]:
        with self._lock:
            items = [
                item
                for item in self._actions.values()
                if (conversation_id is None or item.conversation_id == conversation_id)
                and (status is None or item.status == status)
            ]
            items.sort(
                key=lambda item: (item.detected_at, self._action_seq[item.id]),
                reverse=True,
            )
            return items

    def transition_action(
        self,
        action_id: str,
        *,
        expected: str,
        target: str,
        **fields: Any,
    ) -> Action:
        _check_fields(fields)
        with self._lock:
            current = self._action_record(action_id)
            if current.status != expected or not is_legal_transition(current.status, target):
                raise ActionTransitionError(action_id, current.status, target)
            updated = current.model_copy(update={"status": target, **fields})
            self._actions[action_id] = updated
            self._action_history[action_id].append(target)
            return updated

    def update_action(self, action_id: str, **fields: Any) -> Action:
        _check_fields(fields)
        with self._lock:
            current = self._action_record(action_id)
            if current.is_terminal:
                raise ActionTransitionError(action_id, current.status, current.status)
            updated = current.model_copy(update=fields)
            self._actions[action_id] = updated
            return updated

    def action_history(self, action_id: str) -> List[str]:
        with self._lock:
            self._action_record(action_id)
            return list(self._action_history[action_id])
