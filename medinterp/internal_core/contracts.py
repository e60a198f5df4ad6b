from __future__ import annotations

import datetime as _dt
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Language = Literal["en", "es"]
Role = Literal["doctor", "patient", "system"]
ConversationStatus = Literal["active", "completed"]
ActionStatus = Literal["detected", "executing", "completed", "failed"]

KNOWN_ACTION_TYPES = (
    "schedule_lab",
    "schedule_followup",
    "prescribe_medication",
    "refer_specialist",
)

ACTION_TRANSITIONS: Dict[str, frozenset[str]] = {
    "detected": frozenset({"executing"}),
    "executing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}
TERMINAL_ACTION_STATUSES = frozenset({"completed", "failed"})


def utc_now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def is_legal_transition(current: str, target: str) -> bool:
    return target in ACTION_TRANSITIONS.get(current, frozenset())


class WireModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Utterance(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    role: Role
    text: str
    original_lang: Language
    translated_text: Optional[str] = None
    timestamp: str
    audio_url: Optional[str] = None


class Conversation(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: ConversationStatus = "active"
    utterances: List[Utterance] = Field(default_factory=list)
    summary: Optional[str] = None
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: str


class Action(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    action_type: str = Field(min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus = "detected"
    webhook_url: Optional[str] = None
    webhook_status: Optional[int] = None
    webhook_response: Optional[str] = None
    error_message: Optional[str] = None
    detected_at: str
    executed_at: Optional[str] = None
    completed_at: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ACTION_STATUSES
