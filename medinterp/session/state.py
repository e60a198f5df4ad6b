from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ConnectionPhase = Literal["disconnected", "connecting", "connected"]
NotificationType = Literal["state", "utterance", "action", "playback", "error"]


class SessionState(BaseModel):
    """Per-conversation live session state; replaced, never mutated in place."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    phase: ConnectionPhase = "disconnected"
    recording: bool = False
    last_translation: Optional[str] = None
    error: Optional[str] = None


class SessionNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: NotificationType
    payload: Dict[str, Any] = Field(default_factory=dict)
