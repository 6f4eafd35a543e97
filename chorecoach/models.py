"""Pydantic request models for the voice coach routes."""
from typing import Any

from pydantic import BaseModel, Field, model_validator

MAX_SPEECH_CHARS = 5000


class TranscriptionRequest(BaseModel):
    audio_data: str | None = None  # base64
    audio_url: str | None = None
    language: str | None = None

    @model_validator(mode="after")
    def _require_audio(self) -> "TranscriptionRequest":
        if not self.audio_data and not self.audio_url:
            raise ValueError("Either audio_data or audio_url is required")
        return self


class ReplyRequest(BaseModel):
    user_input: str = Field(..., min_length=1)
    character: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    conversation_history: list[dict[str, Any]] = Field(default_factory=list)


class SpeechRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=MAX_SPEECH_CHARS)
    character: str | None = None
    voice_settings: dict[str, Any] = Field(default_factory=dict)
