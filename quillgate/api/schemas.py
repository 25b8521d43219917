from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from quillgate.storage.models import ConversationRequest, Part, Turn

# Maximum nested JSON depth accepted in structured parts
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000
MAX_STRING_LENGTH = 65536
MAX_TURNS = 200


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized structured payloads.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class PartIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: Optional[str] = Field(None, max_length=MAX_STRING_LENGTH)
    data: Optional[Dict[str, Any]] = None

    @field_validator("data")
    @classmethod
    def _validate_data_depth(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> "PartIn":
        if (self.text is None) == (self.data is None):
            raise ValueError("each part must carry exactly one of 'text' or 'data'")
        return self


class TurnIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Tool turns are synthetic and never accepted from callers
    role: Literal["user", "model"]
    parts: List[PartIn] = Field(..., min_length=1, max_length=MAX_ARRAY_ITEMS)

    def to_turn(self) -> Turn:
        return Turn(
            role=self.role,
            parts=[Part(text=part.text, data=part.data) for part in self.parts],
        )


class GenerateRequest(BaseModel):
    """Inbound body of ``POST /api/generate``.

    ``chatHistory`` and ``systemPrompt`` are accepted as aliases for the
    field names older front ends send. Unknown fields are rejected, so a
    caller cannot smuggle privilege flags in the body.
    """

    model_config = ConfigDict(extra="forbid")

    conversation: List[TurnIn] = Field(
        ...,
        min_length=1,
        max_length=MAX_TURNS,
        validation_alias=AliasChoices("conversation", "chatHistory"),
    )
    system_instruction: Optional[str] = Field(
        None,
        max_length=MAX_STRING_LENGTH,
        validation_alias=AliasChoices("system_instruction", "systemPrompt"),
    )

    @model_validator(mode="after")
    def _final_turn_is_user_request(self) -> "GenerateRequest":
        final = self.conversation[-1]
        if final.role != "user":
            raise ValueError("the final turn must have role 'user'")
        if not any(part.text and part.text.strip() for part in final.parts):
            raise ValueError("the final user turn must contain text")
        return self

    def to_conversation(self) -> ConversationRequest:
        instruction = (self.system_instruction or "").strip() or None
        return ConversationRequest(
            turns=[turn.to_turn() for turn in self.conversation],
            system_instruction=instruction,
        )


class GenerateResponse(BaseModel):
    text: str
    tool_rounds: int = 0
    usage: Dict[str, int] = Field(default_factory=dict)
    trace: List[dict] = Field(default_factory=list)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "method_not_allowed",
    "rate_limited",
    "validation_error",
    "upstream_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))
