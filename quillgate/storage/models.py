from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

Role = Literal["user", "model", "tool"]


@dataclass(frozen=True)
class ToolCall:
    """A model's request to invoke a declared capability."""

    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    response: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Part:
    """One piece of turn content: text, structured data, or a synthetic tool part."""

    text: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None


@dataclass
class Turn:
    role: Role
    parts: List[Part] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Turn":
        return cls(role="user", parts=[Part(text=text)])

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.parts if part.text)

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [part.tool_call for part in self.parts if part.tool_call]


@dataclass
class ConversationRequest:
    """Validated inbound conversation.

    Invariant: ``turns`` is non-empty and the final turn's role is ``user``.
    """

    turns: List[Turn]
    system_instruction: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.turns:
            raise ValueError("conversation must contain at least one turn")
        if self.turns[-1].role != "user":
            raise ValueError("the final turn must come from the user")

    @property
    def latest_request(self) -> str:
        return self.turns[-1].text


@dataclass(frozen=True)
class Identity:
    """Caller identity for one request, derived from a verified credential."""

    subject: str
    is_admin: bool = False
    anonymous: bool = False
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDeclaration:
    """Capability declared to the generative service (name + JSON argument schema)."""

    name: str
    description: str
    parameters: Dict[str, Any]

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class Generation:
    """One reply from the generative service: terminal text or tool calls."""

    text: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return not self.tool_calls


@dataclass(frozen=True)
class Admitted:
    count: Optional[int] = None
    remaining: Optional[int] = None
    reset_seconds: int = 0
    bypassed: bool = False


@dataclass(frozen=True)
class Rejected:
    retry_after: int
    count: int = 0


AdmissionDecision = Union[Admitted, Rejected]
