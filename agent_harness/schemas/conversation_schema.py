"""Conversation transcript schemas for simulated test calls."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    AGENT = "agent"
    CALLER = "caller"


class ToolCall(BaseModel):
    """A tool invocation reported by the agent endpoint, logged as-is."""

    tool: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_output: Optional[Any] = None


class ConversationTurn(BaseModel):
    """A single turn in a simulated conversation."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    response_time_ms: Optional[float] = None
    step_id: Optional[str] = None
    is_error: bool = False


class AgentResponse(BaseModel):
    """What the agent endpoint returned for one caller message."""

    text: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    response_time_ms: float = 0.0
    raw: Optional[dict[str, Any]] = None
