"""Proposed fixes fed into the experiment trigger."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class FixType(str, Enum):
    PROMPT = "prompt"
    TOOL = "tool"
    CONFIG = "config"


class FixLocation(BaseModel):
    section: Optional[str] = None
    function_name: Optional[str] = None
    line_number: Optional[int] = None


class GeneratedFix(BaseModel):
    """A candidate change to the agent's prompt, tool code or configuration."""

    fix_id: str
    type: FixType
    target_file: str
    change_description: str
    change_code: str = ""
    location: FixLocation = Field(default_factory=FixLocation)
    confidence: float = Field(ge=0.0, le=1.0)
    affected_tests: list[str] = Field(default_factory=list)
