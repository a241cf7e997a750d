"""Simulated caller personas: the data a caller can give and how they give it."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Verbosity(str, Enum):
    TERSE = "terse"
    NORMAL = "normal"
    VERBOSE = "verbose"


class Patience(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChildData(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str
    last_name: str
    date_of_birth: str  # ISO date, e.g. "2016-04-12"
    is_new_patient: bool = True
    had_braces_before: bool = False
    special_needs: Optional[str] = None


class PersonaInventory(BaseModel):
    """Everything the caller knows and will reveal when asked."""

    model_config = ConfigDict(frozen=True)

    parent_first_name: str
    parent_last_name: str
    parent_phone: str
    parent_email: Optional[str] = None
    children: tuple[ChildData, ...] = Field(default_factory=tuple)
    has_insurance: bool = False
    insurance_provider: Optional[str] = None
    preferred_location: Optional[str] = None
    preferred_time_of_day: str = "any"  # "morning", "afternoon" or "any"
    preferred_date_range: Optional[str] = None
    previous_visit_to_office: bool = False
    previous_orthodontic_treatment: bool = False


class PersonaTraits(BaseModel):
    """Disposition toward the conversation and its edge cases."""

    model_config = ConfigDict(frozen=True)

    verbosity: Verbosity = Verbosity.NORMAL
    provides_extra_info: bool = False
    patience: Patience = Patience.MEDIUM
    changes_answer: bool = False


class Persona(BaseModel):
    """A simulated caller. Immutable for the duration of a test."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    inventory: PersonaInventory
    traits: PersonaTraits = Field(default_factory=PersonaTraits)
