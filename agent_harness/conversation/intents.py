"""
Closed vocabulary of agent intents and the deterministic keyword matcher.

The keyword rules are ordered: terminal intents first, then time-slot
offers (which need a concrete day or time in the reply), then the
generic "let me check" searching phrases, then specific data requests,
and finally the catch-all conversational intents.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class AgentIntent(str, Enum):
    """What the agent is trying to do in a single reply."""

    GREETING = "greeting"
    SAYING_GOODBYE = "saying_goodbye"
    ASKING_PARENT_NAME = "asking_parent_name"
    ASKING_SPELL_NAME = "asking_spell_name"
    ASKING_PHONE = "asking_phone"
    ASKING_EMAIL = "asking_email"
    ASKING_CHILD_COUNT = "asking_child_count"
    ASKING_CHILD_NAME = "asking_child_name"
    ASKING_CHILD_DOB = "asking_child_dob"
    ASKING_CHILD_AGE = "asking_child_age"
    ASKING_NEW_PATIENT = "asking_new_patient"
    ASKING_PREVIOUS_VISIT = "asking_previous_visit"
    ASKING_PREVIOUS_ORTHO = "asking_previous_ortho"
    ASKING_INSURANCE = "asking_insurance"
    ASKING_SPECIAL_NEEDS = "asking_special_needs"
    ASKING_TIME_PREFERENCE = "asking_time_preference"
    ASKING_LOCATION_PREFERENCE = "asking_location_preference"
    CONFIRMING_INFORMATION = "confirming_information"
    CONFIRMING_SPELLING = "confirming_spelling"
    ASKING_PROCEED_CONFIRMATION = "asking_proceed_confirmation"
    REMINDING_BRING_CARD = "reminding_bring_card"
    SEARCHING_AVAILABILITY = "searching_availability"
    OFFERING_TIME_SLOTS = "offering_time_slots"
    CONFIRMING_BOOKING = "confirming_booking"
    OFFERING_ADDRESS = "offering_address"
    PROVIDING_ADDRESS = "providing_address"
    PROVIDING_PARKING_INFO = "providing_parking_info"
    INITIATING_TRANSFER = "initiating_transfer"
    HANDLING_ERROR = "handling_error"
    ASKING_CLARIFICATION = "asking_clarification"
    UNKNOWN = "unknown"


TERMINAL_INTENTS: frozenset[AgentIntent] = frozenset({
    AgentIntent.SAYING_GOODBYE,
    AgentIntent.CONFIRMING_BOOKING,
    AgentIntent.INITIATING_TRANSFER,
})

CONFIRMATION_INTENTS: frozenset[AgentIntent] = frozenset({
    AgentIntent.CONFIRMING_INFORMATION,
    AgentIntent.CONFIRMING_SPELLING,
})

# Field filled by the caller's answer to each data-collection intent.
INTENT_TO_FIELD: dict[AgentIntent, str] = {
    AgentIntent.ASKING_PARENT_NAME: "parent_name",
    AgentIntent.ASKING_SPELL_NAME: "parent_name_spelling",
    AgentIntent.ASKING_PHONE: "parent_phone",
    AgentIntent.ASKING_EMAIL: "parent_email",
    AgentIntent.ASKING_CHILD_COUNT: "child_count",
    AgentIntent.ASKING_CHILD_NAME: "child_names",
    AgentIntent.ASKING_CHILD_DOB: "child_dob",
    AgentIntent.ASKING_CHILD_AGE: "child_dob",
    AgentIntent.ASKING_NEW_PATIENT: "is_new_patient",
    AgentIntent.ASKING_PREVIOUS_VISIT: "previous_visit",
    AgentIntent.ASKING_PREVIOUS_ORTHO: "previous_ortho",
    AgentIntent.ASKING_INSURANCE: "insurance",
    AgentIntent.ASKING_SPECIAL_NEEDS: "special_needs",
    AgentIntent.ASKING_TIME_PREFERENCE: "time_preference",
    AgentIntent.ASKING_LOCATION_PREFERENCE: "location_preference",
}

INTENT_DESCRIPTIONS: dict[AgentIntent, str] = {
    AgentIntent.GREETING: "Opening greeting or offer to help",
    AgentIntent.SAYING_GOODBYE: "Ending the call",
    AgentIntent.ASKING_PARENT_NAME: "Asking for the caller's (parent's) name",
    AgentIntent.ASKING_SPELL_NAME: "Asking the caller to spell a name",
    AgentIntent.ASKING_PHONE: "Asking for a phone number",
    AgentIntent.ASKING_EMAIL: "Asking for an email address",
    AgentIntent.ASKING_CHILD_COUNT: "Asking how many children need appointments",
    AgentIntent.ASKING_CHILD_NAME: "Asking for the child's name",
    AgentIntent.ASKING_CHILD_DOB: "Asking for the child's date of birth",
    AgentIntent.ASKING_CHILD_AGE: "Asking for the child's age",
    AgentIntent.ASKING_NEW_PATIENT: "Asking whether the child is a new patient",
    AgentIntent.ASKING_PREVIOUS_VISIT: "Asking whether they visited the office before",
    AgentIntent.ASKING_PREVIOUS_ORTHO: "Asking about previous orthodontic treatment",
    AgentIntent.ASKING_INSURANCE: "Asking about insurance",
    AgentIntent.ASKING_SPECIAL_NEEDS: "Asking about special needs or medical conditions",
    AgentIntent.ASKING_TIME_PREFERENCE: "Asking for a time-of-day or day preference (morning/afternoon)",
    AgentIntent.ASKING_LOCATION_PREFERENCE: "Asking which office location",
    AgentIntent.CONFIRMING_INFORMATION: "Reading back details for confirmation",
    AgentIntent.CONFIRMING_SPELLING: "Reading back a spelling for confirmation",
    AgentIntent.ASKING_PROCEED_CONFIRMATION: "Asking whether to go ahead",
    AgentIntent.REMINDING_BRING_CARD: "Reminding the caller to bring an insurance card",
    AgentIntent.SEARCHING_AVAILABILITY: "Looking up availability without offering a specific time yet",
    AgentIntent.OFFERING_TIME_SLOTS: "Offering specific appointment days/times",
    AgentIntent.CONFIRMING_BOOKING: "Stating the appointment is booked",
    AgentIntent.OFFERING_ADDRESS: "Offering to give the office address",
    AgentIntent.PROVIDING_ADDRESS: "Giving the office address",
    AgentIntent.PROVIDING_PARKING_INFO: "Giving parking directions",
    AgentIntent.INITIATING_TRANSFER: "Transferring the call to a person",
    AgentIntent.HANDLING_ERROR: "Apologising for a system problem",
    AgentIntent.ASKING_CLARIFICATION: "Asking the caller to repeat or clarify",
    AgentIntent.UNKNOWN: "None of the above",
}


def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


_DAY_OR_TIME_RE = _compile(
    r"\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|tomorrow"
    r"|january|february|march|april|june|july|august|september|october"
    r"|november|december)\b"
    r"|\b\d{1,2}(?::\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.)(?!\w)"
)
_QUESTION_WORD_RE = _compile(
    r"^\s*(?:what|when|where|who|which|how|could|can|would|will|do|does|did|is|are|may)\b"
)


@dataclass(frozen=True)
class KeywordRule:
    """One intent and the regex(es) that must all match for it to fire."""

    intent: AgentIntent
    patterns: tuple[re.Pattern[str], ...]

    def matches(self, text: str) -> bool:
        return all(p.search(text) for p in self.patterns)


def _rule(intent: AgentIntent, *patterns: str) -> KeywordRule:
    return KeywordRule(intent, tuple(_compile(p) for p in patterns))


KEYWORD_RULES: list[KeywordRule] = [
    # --- Terminal ---
    _rule(AgentIntent.SAYING_GOODBYE,
          r"\b(?:good ?bye|bye now|have a (?:great|good|wonderful|nice) (?:day|evening|afternoon|one))\b"),
    _rule(AgentIntent.INITIATING_TRANSFER,
          r"\b(?:transfer(?:ring)? you|connect(?:ing)? you (?:with|to)|live agent"
          r"|one of our (?:team members|staff)|put you through)\b"),
    _rule(AgentIntent.CONFIRMING_BOOKING,
          r"\b(?:appointment (?:is|has been) (?:booked|scheduled|confirmed)"
          r"|you'?re (?:all )?(?:set|booked)|booking (?:is )?confirmed"
          r"|(?:successfully|have) (?:booked|scheduled))\b"),

    # --- Scheduling ---
    _rule(AgentIntent.OFFERING_TIME_SLOTS,
          r"\b(?:available|availability|opening|openings|slot|slots|have|works?|how about)\b",
          _DAY_OR_TIME_RE.pattern),
    _rule(AgentIntent.SEARCHING_AVAILABILITY,
          r"\b(?:let me (?:check|look|search|find|see)|one moment|checking (?:availability|the schedule)"
          r"|searching|looking (?:up|for) (?:availability|openings))\b"),
    _rule(AgentIntent.ASKING_TIME_PREFERENCE,
          r"\b(?:morning or (?:an )?(?:afternoon|evening)|prefer(?:red)? (?:time|day)"
          r"|what time works|time of day)\b"),
    _rule(AgentIntent.ASKING_LOCATION_PREFERENCE,
          r"\b(?:which (?:location|office)|prefer(?:red)? (?:location|office))\b"),

    # --- Read-backs ---
    _rule(AgentIntent.CONFIRMING_INFORMATION,
          r"\b(?:is that (?:correct|right)|did i get that right|just to confirm|let me confirm"
          r"|to confirm)\b"),

    # --- Data collection ---
    _rule(AgentIntent.ASKING_SPELL_NAME,
          r"\b(?:spell (?:that|your|the|it)|could you spell|how do you spell)\b"),
    _rule(AgentIntent.CONFIRMING_SPELLING,
          r"\b(?:spelled|that'?s spelled|is that spelled)\b"),
    _rule(AgentIntent.ASKING_CHILD_COUNT,
          r"\bhow many (?:children|kids|of your children)\b"),
    _rule(AgentIntent.ASKING_CHILD_DOB,
          r"\b(?:date of birth|birth ?date|birthday|when was (?:he|she|they|your child) born)\b"),
    _rule(AgentIntent.ASKING_CHILD_AGE,
          r"\b(?:how old|(?:child'?s|his|her|their) age)\b"),
    _rule(AgentIntent.ASKING_CHILD_NAME,
          r"\b(?:child'?s (?:first and last |full )?name|name of (?:your|the) child"
          r"|patient'?s name|what is (?:his|her|their) name)\b"),
    _rule(AgentIntent.ASKING_PARENT_NAME,
          r"\b(?:your (?:first and last |full )?name|may i have your name|who am i speaking with"
          r"|what is your name|who do i have the pleasure)\b"),
    _rule(AgentIntent.ASKING_PHONE,
          r"\b(?:phone number|callback number|best number|contact number|number to reach you)\b"),
    _rule(AgentIntent.ASKING_EMAIL, r"\be-?mail\b"),
    _rule(AgentIntent.ASKING_PREVIOUS_ORTHO,
          r"\b(?:braces|orthodontic treatment|previous(?:ly)? (?:orthodontic|ortho))\b"),
    _rule(AgentIntent.ASKING_PREVIOUS_VISIT,
          r"\b(?:(?:visited|been to|been in to) (?:our|this|the) (?:office|practice)"
          r"|previous(?:ly)? visit)"),
    _rule(AgentIntent.ASKING_NEW_PATIENT,
          r"\b(?:new patient|first (?:time|visit) (?:with|to|at) us)\b"),
    _rule(AgentIntent.REMINDING_BRING_CARD,
          r"\bbring (?:your|the) (?:insurance )?card\b"),
    _rule(AgentIntent.ASKING_INSURANCE, r"\binsurance\b"),
    _rule(AgentIntent.ASKING_SPECIAL_NEEDS,
          r"\b(?:special needs|medical conditions?|accommodations?)\b"),

    # --- Post-booking details ---
    _rule(AgentIntent.PROVIDING_PARKING_INFO, r"\bpark(?:ing)?\b"),
    _rule(AgentIntent.OFFERING_ADDRESS,
          r"\b(?:would you like|do you need|can i give you) (?:the|our) address\b"),
    _rule(AgentIntent.PROVIDING_ADDRESS,
          r"\b(?:located at|our address is|the address is)\b"),

    # --- Generic ---
    _rule(AgentIntent.ASKING_PROCEED_CONFIRMATION,
          r"\b(?:would you like (?:me )?to proceed|shall i (?:go ahead|proceed|book)"
          r"|should i go ahead)\b"),
    _rule(AgentIntent.HANDLING_ERROR,
          r"\b(?:something went wrong|having (?:some )?trouble|technical (?:issue|difficult))"),
    _rule(AgentIntent.ASKING_CLARIFICATION,
          r"\b(?:could you repeat|didn'?t (?:catch|understand)|say that again|could you clarify"
          r"|sorry,? what was)\b"),
    _rule(AgentIntent.GREETING,
          r"\b(?:thank you for calling|thanks for calling|how (?:can|may) i help|welcome to"
          r"|hello|hi there)\b"),
]


def detect_intents_by_keywords(text: str) -> list[AgentIntent]:
    """Return every intent whose rule matches, in rule-priority order."""
    return [rule.intent for rule in KEYWORD_RULES if rule.matches(text)]


def is_question(text: str) -> bool:
    return "?" in text or bool(_QUESTION_WORD_RE.search(text))


def parse_intent(value: Optional[str]) -> AgentIntent:
    """Map a raw intent name to the vocabulary, defaulting to UNKNOWN."""
    if not value:
        return AgentIntent.UNKNOWN
    try:
        return AgentIntent(value.strip().lower())
    except ValueError:
        return AgentIntent.UNKNOWN
