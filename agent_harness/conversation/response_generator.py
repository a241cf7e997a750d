"""
Persona-driven caller replies.

Answers each agent intent from the persona's inventory using templates.
With a language model available the reply can instead be phrased freely
in the persona's voice; any model failure falls back to the template.
"""

import logging
from datetime import date
from typing import Callable, Optional, Sequence, Union

from agent_harness.clients.llm_provider import LLMProvider, LLMRequest
from agent_harness.conversation.intent_detector import IntentDetectionResult
from agent_harness.conversation.intents import INTENT_TO_FIELD, AgentIntent
from agent_harness.schemas.conversation_schema import ConversationTurn
from agent_harness.schemas.persona_schema import ChildData, Persona, Verbosity

logger = logging.getLogger(__name__)

InitialMessage = Union[str, Callable[[Persona], str]]

PERSONA_SYSTEM_PROMPT = (
    "You are role-playing a parent calling an orthodontic office to book an appointment "
    "for their child. Reply with one short, natural spoken sentence. Only share the facts "
    "you are given."
)


def _child_age(dob: str, today: Optional[date] = None) -> Optional[int]:
    try:
        born = date.fromisoformat(dob)
    except ValueError:
        return None
    today = today or date.today()
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def _spell(name: str) -> str:
    return "-".join(name.upper())


def default_initial_message(persona: Persona) -> str:
    children = persona.inventory.children
    if len(children) > 1:
        return f"Hi, I'd like to schedule appointments for my {len(children)} children."
    return "Hi, I'd like to schedule an appointment for my child."


class ResponseGenerator:
    """Produces the simulated caller's side of the conversation."""

    def __init__(
        self,
        persona: Persona,
        provider: Optional[LLMProvider] = None,
        use_llm: bool = False,
    ) -> None:
        self._persona = persona
        self._provider = provider
        self._use_llm = use_llm
        self._child_index = 0
        self._provided: set[str] = set()

    @property
    def persona(self) -> Persona:
        return self._persona

    @property
    def provided_fields(self) -> set[str]:
        return set(self._provided)

    def initial_message(self, message: Optional[InitialMessage] = None) -> str:
        if message is None:
            return default_initial_message(self._persona)
        if callable(message):
            return message(self._persona)
        return message

    @property
    def _current_child(self) -> Optional[ChildData]:
        children = self._persona.inventory.children
        if not children:
            return None
        return children[min(self._child_index, len(children) - 1)]

    async def generate(
        self,
        intent_result: IntentDetectionResult,
        agent_reply: str = "",
        history: Sequence[ConversationTurn] = (),
    ) -> str:
        template = self.template_response(intent_result.primary_intent)
        if self._use_llm and self._provider is not None and self._provider.is_available():
            phrased = await self._generate_with_llm(intent_result, agent_reply, template, history)
            if phrased:
                return phrased
            logger.debug("Persona model reply unavailable, using template")
        return template

    async def _generate_with_llm(
        self,
        intent_result: IntentDetectionResult,
        agent_reply: str,
        template: str,
        history: Sequence[ConversationTurn],
    ) -> Optional[str]:
        recent = "\n".join(f"{t.role.value}: {t.content}" for t in history[-6:])
        traits = self._persona.traits
        prompt = (
            f"Persona: {self._persona.name}. {self._persona.description}\n"
            f"Speaking style: {traits.verbosity.value}, patience {traits.patience.value}.\n"
            f"Conversation so far:\n{recent}\n\n"
            f"The assistant just said: \"{agent_reply}\"\n"
            f"The facts to give in your answer: \"{template}\"\n"
            "Your reply:"
        )
        response = await self._provider.execute(LLMRequest(
            prompt=prompt, system_prompt=PERSONA_SYSTEM_PROMPT, max_tokens=150,
        ))
        if not response.success or not response.content:
            return None
        return response.content.strip().strip('"')

    def template_response(self, intent: AgentIntent) -> str:
        inv = self._persona.inventory
        child = self._current_child
        field_name = INTENT_TO_FIELD.get(intent)
        if field_name:
            self._provided.add(field_name)

        if intent == AgentIntent.GREETING:
            reply = default_initial_message(self._persona)
        elif intent == AgentIntent.ASKING_PARENT_NAME:
            reply = f"My name is {inv.parent_first_name} {inv.parent_last_name}."
        elif intent == AgentIntent.ASKING_SPELL_NAME:
            reply = f"{_spell(inv.parent_first_name)}, {_spell(inv.parent_last_name)}."
        elif intent == AgentIntent.ASKING_PHONE:
            reply = f"My phone number is {inv.parent_phone}."
        elif intent == AgentIntent.ASKING_EMAIL:
            reply = (
                f"It's {inv.parent_email}." if inv.parent_email
                else "I'd rather not give an email, you can call me instead."
            )
        elif intent == AgentIntent.ASKING_CHILD_COUNT:
            count = len(inv.children)
            reply = f"Just {'one' if count <= 1 else count}."
        elif intent == AgentIntent.ASKING_CHILD_NAME:
            reply = (
                f"My child's name is {child.first_name} {child.last_name}." if child
                else "It's for me, actually."
            )
        elif intent == AgentIntent.ASKING_CHILD_DOB:
            reply = f"{child.date_of_birth}." if child else "I'm not sure."
        elif intent == AgentIntent.ASKING_CHILD_AGE:
            age = _child_age(child.date_of_birth) if child else None
            reply = f"{child.first_name} is {age} years old." if child and age is not None else "I'm not sure."
        elif intent == AgentIntent.ASKING_NEW_PATIENT:
            is_new = child.is_new_patient if child else True
            reply = "Yes, this is our first time." if is_new else "No, we've been there before."
        elif intent == AgentIntent.ASKING_PREVIOUS_VISIT:
            reply = "Yes, we have." if inv.previous_visit_to_office else "No, we haven't."
        elif intent == AgentIntent.ASKING_PREVIOUS_ORTHO:
            had = inv.previous_orthodontic_treatment or (child.had_braces_before if child else False)
            reply = "Yes, they had braces before." if had else "No, no previous orthodontic treatment."
        elif intent == AgentIntent.ASKING_INSURANCE:
            reply = (
                f"Yes, we have {inv.insurance_provider}." if inv.has_insurance and inv.insurance_provider
                else "No, we don't have insurance."
            )
        elif intent == AgentIntent.ASKING_SPECIAL_NEEDS:
            needs = child.special_needs if child else None
            reply = f"Yes, {needs}." if needs else "No, nothing special."
        elif intent == AgentIntent.ASKING_TIME_PREFERENCE:
            pref = inv.preferred_time_of_day
            reply = f"{pref.capitalize()} works best." if pref != "any" else "Any time works for us."
            if self._persona.traits.changes_answer:
                reply = f"Mornings, I think. Actually no, sorry. {reply}"
        elif intent == AgentIntent.ASKING_LOCATION_PREFERENCE:
            reply = (
                f"The {inv.preferred_location} office, please." if inv.preferred_location
                else "Whichever is closest."
            )
        elif intent in (AgentIntent.CONFIRMING_INFORMATION, AgentIntent.CONFIRMING_SPELLING,
                        AgentIntent.ASKING_PROCEED_CONFIRMATION):
            reply = "Yes, that's correct."
        elif intent == AgentIntent.SEARCHING_AVAILABILITY:
            reply = "Okay, thank you."
        elif intent == AgentIntent.OFFERING_TIME_SLOTS:
            reply = "The first option works for us."
        elif intent == AgentIntent.REMINDING_BRING_CARD:
            reply = "Okay, I'll bring it."
        elif intent == AgentIntent.OFFERING_ADDRESS:
            reply = "Yes, please."
        elif intent in (AgentIntent.PROVIDING_ADDRESS, AgentIntent.PROVIDING_PARKING_INFO):
            reply = "Great, thank you."
        elif intent == AgentIntent.HANDLING_ERROR:
            reply = "No problem, I can wait."
        elif intent == AgentIntent.ASKING_CLARIFICATION:
            reply = "Sorry, I'd like to book an appointment for my child."
        elif intent in (AgentIntent.SAYING_GOODBYE, AgentIntent.CONFIRMING_BOOKING,
                        AgentIntent.INITIATING_TRANSFER):
            reply = "Thank you, goodbye."
        else:
            reply = "Yes."

        # Once a child's details are all given, move on to the next child.
        if intent == AgentIntent.ASKING_CHILD_DOB and self._child_index < len(inv.children) - 1:
            self._child_index += 1

        return self._shape(reply)

    def _shape(self, reply: str) -> str:
        traits = self._persona.traits
        if traits.verbosity == Verbosity.VERBOSE:
            reply = f"Oh sure, of course. {reply}"
            if traits.provides_extra_info:
                reply += " We've been meaning to get this sorted for a while now."
        elif traits.verbosity == Verbosity.TERSE and reply.endswith("."):
            reply = reply[:-1]
        return reply
