"""
Intent detection for agent replies.

Classifies each agent reply into the closed ``AgentIntent`` vocabulary.
The language-model path understands paraphrases; the keyword path is
deterministic and always available. Results are cached briefly, keyed by
the normalized reply prefix and the set of still-pending fields, because
simulated callers trigger near-identical agent phrasings over and over.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from agent_harness.clients.llm_provider import LLMProvider, LLMRequest
from agent_harness.config import IntentConfig, settings
from agent_harness.conversation.intents import (
    INTENT_DESCRIPTIONS,
    TERMINAL_INTENTS,
    AgentIntent,
    detect_intents_by_keywords,
    is_question,
    parse_intent,
)
from agent_harness.schemas.conversation_schema import ConversationTurn
from agent_harness.utils import normalize_whitespace

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX_CHARS = 100
HISTORY_TURNS_IN_PROMPT = 4
KEYWORD_CONFIDENCE = 0.7
UNKNOWN_CONFIDENCE = 0.3
DEFAULT_LLM_CONFIDENCE = 0.5

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)

SYSTEM_PROMPT = (
    "You classify what a dental/orthodontic scheduling assistant is trying to do "
    "in its latest reply. Answer with JSON only."
)


@dataclass
class IntentDetectionResult:
    primary_intent: AgentIntent
    confidence: float
    secondary_intents: list[AgentIntent] = field(default_factory=list)
    is_question: bool = False
    requires_response: bool = True
    reasoning: str = ""

    @property
    def all_intents(self) -> list[AgentIntent]:
        return [self.primary_intent, *self.secondary_intents]


def make_cache_key(agent_reply: str, pending_fields: Sequence[str]) -> str:
    prefix = normalize_whitespace(agent_reply[:CACHE_KEY_PREFIX_CHARS].lower())
    return f"{prefix}|{','.join(sorted(pending_fields))}"


class IntentDetector:
    """Classifies agent replies, preferring the model and falling back to keywords."""

    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        config: Optional[IntentConfig] = None,
    ) -> None:
        self._provider = provider
        self._config = config or settings.intent
        self._cache: dict[str, tuple[float, IntentDetectionResult]] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def detect_intent(
        self,
        agent_reply: str,
        history: Sequence[ConversationTurn] = (),
        pending_fields: Sequence[str] = (),
    ) -> IntentDetectionResult:
        key = make_cache_key(agent_reply, pending_fields)
        cached = self._get_cached(key)
        if cached is not None:
            return cached

        result: Optional[IntentDetectionResult] = None
        if self._config.use_llm and self._provider is not None and self._provider.is_available():
            result = await self._detect_with_llm(agent_reply, history, pending_fields)
        if result is None:
            result = self.detect_with_keywords(agent_reply)

        self._put_cached(key, result)
        return result

    # --- Cache ---

    def _get_cached(self, key: str) -> Optional[IntentDetectionResult]:
        if not self._config.cache_enabled:
            return None
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if time.monotonic() - stored_at > self._config.cache_ttl_sec:
            del self._cache[key]
            return None
        return result

    def _put_cached(self, key: str, result: IntentDetectionResult) -> None:
        if not self._config.cache_enabled:
            return
        self._cache[key] = (time.monotonic(), result)
        if len(self._cache) > self._config.cache_max_entries:
            self._prune_expired()

    def _prune_expired(self) -> None:
        now = time.monotonic()
        expired = [
            k for k, (stored_at, _) in self._cache.items()
            if now - stored_at > self._config.cache_ttl_sec
        ]
        for k in expired:
            del self._cache[k]

    # --- Keyword path ---

    def detect_with_keywords(self, agent_reply: str) -> IntentDetectionResult:
        matches = detect_intents_by_keywords(agent_reply)
        primary = matches[0] if matches else AgentIntent.UNKNOWN
        return IntentDetectionResult(
            primary_intent=primary,
            confidence=UNKNOWN_CONFIDENCE if primary == AgentIntent.UNKNOWN else KEYWORD_CONFIDENCE,
            secondary_intents=matches[1:],
            is_question=is_question(agent_reply),
            requires_response=primary not in TERMINAL_INTENTS,
            reasoning=f"Keyword match: {primary.value}" if matches else "No keyword matched",
        )

    # --- Model path ---

    def build_prompt(
        self,
        agent_reply: str,
        history: Sequence[ConversationTurn],
        pending_fields: Sequence[str],
    ) -> str:
        recent = history[-HISTORY_TURNS_IN_PROMPT:]
        history_text = "\n".join(f"{t.role.value}: {t.content}" for t in recent) or "(none)"
        vocabulary = "\n".join(
            f"- {intent.value}: {desc}" for intent, desc in INTENT_DESCRIPTIONS.items()
        )
        pending = ", ".join(pending_fields) or "(none)"
        return (
            f"Recent conversation:\n{history_text}\n\n"
            f"Latest agent reply:\n\"{agent_reply}\"\n\n"
            f"Information still needed from the caller: {pending}\n\n"
            f"Possible intents:\n{vocabulary}\n\n"
            "Rules:\n"
            "- Use offering_time_slots only when the reply names a specific day or time; "
            "if the agent is only looking for availability, use searching_availability.\n"
            "- Questions about morning vs afternoon are asking_time_preference.\n"
            "- Pick the single most important intent as primary_intent.\n\n"
            "Respond with JSON: {\"primary_intent\": \"...\", \"confidence\": 0.0-1.0, "
            "\"secondary_intents\": [...], \"is_question\": true/false, "
            "\"requires_response\": true/false, \"reasoning\": \"...\"}"
        )

    async def _detect_with_llm(
        self,
        agent_reply: str,
        history: Sequence[ConversationTurn],
        pending_fields: Sequence[str],
    ) -> Optional[IntentDetectionResult]:
        response = await self._provider.execute(LLMRequest(
            prompt=self.build_prompt(agent_reply, history, pending_fields),
            system_prompt=SYSTEM_PROMPT,
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            timeout_sec=self._config.timeout_sec,
        ))
        if not response.success or not response.content:
            logger.info("Intent model unavailable (%s), using keywords", response.error)
            return None
        return self.parse_response(response.content, agent_reply)

    def parse_response(self, content: str, agent_reply: str) -> IntentDetectionResult:
        """Turn the model's JSON answer into a result.

        Malformed output falls back to the keyword matcher, and the parse
        failure is kept in ``reasoning`` so it shows up in reports.
        """
        try:
            match = _JSON_BLOCK_RE.search(content)
            if match is None:
                raise ValueError("no JSON object in response")
            data = json.loads(match.group(0))
            if not isinstance(data, dict):
                raise ValueError("JSON response is not an object")
        except ValueError as e:
            logger.warning("Failed to parse intent response: %s", e)
            fallback = self.detect_with_keywords(agent_reply)
            fallback.reasoning = f"Failed to parse LLM response ({e}); {fallback.reasoning}"
            return fallback

        primary = parse_intent(data.get("primary_intent"))
        try:
            confidence = float(data.get("confidence", DEFAULT_LLM_CONFIDENCE))
        except (TypeError, ValueError):
            confidence = DEFAULT_LLM_CONFIDENCE
        confidence = min(1.0, max(0.0, confidence))

        secondary = []
        for raw in data.get("secondary_intents") or []:
            intent = parse_intent(raw if isinstance(raw, str) else None)
            if intent != AgentIntent.UNKNOWN and intent != primary and intent not in secondary:
                secondary.append(intent)

        return IntentDetectionResult(
            primary_intent=primary,
            confidence=confidence,
            secondary_intents=secondary,
            is_question=bool(data.get("is_question", is_question(agent_reply))),
            requires_response=bool(
                data.get("requires_response", primary not in TERMINAL_INTENTS)
            ),
            reasoning=str(data.get("reasoning", "")),
        )
