"""Tests for the keyword intent matcher, the detector's model path and its cache."""

import asyncio
import json

import pytest

from agent_harness.conversation.intent_detector import (
    KEYWORD_CONFIDENCE,
    UNKNOWN_CONFIDENCE,
    IntentDetector,
    make_cache_key,
)
from agent_harness.conversation.intents import (
    AgentIntent,
    detect_intents_by_keywords,
    is_question,
    parse_intent,
)
from tests.conftest import FakeLLMProvider, make_intent_config


def _model_answer(intent: str, confidence: float = 0.95, **extra) -> str:
    return json.dumps({"primary_intent": intent, "confidence": confidence, **extra})


class TestKeywordRules:
    @pytest.mark.parametrize("reply,expected", [
        ("Thanks for calling! May I have your name?", AgentIntent.ASKING_PARENT_NAME),
        ("Could I get your phone number?", AgentIntent.ASKING_PHONE),
        ("And what is your child's date of birth?", AgentIntent.ASKING_CHILD_DOB),
        ("How many children are we scheduling today?", AgentIntent.ASKING_CHILD_COUNT),
        ("We have an opening on Tuesday at 3 pm.", AgentIntent.OFFERING_TIME_SLOTS),
        ("Let me check availability for you.", AgentIntent.SEARCHING_AVAILABILITY),
        ("Do you prefer morning or afternoon?", AgentIntent.ASKING_TIME_PREFERENCE),
        ("Do you have insurance?", AgentIntent.ASKING_INSURANCE),
        ("Please bring your insurance card.", AgentIntent.REMINDING_BRING_CARD),
        ("I have Sarah Johnson, is that correct?", AgentIntent.CONFIRMING_INFORMATION),
        ("Let me transfer you to one of our team members.", AgentIntent.INITIATING_TRANSFER),
        ("Sorry, I didn't catch that.", AgentIntent.ASKING_CLARIFICATION),
    ])
    def test_primary_intent(self, reply, expected):
        assert detect_intents_by_keywords(reply)[0] == expected

    def test_terminal_intents_take_priority(self):
        matches = detect_intents_by_keywords("Your appointment is booked. Goodbye!")
        assert matches[0] == AgentIntent.SAYING_GOODBYE
        assert AgentIntent.CONFIRMING_BOOKING in matches

    def test_searching_without_a_time_is_not_an_offer(self):
        matches = detect_intents_by_keywords("Let me look for availability.")
        assert AgentIntent.OFFERING_TIME_SLOTS not in matches

    def test_count_before_a_word_is_not_a_time(self):
        matches = detect_intents_by_keywords("We have 2 amazing doctors available.")
        assert AgentIntent.OFFERING_TIME_SLOTS not in matches

    @pytest.mark.parametrize("reply", [
        "I have 9am or 2:30 p.m. available.",
        "We have 10 pm open tonight.",
    ])
    def test_time_tokens_still_offer_slots(self, reply):
        assert AgentIntent.OFFERING_TIME_SLOTS in detect_intents_by_keywords(reply)

    def test_no_match(self):
        assert detect_intents_by_keywords("Hmm.") == []

    def test_is_question(self):
        assert is_question("Do you have insurance")
        assert is_question("Your name?")
        assert not is_question("Okay, thank you.")

    def test_parse_intent(self):
        assert parse_intent(" ASKING_PHONE ") == AgentIntent.ASKING_PHONE
        assert parse_intent("flying") == AgentIntent.UNKNOWN
        assert parse_intent(None) == AgentIntent.UNKNOWN


class TestKeywordDetection:
    def setup_method(self):
        self.detector = IntentDetector(None, make_intent_config())

    def test_matched_reply(self):
        result = self.detector.detect_with_keywords("Could I get your phone number?")
        assert result.primary_intent == AgentIntent.ASKING_PHONE
        assert result.confidence == KEYWORD_CONFIDENCE
        assert result.is_question is True
        assert result.requires_response is True

    def test_unmatched_reply_is_unknown(self):
        result = self.detector.detect_with_keywords("Hmm.")
        assert result.primary_intent == AgentIntent.UNKNOWN
        assert result.confidence == UNKNOWN_CONFIDENCE
        assert result.reasoning == "No keyword matched"

    def test_terminal_reply_needs_no_response(self):
        result = self.detector.detect_with_keywords("Your appointment is booked. Goodbye!")
        assert result.requires_response is False
        assert AgentIntent.CONFIRMING_BOOKING in result.secondary_intents
        assert result.all_intents[0] == AgentIntent.SAYING_GOODBYE


class TestParseResponse:
    def setup_method(self):
        self.detector = IntentDetector(None, make_intent_config())

    def test_json_inside_prose(self):
        content = "Sure! " + _model_answer("asking_email", 0.8) + " Hope that helps."
        result = self.detector.parse_response(content, "What's your e-mail?")
        assert result.primary_intent == AgentIntent.ASKING_EMAIL
        assert result.confidence == pytest.approx(0.8)

    def test_confidence_is_clamped(self):
        result = self.detector.parse_response(_model_answer("asking_phone", 1.7), "phone?")
        assert result.confidence == 1.0

    def test_secondary_intents_are_filtered(self):
        content = _model_answer(
            "asking_phone", secondary_intents=["asking_email", "bogus", "asking_phone", "asking_email"]
        )
        result = self.detector.parse_response(content, "phone and email?")
        assert result.secondary_intents == [AgentIntent.ASKING_EMAIL]

    def test_unknown_label_maps_to_unknown(self):
        result = self.detector.parse_response(_model_answer("flying"), "Hmm.")
        assert result.primary_intent == AgentIntent.UNKNOWN

    def test_malformed_json_falls_back_to_keywords(self):
        result = self.detector.parse_response("{not json", "Could I get your phone number?")
        assert result.primary_intent == AgentIntent.ASKING_PHONE
        assert result.reasoning.startswith("Failed to parse LLM response")

    def test_no_json_object_falls_back_to_keywords(self):
        result = self.detector.parse_response("[1, 2]", "Hmm.")
        assert result.primary_intent == AgentIntent.UNKNOWN
        assert "Failed to parse" in result.reasoning


class TestModelPath:
    @pytest.mark.asyncio
    async def test_uses_model_when_available(self):
        provider = FakeLLMProvider([_model_answer("asking_child_name")])
        detector = IntentDetector(provider, make_intent_config(use_llm=True))
        result = await detector.detect_intent("Who is the appointment for?")
        assert result.primary_intent == AgentIntent.ASKING_CHILD_NAME
        assert len(provider.requests) == 1
        assert "Who is the appointment for?" in provider.requests[0].prompt

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_keywords(self):
        provider = FakeLLMProvider([])
        detector = IntentDetector(provider, make_intent_config(use_llm=True))
        result = await detector.detect_intent("Could I get your phone number?")
        assert result.primary_intent == AgentIntent.ASKING_PHONE
        assert result.confidence == KEYWORD_CONFIDENCE

    @pytest.mark.asyncio
    async def test_unavailable_provider_is_not_called(self):
        provider = FakeLLMProvider([_model_answer("asking_phone")], available=False)
        detector = IntentDetector(provider, make_intent_config(use_llm=True))
        await detector.detect_intent("Hmm.")
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_model_disabled_by_config(self):
        provider = FakeLLMProvider([_model_answer("asking_phone")])
        detector = IntentDetector(provider, make_intent_config(use_llm=False))
        result = await detector.detect_intent("Hmm.")
        assert result.primary_intent == AgentIntent.UNKNOWN
        assert provider.requests == []

    def test_prompt_lists_pending_fields_and_vocabulary(self):
        detector = IntentDetector(None, make_intent_config())
        prompt = detector.build_prompt("Your name?", [], ["parent_name", "child_dob"])
        assert "parent_name, child_dob" in prompt
        assert "- offering_time_slots:" in prompt


class TestIntentCache:
    def test_cache_key_normalizes_reply_and_sorts_fields(self):
        assert make_cache_key("  Hello   THERE ", ["b", "a"]) == "hello there|a,b"

    def test_cache_key_uses_reply_prefix(self):
        base = "x" * 100
        assert make_cache_key(base + " first", []) == make_cache_key(base + " second", [])

    @pytest.mark.asyncio
    async def test_repeat_reply_is_served_from_cache(self):
        provider = FakeLLMProvider([_model_answer("asking_phone")])
        detector = IntentDetector(provider, make_intent_config(use_llm=True))
        first = await detector.detect_intent("Phone please", pending_fields=["parent_phone"])
        second = await detector.detect_intent("phone   PLEASE", pending_fields=["parent_phone"])
        assert first is second
        assert len(provider.requests) == 1
        assert detector.cache_size == 1

    @pytest.mark.asyncio
    async def test_different_pending_fields_miss_the_cache(self):
        provider = FakeLLMProvider([_model_answer("asking_phone")])
        detector = IntentDetector(provider, make_intent_config(use_llm=True))
        await detector.detect_intent("Phone please", pending_fields=["parent_phone"])
        await detector.detect_intent("Phone please", pending_fields=[])
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_expired_entries_are_refreshed(self):
        provider = FakeLLMProvider([_model_answer("asking_phone")])
        detector = IntentDetector(provider, make_intent_config(use_llm=True, cache_ttl_sec=0.01))
        await detector.detect_intent("Phone please")
        await asyncio.sleep(0.05)
        await detector.detect_intent("Phone please")
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self):
        provider = FakeLLMProvider([_model_answer("asking_phone")])
        detector = IntentDetector(provider, make_intent_config(use_llm=True, cache_enabled=False))
        await detector.detect_intent("Phone please")
        await detector.detect_intent("Phone please")
        assert len(provider.requests) == 2
        assert detector.cache_size == 0

    @pytest.mark.asyncio
    async def test_clear_cache(self):
        detector = IntentDetector(None, make_intent_config())
        await detector.detect_intent("Hmm.")
        detector.clear_cache()
        assert detector.cache_size == 0
