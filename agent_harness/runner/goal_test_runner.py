"""
Goal test runner: drives one simulated call end-to-end.

Each turn the runner classifies the agent's reply, decides whether the
call is over, and otherwise answers as the persona:

    initial message -> reply
    loop:
        turn / time ceiling reached?         -> stop (fails the test)
        detect intent of the agent's reply
        terminal intent (goodbye, booked,
        transfer)?                           -> stop
        persona reply, progress update
        critical constraint / issue?         -> stop
        send reply, snapshot progress
        all required goals met?              -> stop

Under an experiment the whole loop runs with the selected variant's
content applied to its target file. The original content is restored
when the run ends, whether it passed, failed or raised.
"""

import asyncio
import sqlite3
import time
from datetime import datetime, timezone
from typing import Optional

from agent_harness.clients.agent_client import AgentTransportError, HttpAgentClient
from agent_harness.clients.llm_provider import LLMProvider
from agent_harness.config import RunnerConfig, settings
from agent_harness.conversation.intent_detector import IntentDetector
from agent_harness.conversation.intents import TERMINAL_INTENTS
from agent_harness.conversation.progress_tracker import ProgressTracker
from agent_harness.conversation.response_generator import ResponseGenerator
from agent_harness.conversation.scenario import GoalOrientedTestCase
from agent_harness.errors import ExperimentNotFoundError, ExperimentStateError
from agent_harness.evaluation.goal_evaluator import GoalEvaluator, GoalTestResult, StopReason
from agent_harness.experiments.experiment_service import ExperimentService
from agent_harness.logging_context import get_test_logger
from agent_harness.schemas.conversation_schema import (
    AgentResponse,
    ConversationTurn,
    Role,
    ToolCall,
)
from agent_harness.storage.database import HarnessDatabase

logger = get_test_logger(__name__)


class _Conversation:
    """Mutable bookkeeping for one run."""

    def __init__(self, test_case: GoalOrientedTestCase, run_id: str, test_id: str) -> None:
        self.test_case = test_case
        self.run_id = run_id
        # Storage key; differs from test_case.id when one test is sampled repeatedly
        self.test_id = test_id
        self.transcript: list[ConversationTurn] = []
        self.tool_calls: list[tuple[int, ToolCall]] = []
        self.started = time.monotonic()

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000


class GoalTestRunner:
    """Runs goal-oriented test cases against the agent under test."""

    def __init__(
        self,
        agent_client: HttpAgentClient,
        intent_detector: IntentDetector,
        database: Optional[HarnessDatabase] = None,
        evaluator: Optional[GoalEvaluator] = None,
        config: Optional[RunnerConfig] = None,
        llm_provider: Optional[LLMProvider] = None,
        experiment_service: Optional[ExperimentService] = None,
        retry_on_timeout: Optional[bool] = None,
    ) -> None:
        self._agent = agent_client
        self._session_prefix = agent_client.session_id
        self._intents = intent_detector
        self._db = database
        self._evaluator = evaluator or GoalEvaluator()
        self._config = config or settings.runner
        self._llm = llm_provider
        self._experiments = experiment_service
        self._retry_on_timeout = (
            settings.agent.retry_on_timeout if retry_on_timeout is None else retry_on_timeout
        )

    @property
    def session_id(self) -> str:
        return self._agent.session_id

    async def aclose(self) -> None:
        await self._agent.aclose()

    async def run_test(
        self,
        test_case: GoalOrientedTestCase,
        run_id: str,
        test_id_override: Optional[str] = None,
        experiment_id: Optional[str] = None,
    ) -> GoalTestResult:
        """Run one test case and persist its result. Never raises for agent or model failures.

        ``test_id_override`` only changes the key results are stored under, so
        repeated samples of one test stay separate. Experiment membership and
        variant selection always use ``test_case.id``.
        """
        test_id = test_id_override or test_case.id
        if experiment_id and self._experiments is not None:
            return await self._run_in_experiment(test_case, run_id, test_id, experiment_id)
        if experiment_id:
            logger.warning(
                "Experiment %s requested but runner has no experiment service", experiment_id
            )
        return await self._run_and_persist(test_case, run_id, test_id)

    async def _run_in_experiment(
        self, test_case: GoalOrientedTestCase, run_id: str, test_id: str, experiment_id: str
    ) -> GoalTestResult:
        experiments = self._experiments
        try:
            selection = experiments.select_variant(experiment_id, test_case.id)
        except (ExperimentNotFoundError, ExperimentStateError) as e:
            logger.warning("Running %s outside experiment: %s", test_id, e)
            return await self._run_and_persist(test_case, run_id, test_id)

        logger.info(
            "Test %s -> variant %s (%s) of experiment %s",
            test_id, selection.variant_id, selection.variant_role.value, experiment_id,
        )
        started_at = datetime.now(timezone.utc)
        async with experiments.variants.applied(selection.target_file, selection.content):
            result = await self._run_and_persist(test_case, run_id, test_id)

        experiments.record_test_result(selection, result, started_at)
        if experiments.auto_conclude:
            decision = experiments.maybe_conclude(experiment_id)
            if decision is not None:
                logger.info(
                    "Experiment %s concluded (%s): %s",
                    experiment_id, decision.reason.value, decision.message,
                )
        return result

    async def _run_and_persist(
        self, test_case: GoalOrientedTestCase, run_id: str, test_id: str
    ) -> GoalTestResult:
        convo = _Conversation(test_case, run_id, test_id)
        try:
            result = await self._converse(convo)
        except Exception as e:
            logger.exception("Test %s crashed", test_id)
            result = GoalTestResult.errored(
                test_case, run_id, f"{type(e).__name__}: {e}",
                duration_ms=convo.elapsed_ms, transcript=convo.transcript,
            )
        result.test_id = test_id
        self._persist(result, convo)
        return result

    async def _converse(self, convo: _Conversation) -> GoalTestResult:
        test_case = convo.test_case
        limits = test_case.response_config
        max_turns = limits.max_turns or self._config.max_turns
        max_duration_ms = (limits.max_duration_sec or self._config.max_duration_sec) * 1000

        tracker = ProgressTracker(test_case.goals)
        tracker.set_transcript(convo.transcript)
        responder = ResponseGenerator(test_case.persona, self._llm, use_llm=limits.use_llm)
        self._agent.new_session(self._session_prefix)

        turn = 1
        opening = responder.initial_message(test_case.initial_message)
        reply, error = await self._exchange(convo, opening, turn)
        stop_reason = StopReason.ERROR if error else None

        while stop_reason is None:
            if turn >= max_turns:
                stop_reason = StopReason.MAX_TURNS
                break
            if convo.elapsed_ms >= max_duration_ms:
                stop_reason = StopReason.MAX_DURATION
                break

            intent = await self._intents.detect_intent(
                reply.text, convo.transcript, tracker.pending_fields
            )
            logger.debug(
                "Turn %d intent %s (%.2f)", turn, intent.primary_intent.value, intent.confidence
            )
            if intent.primary_intent in TERMINAL_INTENTS:
                tracker.update(intent, "", turn)
                stop_reason = StopReason.TERMINAL_INTENT
                break

            utterance = await responder.generate(intent, reply.text, convo.transcript)
            tracker.update(intent, utterance, turn)

            if self._config.abort_on_critical_violation:
                violations = self._evaluator.check_running_constraints(test_case, tracker)
                if violations:
                    logger.warning("Critical constraint violated: %s", violations[0].message)
                    stop_reason = StopReason.CONSTRAINT_VIOLATION
                    break
            if tracker.should_abort():
                stop_reason = StopReason.CRITICAL_ISSUE
                break

            if self._config.delay_between_turns_ms > 0:
                await asyncio.sleep(self._config.delay_between_turns_ms / 1000)

            turn += 1
            reply, error = await self._exchange(convo, utterance, turn)
            if error:
                stop_reason = StopReason.ERROR
                break

            self._save_snapshot(convo, turn, tracker)
            if tracker.goals_complete():
                stop_reason = StopReason.GOALS_COMPLETE

        return self._evaluator.evaluate_test(
            test_case, tracker, convo.transcript, convo.run_id,
            convo.elapsed_ms, stop_reason, error,
        )

    async def _exchange(
        self, convo: _Conversation, message: str, turn: int
    ) -> tuple[Optional[AgentResponse], Optional[str]]:
        """Send one caller message. Returns the reply, or an error message on transport failure."""
        step_id = f"turn-{turn}"
        convo.transcript.append(ConversationTurn(role=Role.CALLER, content=message, step_id=step_id))
        try:
            response = await self._send_with_retry(message)
        except AgentTransportError as e:
            logger.error("Turn %d transport failure: %s", turn, e)
            convo.transcript.append(ConversationTurn(
                role=Role.AGENT, content=f"[error] {e}", step_id=step_id, is_error=True,
            ))
            return None, str(e)

        convo.transcript.append(ConversationTurn(
            role=Role.AGENT,
            content=response.text,
            response_time_ms=response.response_time_ms,
            step_id=step_id,
        ))
        convo.tool_calls.extend((turn, call) for call in response.tool_calls)
        return response, None

    async def _send_with_retry(self, message: str) -> AgentResponse:
        try:
            return await self._agent.send_message(message)
        except AgentTransportError as e:
            if not (e.timed_out and self._retry_on_timeout):
                raise
            logger.warning("Agent timed out, retrying once")
        return await self._agent.send_message(message)

    def _save_snapshot(self, convo: _Conversation, turn: int, tracker: ProgressTracker) -> None:
        if self._db is None or not self._config.save_progress_snapshots:
            return
        try:
            self._db.save_progress_snapshot(
                convo.run_id, convo.test_id, turn, tracker.snapshot_dict()
            )
        except sqlite3.Error as e:
            logger.warning("Could not save progress snapshot for turn %d: %s", turn, e)

    def _persist(self, result: GoalTestResult, convo: _Conversation) -> None:
        if self._db is None:
            return
        try:
            self._db.save_test_result(result)
            self._db.save_transcript(result.run_id, result.test_id, result.transcript)
            self._db.save_api_calls(result.run_id, result.test_id, convo.tool_calls)
        except sqlite3.Error:
            logger.exception("Failed to persist result of %s", result.test_id)
