from agent_harness.conversation.intent_detector import IntentDetectionResult, IntentDetector
from agent_harness.conversation.intents import AgentIntent
from agent_harness.conversation.progress_tracker import FlowState, ProgressTracker
from agent_harness.conversation.response_generator import ResponseGenerator

__all__ = [
    "AgentIntent",
    "IntentDetectionResult",
    "IntentDetector",
    "FlowState",
    "ProgressTracker",
    "ResponseGenerator",
]
