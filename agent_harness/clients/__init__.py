from agent_harness.clients.agent_client import AgentTransportError, HttpAgentClient
from agent_harness.clients.content_source import ContentVersion, FileContentSource
from agent_harness.clients.llm_provider import LLMProvider, LLMRequest, LLMResponse

__all__ = [
    "AgentTransportError",
    "HttpAgentClient",
    "ContentVersion",
    "FileContentSource",
    "LLMProvider",
    "LLMRequest",
    "LLMResponse",
]
