"""
HTTP client for the voice agent under test.

Talks to a prediction-style endpoint: each request carries the caller's
message and a session ID so the agent keeps per-conversation memory.
Every client instance owns exactly one session at a time; workers never
share a client.
"""

import logging
import time
import uuid
from typing import Any, Optional

import httpx

from agent_harness.config import AgentEndpointConfig, settings
from agent_harness.schemas.conversation_schema import AgentResponse, ToolCall

logger = logging.getLogger(__name__)


class AgentTransportError(Exception):
    """Raised when the agent endpoint cannot be reached or answers badly."""

    def __init__(self, message: str, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


def _parse_tool_calls(payload: dict[str, Any]) -> list[ToolCall]:
    raw_tools = payload.get("usedTools") or payload.get("toolCalls") or []
    calls = []
    for item in raw_tools:
        if not isinstance(item, dict):
            continue
        tool_input = item.get("toolInput") or item.get("input") or {}
        calls.append(
            ToolCall(
                tool=str(item.get("tool") or item.get("name") or "unknown"),
                tool_input=tool_input if isinstance(tool_input, dict) else {"value": tool_input},
                tool_output=item.get("toolOutput", item.get("output")),
            )
        )
    return calls


class HttpAgentClient:
    """Sends caller messages to the agent endpoint over HTTP."""

    def __init__(
        self,
        session_id: Optional[str] = None,
        config: Optional[AgentEndpointConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config or settings.agent
        self._session_id = session_id or f"session-{uuid.uuid4().hex[:12]}"
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        self._http = http_client or httpx.AsyncClient(
            timeout=self._config.timeout_sec, headers=headers
        )

    @property
    def session_id(self) -> str:
        return self._session_id

    def new_session(self, prefix: str = "session") -> str:
        """Start a fresh conversation on the agent side."""
        self._session_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
        return self._session_id

    async def send_message(self, message: str) -> AgentResponse:
        payload = {
            "question": message,
            "overrideConfig": {"sessionId": self._session_id},
        }
        start = time.monotonic()
        try:
            response = await self._http.post(self._config.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise AgentTransportError(
                f"Agent endpoint timed out after {self._config.timeout_sec}s", timed_out=True
            ) from e
        except httpx.HTTPStatusError as e:
            raise AgentTransportError(
                f"Agent endpoint returned HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise AgentTransportError(f"Agent endpoint request failed: {e}") from e

        elapsed_ms = (time.monotonic() - start) * 1000
        if not isinstance(body, dict):
            raise AgentTransportError(f"Unexpected agent response type: {type(body).__name__}")

        logger.debug("Agent replied in %.0fms (session %s)", elapsed_ms, self._session_id)
        return AgentResponse(
            text=str(body.get("text") or ""),
            tool_calls=_parse_tool_calls(body),
            response_time_ms=elapsed_ms,
            raw=body,
        )

    async def aclose(self) -> None:
        await self._http.aclose()
