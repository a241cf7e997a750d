"""Tests for the HTTP client that talks to the agent under test."""

import json

import httpx
import pytest

from agent_harness.clients.agent_client import AgentTransportError, HttpAgentClient
from agent_harness.config import AgentEndpointConfig

ENDPOINT = "http://agent.test/api/v1/prediction"


def make_client(handler, session_id="RUN-1-w0") -> HttpAgentClient:
    config = AgentEndpointConfig(
        url=ENDPOINT, api_key=None, timeout_sec=5.0, retry_on_timeout=True
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAgentClient(session_id=session_id, config=config, http_client=http)


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_parses_reply_and_tools(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "text": "I found your record.",
                "usedTools": [
                    {"tool": "lookupPatient", "toolInput": {"phone": "2155551234"}, "toolOutput": "ok"},
                    {"name": "getAvailableSlots", "input": "monday"},
                    "not-a-tool",
                ],
            })

        client = make_client(handler)
        response = await client.send_message("My number is 215-555-1234")
        await client.aclose()

        assert response.text == "I found your record."
        assert [c.tool for c in response.tool_calls] == ["lookupPatient", "getAvailableSlots"]
        assert response.tool_calls[0].tool_input == {"phone": "2155551234"}
        assert response.tool_calls[0].tool_output == "ok"
        assert response.tool_calls[1].tool_input == {"value": "monday"}
        assert response.response_time_ms >= 0
        assert response.raw["text"] == "I found your record."

        body = json.loads(requests[0].content)
        assert str(requests[0].url) == ENDPOINT
        assert body == {
            "question": "My number is 215-555-1234",
            "overrideConfig": {"sessionId": "RUN-1-w0"},
        }

    @pytest.mark.asyncio
    async def test_missing_text_is_empty(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        response = await client.send_message("Hello?")
        assert response.text == ""
        assert response.tool_calls == []

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = make_client(lambda request: httpx.Response(500, text="oops"))
        with pytest.raises(AgentTransportError, match="HTTP 500") as excinfo:
            await client.send_message("Hello?")
        assert excinfo.value.timed_out is False

    @pytest.mark.asyncio
    async def test_timeout_is_flagged(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = make_client(handler)
        with pytest.raises(AgentTransportError, match="timed out") as excinfo:
            await client.send_message("Hello?")
        assert excinfo.value.timed_out is True

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        with pytest.raises(AgentTransportError, match="request failed"):
            await client.send_message("Hello?")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = make_client(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(AgentTransportError, match="request failed"):
            await client.send_message("Hello?")

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        client = make_client(lambda request: httpx.Response(200, json=["hi"]))
        with pytest.raises(AgentTransportError, match="Unexpected agent response type: list"):
            await client.send_message("Hello?")


class TestSessions:
    @pytest.mark.asyncio
    async def test_new_session_changes_request_session(self):
        sessions = []

        def handler(request):
            sessions.append(json.loads(request.content)["overrideConfig"]["sessionId"])
            return httpx.Response(200, json={"text": "hi"})

        client = make_client(handler)
        first = client.new_session("RUN-1-w0")
        await client.send_message("one")
        second = client.new_session("RUN-1-w0")
        await client.send_message("two")

        assert first.startswith("RUN-1-w0-")
        assert first != second
        assert sessions == [first, second]
        assert client.session_id == second

    def test_default_session_id(self):
        client = make_client(lambda request: httpx.Response(200, json={}), session_id=None)
        assert client.session_id.startswith("session-")
