"""
Tests for the upstream adapters.

HttpUpstream runs against httpx.MockTransport; LocalUpstream against a real
AgentBackend with a fake generation client.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import httpx
import pytest

from agents.registry import build_default_registry
from conftest import FakeGenerationClient
from errors import ApprovalConflict, RunNotFound, UpstreamUnavailable
from models.events import encode_sse
from services.agent_backend import AgentBackend
from services.upstream import HttpUpstream, LocalUpstream


def _upstream(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://agent")
    return HttpUpstream("http://agent", client=client)


class TestHttpUpstream:
    def setup_method(self):
        self.requests = []

    @pytest.mark.asyncio
    async def test_start_run_posts_request_with_run_id(self):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(201, json={"runId": "run-1", "status": "pending"})

        upstream = _upstream(handler)
        summary = await upstream.start_run("run-1", "prd", {"messages": [{"id": "m1", "content": "Hi"}]})

        assert summary == {"runId": "run-1", "status": "pending"}
        sent = self.requests[0]
        assert sent.method == "POST"
        assert sent.url.path == "/runs"
        body = json.loads(sent.content)
        assert body["runId"] == "run-1"
        assert body["artifactKind"] == "prd"

    @pytest.mark.asyncio
    async def test_not_found_maps_to_run_not_found(self):
        upstream = _upstream(lambda request: httpx.Response(404, json={"detail": "missing"}))
        with pytest.raises(RunNotFound):
            await upstream.fetch_snapshot("run-1")

    @pytest.mark.asyncio
    async def test_conflict_maps_to_approval_conflict(self):
        upstream = _upstream(lambda request: httpx.Response(409, json={"detail": "not paused"}))
        with pytest.raises(ApprovalConflict):
            await upstream.resume("run-1")

    @pytest.mark.asyncio
    async def test_backend_error_keeps_status(self):
        upstream = _upstream(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await upstream.fetch_snapshot("run-1")
        assert exc_info.value.status_code == 500
        assert str(exc_info.value) == "Backend error: 500 Internal Server Error"
        assert exc_info.value.detail == "boom"

    @pytest.mark.asyncio
    async def test_unreachable_backend_is_502(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        upstream = _upstream(handler)
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await upstream.start_run("run-1", "prd", {})
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_step_decisions_use_subagent_path(self):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(200, json={"status": "running"})

        upstream = _upstream(handler)
        await upstream.resume("run-1", step_id="research", feedback="ok")
        await upstream.reject("run-1")

        assert self.requests[0].url.path == "/runs/run-1/subagent/research/approve"
        assert json.loads(self.requests[0].content) == {"approved": True, "feedback": "ok"}
        assert self.requests[1].url.path == "/runs/run-1/approve"
        assert json.loads(self.requests[1].content)["approved"] is False

    @pytest.mark.asyncio
    async def test_open_stream_yields_body_and_closes_once(self):
        body = encode_sse("progress", {"type": "step.started"}) + encode_sse("complete", {"artifact": None})

        def handler(request):
            assert request.headers["accept"] == "text/event-stream"
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        stream = await _upstream(handler).open_stream("run-1")
        received = b"".join([chunk async for chunk in stream])
        await stream.aclose()
        await stream.aclose()

        assert received == body

    @pytest.mark.asyncio
    async def test_open_stream_error_status(self):
        upstream = _upstream(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await upstream.open_stream("run-1")
        assert exc_info.value.status_code == 503
        assert "503" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        upstream = HttpUpstream("http://agent", client=client)
        await upstream.aclose()
        assert not client.is_closed
        await client.aclose()


class TestLocalUpstream:
    def setup_method(self):
        self.upstream = LocalUpstream(AgentBackend(build_default_registry(FakeGenerationClient())))

    @pytest.mark.asyncio
    async def test_start_and_stream(self):
        summary = await self.upstream.start_run("run-1", "prd", {
            "messages": [{"id": "m1", "role": "user", "content": "Build a habit tracker for remote teams"}],
        })
        assert summary["stepCount"] == 7

        stream = await self.upstream.open_stream("run-1")
        received = b"".join([chunk async for chunk in stream])
        await stream.aclose()

        assert b"event: complete" in received

    @pytest.mark.asyncio
    async def test_unknown_run(self):
        with pytest.raises(RunNotFound):
            await self.upstream.fetch_snapshot("ghost")
