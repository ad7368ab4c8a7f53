"""
Tests for the stream relay: SSE parsing, event normalization, store
mutation, liveness and subscription ownership.

Upstreams are in-memory byte streams; nothing touches the network.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import json

import anyio
import httpx
import pytest

from api.run_store import RunStore
from models.events import (
    CompleteEvent,
    ErrorEvent,
    PendingApprovalEvent,
    ProgressEvent,
    encode_sse,
    normalize_event,
)
from services.stream_relay import CANCELLED_ERROR, STREAM_FAILED_ERROR, SseFrameParser, StreamRelay


class FakeStream:
    """
    Yields the given chunks, then optionally raises or hangs like an idle
    upstream. With slow_close, aclose() suspends before counting the close,
    like a real HTTP response releasing its connection.
    """

    def __init__(self, chunks, hang=False, error=None, slow_close=False):
        self.chunks = list(chunks)
        self.hang = hang
        self.error = error
        self.slow_close = slow_close
        self.close_calls = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.sleep(3600)

    async def aclose(self):
        if self.slow_close:
            await anyio.sleep(0)
        self.close_calls += 1


def frame(event_type, data):
    return encode_sse(event_type, data)


async def collect(relay, run_id, stream, token):
    return [chunk async for chunk in relay.relay(run_id, stream, token)]


class TestSseFrameParser:
    def test_frame_split_across_chunks(self):
        parser = SseFrameParser()
        assert parser.feed(b'event: progress\ndata: {"type": ') == []
        assert parser.feed(b'"step.started"}\n\n') == [("progress", '{"type": "step.started"}')]

    def test_multibyte_character_split_across_chunks(self):
        parser = SseFrameParser()
        encoded = 'event: progress\ndata: {"message": "Café"}\n\n'.encode("utf-8")
        split = encoded.index("é".encode("utf-8")) + 1
        assert parser.feed(encoded[:split]) == []
        frames = parser.feed(encoded[split:])
        assert json.loads(frames[0][1]) == {"message": "Café"}

    def test_crlf_is_normalized(self):
        parser = SseFrameParser()
        frames = parser.feed(b'event: error\r\ndata: {"error": "x"}\r\n\r\n')
        assert frames == [("error", '{"error": "x"}')]

    def test_defaults_to_message_event_and_skips_frames_without_data(self):
        parser = SseFrameParser()
        frames = parser.feed(b": keep-alive\n\nevent: progress\n\ndata: {}\n\n")
        assert frames == [("message", "{}")]

    def test_multiple_data_lines_are_joined(self):
        parser = SseFrameParser()
        frames = parser.feed(b"event: progress\ndata: {\"a\":\ndata: 1}\n\n")
        assert json.loads(frames[0][1]) == {"a": 1}


class TestNormalizeEvent:
    def test_progress_carries_usage_from_metadata(self):
        event = normalize_event("progress", {"type": "step.completed", "metadata": {"usage": {"totalTokens": 7}}})
        assert isinstance(event, ProgressEvent)
        assert event.usage == {"totalTokens": 7}

    def test_complete_prefers_artifact_and_its_metadata(self):
        artifact = {"id": "prd-1", "metadata": {"usage": {"totalTokens": 3}}}
        event = normalize_event("complete", {"artifact": artifact})
        assert isinstance(event, CompleteEvent)
        assert event.result == artifact
        assert event.metadata == {"usage": {"totalTokens": 3}}
        assert event.usage == {"totalTokens": 3}

    def test_complete_without_artifact_uses_payload(self):
        event = normalize_event("complete", {"summary": "done", "usage": {"totalTokens": 1}})
        assert event.result == {"summary": "done", "usage": {"totalTokens": 1}}
        assert event.usage == {"totalTokens": 1}

    def test_pending_approval_with_step_defaults_to_subagent(self):
        event = normalize_event("pending-approval", {"stepId": "research"})
        assert isinstance(event, PendingApprovalEvent)
        assert event.checkpoint == "subagent"
        assert event.step_id == "research"

    def test_pending_approval_without_step_is_plan(self):
        event = normalize_event("pending-approval", {"plan": {"id": "plan-1"}})
        assert event.checkpoint == "plan"
        assert event.step_id is None

    def test_error_without_message(self):
        event = normalize_event("error", {})
        assert isinstance(event, ErrorEvent)
        assert event.message == "Unknown error"

    def test_unknown_event_has_no_effect(self):
        assert normalize_event("heartbeat", {}) is None


class TestStreamRelay:
    def setup_method(self):
        self.store = RunStore()
        self.run_id = self.store.create("prd", {}).id
        self.relay = StreamRelay(self.store, idle_timeout=1.0)

    @pytest.mark.asyncio
    async def test_events_are_applied_and_bytes_forwarded(self):
        chunks = [
            b'event: progress\ndata: {"type": "step.started"',
            b'}\n\n' + frame("complete", {"artifact": {"id": "prd-1", "metadata": {"usage": {"totalTokens": 5}}}}),
        ]
        stream = FakeStream(chunks)
        token = self.relay.subscribe(self.run_id)

        forwarded = await collect(self.relay, self.run_id, stream, token)

        assert forwarded == chunks
        record = self.store.get(self.run_id)
        assert record.status == "completed"
        assert record.result["id"] == "prd-1"
        assert record.usage == {"totalTokens": 5}
        assert [p["type"] for p in record.progress] == ["step.started"]
        assert stream.close_calls == 1
        assert not self.relay.has_live_subscription(self.run_id)

    @pytest.mark.asyncio
    async def test_unparseable_frame_is_skipped(self):
        stream = FakeStream([b"event: progress\ndata: {not json}\n\n", frame("progress", {"type": "ok"})])
        token = self.relay.subscribe(self.run_id)

        await collect(self.relay, self.run_id, stream, token)

        record = self.store.get(self.run_id)
        assert [p["type"] for p in record.progress] == ["ok"]

    @pytest.mark.asyncio
    async def test_clean_end_while_running_completes_run(self):
        stream = FakeStream([frame("progress", {"type": "step.completed"})])
        token = self.relay.subscribe(self.run_id)

        await collect(self.relay, self.run_id, stream, token)

        record = self.store.get(self.run_id)
        assert record.status == "completed"
        assert record.result is None

    @pytest.mark.asyncio
    async def test_error_event_fails_run(self):
        stream = FakeStream([frame("error", {"error": "model exploded"})])
        token = self.relay.subscribe(self.run_id)

        await collect(self.relay, self.run_id, stream, token)

        record = self.store.get(self.run_id)
        assert record.status == "failed"
        assert record.error == "model exploded"

    @pytest.mark.asyncio
    async def test_clarification_event(self):
        stream = FakeStream([frame("clarification", {"questions": ["Who are the users?"]})])
        token = self.relay.subscribe(self.run_id)

        await collect(self.relay, self.run_id, stream, token)

        record = self.store.get(self.run_id)
        assert record.status == "awaiting-input"
        assert record.clarification == {"questions": ["Who are the users?"]}

    @pytest.mark.asyncio
    async def test_subagent_checkpoint_sets_approval_fields(self):
        stream = FakeStream([frame("pending-approval", {
            "checkpoint": "subagent",
            "stepId": "research",
            "plan": {"id": f"plan-{self.run_id}"},
        })])
        token = self.relay.subscribe(self.run_id)

        await collect(self.relay, self.run_id, stream, token)

        record = self.store.get(self.run_id)
        assert record.status == "pending-approval"
        assert record.approval_mode == "subagent"
        assert record.approval_step_id == "research"
        assert record.approval_url == f"/api/runs/{self.run_id}/subagent/research/approve"
        assert record.plan == {"id": f"plan-{self.run_id}"}

    @pytest.mark.asyncio
    async def test_idle_timeout_fails_run_and_closes_upstream_once(self):
        relay = StreamRelay(self.store, idle_timeout=0.05)
        stream = FakeStream([frame("progress", {"type": "step.started"})], hang=True)
        token = relay.subscribe(self.run_id)

        forwarded = await collect(relay, self.run_id, stream, token)

        assert len(forwarded) == 1
        record = self.store.get(self.run_id)
        assert record.status == "failed"
        assert record.error == "Stream timeout after 0.05s"
        assert stream.close_calls == 1

    @pytest.mark.asyncio
    async def test_client_disconnect_fails_running_run(self):
        stream = FakeStream([frame("progress", {"type": "step.started"})], hang=True)
        token = self.relay.subscribe(self.run_id)
        relayed = self.relay.relay(self.run_id, stream, token)

        await relayed.__anext__()
        await relayed.aclose()

        record = self.store.get(self.run_id)
        assert record.status == "failed"
        assert record.error == CANCELLED_ERROR
        assert stream.close_calls == 1

    @pytest.mark.asyncio
    async def test_client_disconnect_after_completion_keeps_result(self):
        stream = FakeStream([frame("complete", {"artifact": {"id": "prd-1"}})], hang=True)
        token = self.relay.subscribe(self.run_id)
        relayed = self.relay.relay(self.run_id, stream, token)

        await relayed.__anext__()
        await relayed.aclose()

        record = self.store.get(self.run_id)
        assert record.status == "completed"
        assert record.error is None
        assert stream.close_calls == 1

    @pytest.mark.asyncio
    async def test_read_error_mid_stream_fails_run(self):
        stream = FakeStream(
            [frame("progress", {"type": "step.started"})],
            error=httpx.ReadError("Connection reset by peer"),
        )
        token = self.relay.subscribe(self.run_id)

        forwarded = await collect(self.relay, self.run_id, stream, token)

        assert len(forwarded) == 1
        record = self.store.get(self.run_id)
        assert record.status == "failed"
        assert record.error == "Connection reset by peer"
        assert [p["type"] for p in record.progress] == ["step.started"]
        assert stream.close_calls == 1
        assert not self.relay.has_live_subscription(self.run_id)

    @pytest.mark.asyncio
    async def test_read_error_without_message(self):
        stream = FakeStream([], error=httpx.RemoteProtocolError(""))
        token = self.relay.subscribe(self.run_id)

        await collect(self.relay, self.run_id, stream, token)

        assert self.store.get(self.run_id).error == STREAM_FAILED_ERROR

    @pytest.mark.asyncio
    async def test_cancelled_response_task_fails_run_and_closes_upstream(self):
        stream = FakeStream([frame("progress", {"type": "step.started"})], hang=True, slow_close=True)
        token = self.relay.subscribe(self.run_id)
        received = []

        async def respond(scope):
            async for chunk in self.relay.relay(self.run_id, stream, token):
                received.append(chunk)
                scope.cancel()

        async with anyio.create_task_group() as tg:
            tg.start_soon(respond, tg.cancel_scope)

        assert len(received) == 1
        record = self.store.get(self.run_id)
        assert record.status == "failed"
        assert record.error == CANCELLED_ERROR
        assert stream.close_calls == 1
        assert not self.relay.has_live_subscription(self.run_id)

    @pytest.mark.asyncio
    async def test_only_newest_subscription_mutates_store(self):
        stale_token = self.relay.subscribe(self.run_id)
        live_token = self.relay.subscribe(self.run_id)

        stale = FakeStream([frame("error", {"error": "stale tab"})])
        forwarded = await collect(self.relay, self.run_id, stale, stale_token)

        assert forwarded == stale.chunks
        assert self.store.get(self.run_id).status == "running"
        assert self.relay.has_live_subscription(self.run_id)

        live = FakeStream([frame("complete", {"artifact": {"id": "prd-1"}})])
        await collect(self.relay, self.run_id, live, live_token)
        assert self.store.get(self.run_id).status == "completed"

    @pytest.mark.asyncio
    async def test_stale_disconnect_does_not_fail_run(self):
        stale_token = self.relay.subscribe(self.run_id)
        self.relay.subscribe(self.run_id)

        stream = FakeStream([frame("progress", {"type": "step.started"})], hang=True)
        relayed = self.relay.relay(self.run_id, stream, stale_token)
        await relayed.__anext__()
        await relayed.aclose()

        assert self.store.get(self.run_id).status == "running"

    def test_subscribe_keeps_pending_approval(self):
        self.store.update(self.run_id, {"status": "running"})
        self.store.update(self.run_id, {"status": "pending-approval", "approval_mode": "plan"})

        self.relay.subscribe(self.run_id)

        assert self.store.get(self.run_id).status == "pending-approval"

    def test_abort_fails_run_and_releases(self):
        token = self.relay.subscribe(self.run_id)
        self.relay.abort(self.run_id, token, "Agent backend unreachable")

        record = self.store.get(self.run_id)
        assert record.status == "failed"
        assert record.error == "Agent backend unreachable"
        assert not self.relay.has_live_subscription(self.run_id)
