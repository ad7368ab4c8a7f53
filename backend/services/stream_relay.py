"""
Stream Relay — bridges an upstream SSE stream to the run store and a client.

For every chunk read from the upstream the relay
    1. parses the complete SSE frames accumulated so far,
    2. applies each normalized event to the run store, in arrival order,
    3. forwards the raw chunk to the client unchanged.

Liveness:
    - a per-chunk idle timeout (default 300s) cancels the upstream read and
      marks the run failed
    - client disconnects close the upstream and mark the run failed unless it
      already completed
    - a clean upstream end while the run is still running completes it
    - any other upstream read error fails the run with its message

A run may have more than one open stream (a stale tab and a reconnecting
one). Each subscribe takes ownership of the run; only the newest owner
mutates the store, older subscriptions keep forwarding to their own client.
"""

import asyncio
import codecs
import itertools
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

import anyio

from api.run_store import RunStore
from errors import StreamTimeout
from models.events import (
    ClarificationEvent,
    CompleteEvent,
    ErrorEvent,
    PendingApprovalEvent,
    ProgressEvent,
    RunEvent,
    normalize_event,
)
from state import (
    STATUS_AWAITING_INPUT,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING_APPROVAL,
    STATUS_RUNNING,
)


logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Run stream aborted by client"
STREAM_FAILED_ERROR = "Streaming failed"


class EventStream(Protocol):
    """What the relay needs from an upstream stream."""

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------

class SseFrameParser:
    """
    Incremental SSE frame parser.

    Tolerates frames and multi-byte characters split across chunks; a frame
    is only emitted once its terminating blank line has been seen.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[Tuple[str, str]]:
        """Consume a chunk and return the (event, data) frames it completed."""
        self._buffer += self._decoder.decode(chunk).replace("\r\n", "\n").replace("\r", "\n")
        frames: List[Tuple[str, str]] = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            frame = self._parse_frame(raw)
            if frame is not None:
                frames.append(frame)
        return frames

    @staticmethod
    def _parse_frame(raw: str) -> Optional[Tuple[str, str]]:
        event_type = "message"
        data_lines: List[str] = []
        for line in raw.split("\n"):
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_type = line[len("event:"):].strip() or "message"
            elif line.startswith("data:"):
                data_lines.append(line[len("data:"):].strip())
        if not data_lines:
            return None
        return event_type, "\n".join(data_lines)


# ---------------------------------------------------------------------------
# Event application
# ---------------------------------------------------------------------------

def approval_url_for(run_id: str, event: PendingApprovalEvent) -> str:
    if event.checkpoint == "subagent" and event.step_id:
        return f"/api/runs/{run_id}/subagent/{event.step_id}/approve"
    return f"/api/runs/{run_id}/approve"


def apply_event(store: RunStore, run_id: str, event: RunEvent) -> None:
    """Apply one normalized event to the run record."""
    if isinstance(event, ProgressEvent):
        updates: Dict[str, Any] = {"progress_append": event.payload}
        if event.usage is not None:
            updates["usage"] = event.usage
        store.update(run_id, updates)

    elif isinstance(event, ClarificationEvent):
        store.update(run_id, {"status": STATUS_AWAITING_INPUT, "clarification": event.payload})

    elif isinstance(event, CompleteEvent):
        updates = {"status": STATUS_COMPLETED, "result": event.result}
        if event.metadata is not None:
            updates["metadata"] = event.metadata
        if event.usage is not None:
            updates["usage"] = event.usage
        store.update(run_id, updates)

    elif isinstance(event, PendingApprovalEvent):
        updates = {
            "status": STATUS_PENDING_APPROVAL,
            "approval_url": approval_url_for(run_id, event),
            "approval_mode": event.checkpoint,
            "approval_step_id": event.step_id,
        }
        if event.plan is not None:
            updates["plan"] = event.plan
        store.update(run_id, updates)

    elif isinstance(event, ErrorEvent):
        store.update(run_id, {"status": STATUS_FAILED, "error": event.message})


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

class StreamRelay:
    """Relays upstream streams into the run store and on to subscribed clients."""

    def __init__(self, store: RunStore, idle_timeout: float = 300.0) -> None:
        self.store = store
        self.idle_timeout = idle_timeout
        self._owners: Dict[str, int] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, run_id: str) -> int:
        """
        Take ownership of a run's stream and mark it running.

        A run parked at an approval checkpoint keeps its status; the replayed
        pending-approval event describes it.
        """
        token = next(self._tokens)
        self._owners[run_id] = token
        record = self.store.get(run_id)
        if record is not None and record.status != STATUS_PENDING_APPROVAL:
            self.store.update(run_id, {"status": STATUS_RUNNING, "error": None})
        return token

    def has_live_subscription(self, run_id: str) -> bool:
        return run_id in self._owners

    def _owns(self, run_id: str, token: int) -> bool:
        return self._owners.get(run_id) == token

    def _release(self, run_id: str, token: int) -> None:
        if self._owns(run_id, token):
            del self._owners[run_id]

    def _fail(self, run_id: str, token: int, message: str) -> None:
        if not self._owns(run_id, token):
            return
        record = self.store.get(run_id)
        if record is not None and record.status != STATUS_COMPLETED:
            self.store.update(run_id, {"status": STATUS_FAILED, "error": message})

    def abort(self, run_id: str, token: int, message: str) -> None:
        """Give up a subscription whose upstream stream never opened."""
        self._fail(run_id, token, message)
        self._release(run_id, token)

    async def _next_chunk(self, iterator: AsyncIterator[bytes]) -> bytes:
        try:
            return await asyncio.wait_for(iterator.__anext__(), timeout=self.idle_timeout)
        except asyncio.TimeoutError as exc:
            raise StreamTimeout(self.idle_timeout) from exc

    def _handle_chunk(self, run_id: str, token: int, parser: SseFrameParser, chunk: bytes) -> None:
        for event_type, data in parser.feed(chunk):
            try:
                payload = json.loads(data)
            except json.JSONDecodeError as exc:
                logger.warning("Run %s: could not parse %s frame: %s", run_id, event_type, exc)
                continue
            event = normalize_event(event_type, payload)
            if event is not None and self._owns(run_id, token):
                apply_event(self.store, run_id, event)

    async def relay(self, run_id: str, stream: EventStream, token: int) -> AsyncIterator[bytes]:
        """
        Async generator yielding the upstream bytes for a StreamingResponse.

        The run is marked failed before the upstream is closed, and the close
        runs shielded, so a cancelled response task still records the failure
        and releases the upstream connection exactly once.
        """
        parser = SseFrameParser()
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    chunk = await self._next_chunk(iterator)
                except StopAsyncIteration:
                    break
                self._handle_chunk(run_id, token, parser, chunk)
                yield chunk

            # Graceful close without a terminal event counts as success
            if self._owns(run_id, token):
                record = self.store.get(run_id)
                if record is not None and record.status == STATUS_RUNNING:
                    logger.info("Run %s: upstream closed while running, marking completed", run_id)
                    self.store.update(run_id, {"status": STATUS_COMPLETED})
        except StreamTimeout as exc:
            logger.warning("Run %s: %s", run_id, exc)
            self._fail(run_id, token, str(exc))
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Run %s: client disconnected", run_id)
            self._fail(run_id, token, CANCELLED_ERROR)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Run %s: upstream stream failed: %s", run_id, exc)
            self._fail(run_id, token, str(exc) or STREAM_FAILED_ERROR)
        finally:
            with anyio.CancelScope(shield=True):
                await stream.aclose()
            self._release(run_id, token)
