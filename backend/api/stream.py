"""
SSE endpoint for live run progress.

Clients subscribe to GET /api/runs/{run_id}/stream and receive the upstream
frames unchanged:

    event: progress
    data: {"type": "step.completed", "stepId": "write-solution", ...}

    event: pending-approval
    data: {"checkpoint": "subagent", "stepId": "research", ...}

The stream ends after a complete, error, clarification or pending-approval
event. After an approval or clarification answer, subscribe again.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from api.dependencies import get_relay, get_run_store, get_upstream, http_error
from api.run_store import RunStore
from errors import ProductAgentError
from services.stream_relay import StreamRelay
from services.upstream import Upstream


logger = logging.getLogger(__name__)

stream_router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@stream_router.get("/runs/{run_id}/stream")
async def stream_run(
    run_id: str,
    store: RunStore = Depends(get_run_store),
    relay: StreamRelay = Depends(get_relay),
    upstream: Upstream = Depends(get_upstream),
):
    """Relay the run's upstream event stream, updating the run record as events arrive."""
    if store.get(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")

    token = relay.subscribe(run_id)
    try:
        stream = await upstream.open_stream(run_id)
    except ProductAgentError as exc:
        logger.warning("Run %s: could not open upstream stream: %s", run_id, exc)
        relay.abort(run_id, token, str(exc))
        raise http_error(exc)

    return StreamingResponse(
        relay.relay(run_id, stream, token),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
