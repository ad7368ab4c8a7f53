"""
Upstream — the agent backend as seen by the API layer.

Two implementations:
    LocalUpstream  drives the in-process AgentBackend
    HttpUpstream   talks to a remote agent backend over HTTP
                   (selected when UPSTREAM_AGENT_URL is set)

Both raise UpstreamUnavailable for anything that keeps a request from
reaching a working backend; the api layer maps it to 502 (or the backend's
own status).

Remote endpoints:
    POST /runs                                     start a run
    GET  /runs/{run_id}                            execution snapshot
    GET  /runs/{run_id}/stream                     SSE stream
    POST /runs/{run_id}/approve                    plan checkpoint decision
    POST /runs/{run_id}/subagent/{step_id}/approve sub-step checkpoint decision
    POST /runs/{run_id}/clarification              clarification answer
"""

import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from errors import ApprovalConflict, RunNotFound, UpstreamUnavailable
from services.agent_backend import AgentBackend
from services.stream_relay import EventStream


logger = logging.getLogger(__name__)


class Upstream:
    """Interface of an agent backend."""

    async def start_run(self, run_id: str, artifact_kind: str, request: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def open_stream(self, run_id: str) -> EventStream:
        raise NotImplementedError

    async def fetch_snapshot(self, run_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def resume(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> None:
        raise NotImplementedError

    async def reject(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> None:
        raise NotImplementedError

    async def answer_clarification(self, run_id: str, answer: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------

class LocalUpstream(Upstream):
    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend

    async def start_run(self, run_id: str, artifact_kind: str, request: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.backend.start_run(run_id, artifact_kind, request)
        except ValueError as exc:
            raise UpstreamUnavailable(f"Agent backend rejected the run: {exc}", status_code=502) from exc

    async def open_stream(self, run_id: str) -> EventStream:
        return self.backend.open_stream(run_id)

    async def fetch_snapshot(self, run_id: str) -> Dict[str, Any]:
        return self.backend.snapshot(run_id)

    async def resume(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> None:
        self.backend.resume(run_id, step_id=step_id, feedback=feedback)

    async def reject(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> None:
        self.backend.reject(run_id, step_id=step_id, feedback=feedback)

    async def answer_clarification(self, run_id: str, answer: str) -> None:
        self.backend.answer_clarification(run_id, answer)


# ---------------------------------------------------------------------------
# Remote backend
# ---------------------------------------------------------------------------

class HttpEventStream:
    """Byte stream of an open streaming httpx response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()


def _backend_error(response: httpx.Response) -> UpstreamUnavailable:
    return UpstreamUnavailable(
        f"Backend error: {response.status_code} {response.reason_phrase}".rstrip(),
        status_code=response.status_code,
        detail=response.text or None,
    )


class HttpUpstream(Upstream):
    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._owns_client = client is None

    async def _request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None, run_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.warning("Agent backend unreachable (%s %s): %s", method, path, exc)
            raise UpstreamUnavailable(f"Agent backend unreachable: {exc}") from exc

        if response.status_code == 404 and run_id is not None:
            raise RunNotFound(run_id)
        if response.status_code == 409:
            raise ApprovalConflict(response.text)
        if response.is_error:
            raise _backend_error(response)
        return response.json() if response.content else {}

    async def start_run(self, run_id: str, artifact_kind: str, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/runs", {"runId": run_id, "artifactKind": artifact_kind, **request})

    async def fetch_snapshot(self, run_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/runs/{run_id}", run_id=run_id)

    async def open_stream(self, run_id: str) -> EventStream:
        request = self._client.build_request(
            "GET", f"/runs/{run_id}/stream", headers={"Accept": "text/event-stream"},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning("Agent backend stream for run %s unreachable: %s", run_id, exc)
            raise UpstreamUnavailable(f"Agent backend unreachable: {exc}") from exc

        if response.is_error:
            await response.aread()
            await response.aclose()
            raise _backend_error(response)
        return HttpEventStream(response)

    async def resume(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> None:
        await self._request("POST", self._approve_path(run_id, step_id), {"approved": True, "feedback": feedback}, run_id=run_id)

    async def reject(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> None:
        await self._request("POST", self._approve_path(run_id, step_id), {"approved": False, "feedback": feedback}, run_id=run_id)

    async def answer_clarification(self, run_id: str, answer: str) -> None:
        await self._request("POST", f"/runs/{run_id}/clarification", {"answer": answer}, run_id=run_id)

    @staticmethod
    def _approve_path(run_id: str, step_id: Optional[str]) -> str:
        if step_id:
            return f"/runs/{run_id}/subagent/{step_id}/approve"
        return f"/runs/{run_id}/approve"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
