"""Retrying request client for the server's live-session endpoints.

Every request carries the install's client id and, when logged in, a bearer
token. Server errors (5xx) and network failures are retried with capped
exponential backoff; client errors (4xx) are returned to the caller at once.
"""

import asyncio
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from agent_relay.credentials import CLIENT_ID_HEADER, ConnectionIdentity


class RetryPolicy(BaseModel):
    """Capped exponential backoff for retryable failures."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0

    def delays(self):
        """Delays to sleep between attempts, one per retry."""
        delay = self.initial_delay
        for _ in range(self.max_retries):
            yield delay
            delay = min(delay * 2, self.max_delay)


DEFAULT_RETRY = RetryPolicy()
DISABLE_INTERACTIVE_RETRY = RetryPolicy(max_retries=1, initial_delay=0.5, max_delay=1.0)


class ApiError(Exception):
    """A request failed with an error status or after exhausting retries."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status >= 500


class CreateLiveSessionRequest(BaseModel):
    title: Optional[str] = None
    project_path: str
    harness_session_id: Optional[str] = None
    harness: str
    model: Optional[str] = None
    repo_url: Optional[str] = None


class CreateLiveSessionResponse(BaseModel):
    id: str
    status: str = "live"
    resumed: bool = False
    restored: bool = False
    message_count: int = 0
    last_index: int = -1
    stream_token: Optional[str] = None


class PushMessagesResponse(BaseModel):
    appended: int = 0
    message_count: int = 0
    last_index: int = -1


class PushToolResultsResponse(BaseModel):
    appended: int = 0
    result_count: int = 0


class PushDiffResponse(BaseModel):
    updated: bool = False
    diff_size: int = 0


class CompleteSessionResponse(BaseModel):
    status: str = "complete"
    completed_at: Optional[str] = None


class LiveSessionClient:
    """Client for the live-session HTTP surface of the server."""

    def __init__(
        self,
        server_url: str,
        identity: ConnectionIdentity,
        retry: RetryPolicy = DEFAULT_RETRY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout: float = 30.0,
    ):
        self.server_url = server_url.rstrip("/")
        self.identity = identity
        self.retry = retry
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.server_url,
            transport=transport,
            timeout=timeout,
        )

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Build identity headers for a request."""
        headers = {CLIENT_ID_HEADER: self.identity.client_id}
        if self.identity.token:
            headers["Authorization"] = f"Bearer {self.identity.token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        json: Any = None,
        content: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> httpx.Response:
        """Send a request, retrying server and network failures.

        Raises ApiError for any non-2xx final response and when retries are
        exhausted.
        """
        policy = retry or self.retry
        delays = policy.delays()
        attempt = 0
        last_error: Optional[ApiError] = None

        while True:
            try:
                response = await self._client.request(
                    method,
                    path,
                    json=json,
                    content=content,
                    headers=self._headers(headers),
                )
                if response.status_code < 500:
                    if response.is_error:
                        raise ApiError(
                            f"Failed to {action}: {response.status_code} - {response.text}",
                            status=response.status_code,
                            body=response.text,
                        )
                    return response
                last_error = ApiError(
                    f"Failed to {action}: server error {response.status_code}",
                    status=response.status_code,
                    body=response.text,
                )
            except httpx.HTTPError as e:
                last_error = ApiError(f"Failed to {action}: {e}")

            delay = next(delays, None)
            if delay is None:
                raise last_error
            attempt += 1
            print(
                f"[api] Retry {attempt}/{policy.max_retries} after {delay:g}s ({last_error})",
                file=sys.stderr,
            )
            await self._sleep(delay)

    async def create_live_session(
        self, request: CreateLiveSessionRequest
    ) -> CreateLiveSessionResponse:
        response = await self._request(
            "POST",
            "/api/sessions/live",
            "create live session",
            json=request.model_dump(exclude_none=True),
        )
        return CreateLiveSessionResponse.model_validate(response.json())

    async def push_messages(
        self, session_id: str, messages: List[Dict[str, Any]]
    ) -> PushMessagesResponse:
        response = await self._request(
            "POST",
            f"/api/sessions/{session_id}/messages",
            "push messages",
            json={"messages": messages},
        )
        return PushMessagesResponse.model_validate(response.json())

    async def push_tool_results(
        self, session_id: str, results: List[Dict[str, Any]]
    ) -> PushToolResultsResponse:
        response = await self._request(
            "POST",
            f"/api/sessions/{session_id}/tool-results",
            "push tool results",
            json={"results": results},
        )
        return PushToolResultsResponse.model_validate(response.json())

    async def push_diff(self, session_id: str, diff: str) -> PushDiffResponse:
        """Replace the session's diff with a freshly captured one."""
        response = await self._request(
            "PUT",
            f"/api/sessions/{session_id}/diff",
            "push diff",
            content=diff,
            headers={"Content-Type": "text/plain"},
        )
        return PushDiffResponse.model_validate(response.json())

    async def complete_session(
        self,
        session_id: str,
        final_diff: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> CompleteSessionResponse:
        body: Dict[str, Any] = {}
        if final_diff:
            body["final_diff"] = final_diff
        if summary:
            body["summary"] = summary
        response = await self._request(
            "POST",
            f"/api/sessions/{session_id}/complete",
            "complete session",
            json=body,
        )
        return CompleteSessionResponse.model_validate(response.json())

    async def update_title(self, session_id: str, title: str) -> None:
        await self._request(
            "PATCH",
            f"/api/sessions/{session_id}",
            "update title",
            json={"title": title},
        )

    async def mark_interactive(self, session_id: str) -> None:
        await self._request(
            "POST",
            f"/api/sessions/{session_id}/interactive",
            "mark session interactive",
        )

    async def disable_interactive(self, session_id: str) -> None:
        """Clear interactive mode; used on shutdown, so retried only briefly."""
        await self._request(
            "DELETE",
            f"/api/sessions/{session_id}/interactive",
            "disable interactive",
            retry=DISABLE_INTERACTIVE_RETRY,
        )

    async def delete_session(self, session_id: str) -> None:
        await self._request(
            "DELETE",
            f"/api/sessions/{session_id}",
            "delete session",
        )

    async def aclose(self) -> None:
        await self._client.aclose()
