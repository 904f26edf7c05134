"""HTTP transport: REST calls plus a newline-delimited JSON event stream."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from toolstream.config import DEFAULT_HTTP_TIMEOUT_S, DEFAULT_SERVER_URL, EngineConfig
from toolstream.engine.events import StreamComplete, StreamEvent
from toolstream.engine.wire import decode_line
from toolstream.errors import TransientTransportError, TransportError
from toolstream.log_utils import log_event, preview
from toolstream.transport.base import Ack, OutboundMessage

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
TRANSIENT_STATUSES = {502, 503}
_ERROR_TEXT_MAX = 240


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.status_code < 400:
        return
    try:
        detail = response.text
    except httpx.ResponseNotRead:
        detail = ""
    detail = preview(detail.strip(), _ERROR_TEXT_MAX) if detail else response.reason_phrase
    message = f"{action} failed with HTTP {response.status_code}: {detail}"
    if response.status_code in TRANSIENT_STATUSES:
        raise TransientTransportError(message, status=response.status_code)
    raise TransportError(message, status=response.status_code)


def _unwrap(body: Any, action: str) -> Any:
    """Return the ``data`` member of a ``{"status", "data"}`` envelope."""

    if not isinstance(body, dict):
        return body
    status = body.get("status")
    if status is not None and status != "success":
        message = body.get("message") or body.get("data") or status
        raise TransportError(f"{action} failed: {message}")
    return body.get("data", body)


class HttpTransport:
    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_S,
        api_prefix: str = API_PREFIX,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._timeout = timeout
        self.base_url = base_url.rstrip("/") + api_prefix

    @classmethod
    def from_config(cls, config: EngineConfig, *, client: httpx.AsyncClient | None = None) -> "HttpTransport":
        return cls(config.server_url, client=client, timeout=config.http_timeout_s)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, *, payload: Any = None) -> Any:
        action = path.split("/", 1)[0]
        log_event(logger, "http.request", level=logging.DEBUG, method=method, path=path)
        try:
            response = await self._client.request(method, self._url(path), json=payload)
        except httpx.TransportError as exc:
            raise TransientTransportError(f"{action} failed: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{action} failed: {exc!r}") from exc
        _raise_for_status(response, action)
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(f"{action} returned invalid JSON") from exc
        return _unwrap(body, action)

    async def start_session(self, session_id: str | None, *, mode: str, tools: list[dict[str, Any]]) -> str:
        payload = {"session_id": session_id or "", "tools": tools, "mode": mode}
        data = await self._request("POST", "start_session", payload=payload)
        if isinstance(data, dict):
            data = data.get("session_id") or data.get("id")
        new_id = str(data) if data else session_id
        if not new_id:
            raise TransportError("start_session returned no session id")
        return new_id

    async def open_stream(self, session_id: str) -> AsyncIterator[StreamEvent]:
        """Yield decoded events until `StreamComplete` or the server closes."""

        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with self._client.stream("GET", self._url(f"stream/{session_id}"), timeout=timeout) as response:
                if response.status_code >= 400:
                    await response.aread()
                    _raise_for_status(response, "stream")
                async for line in response.aiter_lines():
                    for event in decode_line(line):
                        yield event
                        if isinstance(event, StreamComplete):
                            return
        except httpx.TransportError as exc:
            raise TransientTransportError(f"stream failed: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"stream failed: {exc!r}") from exc

    async def send(self, session_id: str, message: OutboundMessage) -> Ack:
        data = await self._request("POST", f"send_message/{session_id}", payload=message.to_payload())
        return Ack(ok=True, data=data)

    async def cancel(self, session_id: str) -> Ack:
        data = await self._request("POST", f"cancel_task/{session_id}", payload={})
        return Ack(ok=True, data=data)

    async def close_session(self, session_id: str) -> Ack:
        data = await self._request("POST", f"close_session/{session_id}", payload={})
        return Ack(ok=True, data=data)

    async def get_history(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"conversation_history/{session_id}")
        if not isinstance(data, list):
            return []
        return [entry for entry in data if isinstance(entry, dict)]

    async def generate_title(self, content: str) -> str | None:
        data = await self._request("POST", "generate_title", payload={"content": content})
        if not data:
            return None
        if isinstance(data, str):
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError:
                return data.strip() or None
            data = parsed
        if isinstance(data, dict):
            title = data.get("title")
            return str(title).strip() if title else None
        return str(data).strip() or None


__all__ = ["API_PREFIX", "HttpTransport", "TRANSIENT_STATUSES"]
