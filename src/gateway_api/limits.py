"""Request body size limits per route group."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from fastapi.responses import JSONResponse

from provider_gateway.errors import GatewayError, PayloadTooLargeError, ValidationError

Message = dict[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]


def _content_length(scope: dict[str, Any]) -> int | None:
    for name, value in scope.get("headers") or ():
        if name.lower() == b"content-length":
            return int(value)
    return None


class BodyLimitMiddleware:
    """
    Reject request bodies larger than the limit for their route with a 413.

    A declared Content-Length is checked before the app runs. Bodies without
    one are read up to the limit here and replayed to the app, so the app
    never sees an oversized body.

    Example:
        ```python
        app.add_middleware(
            BodyLimitMiddleware,
            limits=[("/v1/audio/", 25 * 1024 * 1024)],
            default_limit=1024 * 1024,
        )
        ```
    """

    def __init__(self, app: Any, *, limits: Iterable[tuple[str, int]], default_limit: int) -> None:
        self.app = app
        # longest prefix first
        self._limits = sorted(limits, key=lambda item: len(item[0]), reverse=True)
        self._default_limit = int(default_limit)

    def limit_for(self, path: str) -> int:
        for prefix, limit in self._limits:
            if path.startswith(prefix):
                return limit
        return self._default_limit

    async def __call__(self, scope: dict[str, Any], receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = self.limit_for(scope["path"])
        try:
            declared = _content_length(scope)
        except ValueError:
            await self._reject(ValidationError("Invalid Content-Length header"), scope, receive, send)
            return
        if declared is not None:
            if declared > limit:
                await self._reject(_too_large(limit), scope, receive, send)
                return
            await self.app(scope, receive, send)
            return

        buffered: list[Message] = []
        received = 0
        while True:
            message = await receive()
            buffered.append(message)
            if message["type"] != "http.request":
                break
            received += len(message.get("body", b""))
            if received > limit:
                await self._reject(_too_large(limit), scope, receive, send)
                return
            if not message.get("more_body", False):
                break

        async def replay() -> Message:
            if buffered:
                return buffered.pop(0)
            return await receive()

        await self.app(scope, replay, send)

    async def _reject(self, exc: GatewayError, scope: dict[str, Any], receive: Receive, send: Send) -> None:
        response = JSONResponse(status_code=exc.http_status, content=exc.to_body())
        await response(scope, receive, send)


def _too_large(limit: int) -> PayloadTooLargeError:
    return PayloadTooLargeError(f"Request body exceeds the {limit} byte limit for this endpoint")


def route_limits(
    base_path: str,
    *,
    llm: int,
    audio: int,
    media: int,
    telephony: int,
) -> list[tuple[str, int]]:
    """Prefix table for the gateway's route groups under ``base_path``."""
    return [
        (f"{base_path}/chat/", llm),
        (f"{base_path}/completions", llm),
        (f"{base_path}/embeddings", llm),
        (f"{base_path}/audio/", audio),
        (f"{base_path}/images/", media),
        (f"{base_path}/video/", media),
        (f"{base_path}/phone/", telephony),
        (f"{base_path}/messages/", telephony),
    ]


__all__ = ["BodyLimitMiddleware", "route_limits"]
