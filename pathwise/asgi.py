"""
ASGI adapter - Runs an ASGI application behind an OptimizationEngine.

The wrapped application is the engine's downstream: its response is
buffered into a :class:`~pathwise._types.Response`, passed through the
pipeline (cache, compression, header stamping) and then sent.  Streaming
responses are therefore delivered in one piece.

Lifespan events start and stop the background training scheduler.
Non-HTTP scopes (websocket, ...) pass straight through.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, MutableMapping, Optional
from urllib.parse import parse_qsl

from ._types import RequestContext, Response
from .config import OptimizerConfig
from .engine import OptimizationEngine
from .scheduler.training import ScheduleHandle

logger = logging.getLogger("pathwise.asgi")

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


class PathwiseMiddleware:
    """
    ASGI middleware wrapping ``app`` with an optimization engine.

    Usage::

        app = PathwiseMiddleware(app, config=OptimizerConfig(enable_caching=True))
    """

    def __init__(
        self,
        app: ASGIApp,
        engine: Optional[OptimizationEngine] = None,
        *,
        config: Optional[OptimizerConfig] = None,
        start_scheduler: bool = True,
    ):
        self.app = app
        self.engine = engine if engine is not None else OptimizationEngine(config)
        self.start_scheduler = start_scheduler
        self._handle: Optional[ScheduleHandle] = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            await self._handle_http(scope, receive, send)
        elif scope["type"] == "lifespan":
            await self.app(scope, self._lifespan_receive(receive), send)
        else:
            await self.app(scope, receive, send)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _handle_http(self, scope: Scope, receive: Receive, send: Send) -> None:
        body = await _read_body(receive)
        request = RequestContext(
            method=scope["method"],
            path=scope["path"],
            headers={
                k.decode("latin-1").lower(): v.decode("latin-1")
                for k, v in scope.get("headers", [])
            },
            query_params=dict(parse_qsl(scope.get("query_string", b"").decode("latin-1"))),
            body=body,
            state={"scope": scope},
        )

        async def downstream() -> Response:
            return await _call_buffered(self.app, scope, body)

        response = await self.engine.optimize(request, downstream)
        await _send_response(send, response)

    # ------------------------------------------------------------------
    # Lifespan
    # ------------------------------------------------------------------

    def _lifespan_receive(self, receive: Receive) -> Receive:
        async def wrapped() -> Message:
            message = await receive()
            if message["type"] == "lifespan.startup" and self.start_scheduler and self._handle is None:
                self._handle = self.engine.start()
            elif message["type"] == "lifespan.shutdown" and self._handle is not None:
                self._handle.cancel()
                self._handle = None
                logger.info("Training scheduler stopped")
            return message

        return wrapped


async def _read_body(receive: Receive) -> bytes:
    chunks: List[bytes] = []
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            break
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


async def _call_buffered(app: ASGIApp, scope: Scope, body: bytes) -> Response:
    """Run ``app`` once with a replayed body and capture its response."""
    delivered = False
    status: Optional[int] = None
    headers: Dict[str, str] = {}
    chunks: List[bytes] = []

    async def receive() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message: Message) -> None:
        nonlocal status
        if message["type"] == "http.response.start":
            status = message["status"]
            for k, v in message.get("headers", []):
                name = k.decode("latin-1").lower()
                value = v.decode("latin-1")
                headers[name] = f"{headers[name]}, {value}" if name in headers else value
        elif message["type"] == "http.response.body":
            chunks.append(message.get("body", b""))

    await app(scope, receive, send)
    if status is None:
        raise RuntimeError("ASGI application returned without starting a response")
    return Response(status=status, headers=headers, body=b"".join(chunks))


async def _send_response(send: Send, response: Response) -> None:
    headers = {k.lower(): v for k, v in response.headers.items()}
    headers["content-length"] = str(len(response.body))
    await send({
        "type": "http.response.start",
        "status": response.status,
        "headers": [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()],
    })
    await send({"type": "http.response.body", "body": response.body, "more_body": False})
