"""SolverGateway -- bridge from request code to the interactive renderer.

The renderer (a browser page, a WebView, a human in front of a modal) is
slow, single and may not be attached yet. Requests made while it is
detached wait in a FIFO pending list, each with its own timer. Attaching a
renderer flushes the list in order.

Every rendered page is checked for challenge markers before it is handed
back: a page that still shows the challenge is an error, and the stored
credentials for that domain are invalidated so the next attempt does not
reuse a "solved" session the origin no longer accepts.
"""

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from mangagate._challenge import is_challenge_body
from mangagate._cookies import extract_domain
from mangagate._errors import (
    ChallengeStillPresent,
    RendererUnavailable,
    RenderTimeout,
)

logger = logging.getLogger("mangagate")

DEFAULT_RENDER_TIMEOUT_MS = 30_000

FetchFn = Callable[[str, int], Awaitable[str]]
PostFn = Callable[
    [str, "str | None", "dict[str, str] | None", int], Awaitable[str]
]
InvalidateFn = Callable[[str], "Awaitable[None] | None"]


class GatewayEvent(enum.Enum):
    """Notifications for observers (e.g. a UI showing the renderer)."""

    QUEUED = "queued"
    DISPATCHED = "dispatched"
    TIMED_OUT = "timed_out"
    CHALLENGE = "challenge"


@dataclass
class _PendingRequest:
    method: str
    url: str
    timeout_ms: int
    future: asyncio.Future
    body: str | None = None
    headers: dict[str, str] | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class SolverGateway:
    """Queue-based facade over one interactive renderer."""

    def __init__(self, invalidate_session: InvalidateFn | None = None):
        self._fetch_fn: FetchFn | None = None
        self._post_fn: PostFn | None = None
        self._invalidate = invalidate_session
        self._pending: list[_PendingRequest] = []
        self._flush_tasks: set[asyncio.Task] = set()
        self._listeners: list[Callable[[GatewayEvent, str], None]] = []

    # ------------------------------------------------------------------
    # Renderer lifecycle
    # ------------------------------------------------------------------

    def register_renderer(
        self,
        fetch_fn: FetchFn,
        post_fn: PostFn | None = None,
        invalidate_session: InvalidateFn | None = None,
    ) -> None:
        """Attach renderer callbacks and flush queued requests in order."""
        self._fetch_fn = fetch_fn
        self._post_fn = post_fn
        if invalidate_session is not None:
            self._invalidate = invalidate_session
        logger.info(
            "Renderer registered (%d pending)", len(self._pending)
        )

        pending, self._pending = self._pending, []
        for request in pending:
            if request.timer is not None:
                request.timer.cancel()
            if request.future.done():
                continue
            task = asyncio.ensure_future(self._replay_pending(request))
            self._flush_tasks.add(task)
            task.add_done_callback(self._flush_tasks.discard)

    def unregister_renderer(self) -> None:
        logger.info("Renderer unregistered")
        self._fetch_fn = None
        self._post_fn = None

    def set_session_invalidator(self, fn: InvalidateFn | None) -> None:
        self._invalidate = fn

    def is_ready(self) -> bool:
        return self._fetch_fn is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(
        self, listener: Callable[[GatewayEvent, str], None]
    ) -> Callable[[], None]:
        """Register ``listener(event, url)``. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: GatewayEvent, url: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, url)
            except Exception:
                logger.debug(
                    "Gateway listener failed on %s", event.value,
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def fetch_html(
        self, url: str, timeout_ms: int = DEFAULT_RENDER_TIMEOUT_MS
    ) -> str:
        """Render ``url`` (GET navigation) and return its HTML."""
        if self._fetch_fn is None:
            return await self._enqueue(
                _PendingRequest(
                    "GET", url, timeout_ms,
                    asyncio.get_running_loop().create_future(),
                )
            )
        return await self._dispatch("GET", url, None, None, timeout_ms)

    async def post_html(
        self,
        url: str,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_ms: int = DEFAULT_RENDER_TIMEOUT_MS,
    ) -> str:
        """POST through the renderer (same origin, same cookies)."""
        if self._fetch_fn is None:
            return await self._enqueue(
                _PendingRequest(
                    "POST", url, timeout_ms,
                    asyncio.get_running_loop().create_future(),
                    body=body,
                    headers=headers,
                )
            )
        return await self._dispatch("POST", url, body, headers, timeout_ms)

    async def _enqueue(self, request: _PendingRequest) -> str:
        loop = asyncio.get_running_loop()
        request.timer = loop.call_later(
            request.timeout_ms / 1000, self._expire, request
        )
        self._pending.append(request)
        logger.debug(
            "Renderer not ready, queued %s %s (queue size %d)",
            request.method,
            request.url[:80],
            len(self._pending),
        )
        self._emit(GatewayEvent.QUEUED, request.url)
        try:
            # shield: a cancelled caller must not cancel the shared future
            # before the timer or flush has removed the request.
            return await asyncio.shield(request.future)
        except asyncio.CancelledError:
            self._drop(request)
            raise

    def _drop(self, request: _PendingRequest) -> None:
        if request in self._pending:
            self._pending.remove(request)
        if request.timer is not None:
            request.timer.cancel()
        if not request.future.done():
            request.future.cancel()

    def _expire(self, request: _PendingRequest) -> None:
        """Timer callback: fail a request still waiting for a renderer."""
        if request not in self._pending:
            return
        self._pending.remove(request)
        if request.future.done():
            return
        logger.warning(
            "No renderer after %dms, dropping %s %s",
            request.timeout_ms,
            request.method,
            request.url[:80],
        )
        request.future.set_exception(
            RendererUnavailable(request.url, request.timeout_ms)
        )
        self._emit(GatewayEvent.TIMED_OUT, request.url)

    async def _replay_pending(self, request: _PendingRequest) -> None:
        try:
            html = await self._dispatch(
                request.method,
                request.url,
                request.body,
                request.headers,
                request.timeout_ms,
            )
        except Exception as e:
            if not request.future.done():
                request.future.set_exception(e)
            return
        if not request.future.done():
            request.future.set_result(html)

    async def _dispatch(
        self,
        method: str,
        url: str,
        body: str | None,
        headers: dict[str, str] | None,
        timeout_ms: int,
    ) -> str:
        fetch_fn, post_fn = self._fetch_fn, self._post_fn
        if fetch_fn is None:
            raise RendererUnavailable(url, timeout_ms)
        if method == "POST" and post_fn is None:
            raise RendererUnavailable(url, timeout_ms)

        logger.debug("Rendering %s %s", method, url[:80])
        self._emit(GatewayEvent.DISPATCHED, url)
        if method == "POST":
            call = post_fn(url, body, headers, timeout_ms)
        else:
            call = fetch_fn(url, timeout_ms)
        try:
            html = await asyncio.wait_for(call, timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise RenderTimeout(url, timeout_ms) from None

        if is_challenge_body(html):
            self._emit(GatewayEvent.CHALLENGE, url)
            await self._invalidate_domain(url)
            raise ChallengeStillPresent(url)
        return html

    async def _invalidate_domain(self, url: str) -> None:
        if self._invalidate is None:
            return
        domain = extract_domain(url)
        if not domain:
            return
        try:
            result = self._invalidate(domain)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning(
                "Failed to invalidate session for %s", domain, exc_info=True
            )
