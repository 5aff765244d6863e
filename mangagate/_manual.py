"""Manual challenge solving: a person completes the challenge in a UI.

The coordinator holds at most one active request. A UI subscribes, shows
its solving view on ``SHOW`` and hides it on ``HIDE``, and reports the
outcome through ``handle_success`` or ``handle_cancel``.
"""

import asyncio
import enum
import logging
from typing import Callable

from mangagate._credentials import Credential
from mangagate._errors import ManualSolveCancelled

logger = logging.getLogger("mangagate")


class ManualSolveEvent(enum.Enum):
    SHOW = "show"
    HIDE = "hide"


def parse_cookie_header(header: str, domain: str) -> list[Credential]:
    """Split ``a=1; b=2`` into credentials for ``domain``."""
    credentials = []
    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            credentials.append(
                Credential(name=name.strip(), value=value.strip(), domain=domain)
            )
    return credentials


class ManualSolveCoordinator:
    def __init__(self):
        self._active: tuple[str, asyncio.Future] | None = None
        self._lock = asyncio.Lock()
        self._listeners: list[Callable[[ManualSolveEvent, str | None], None]] = []

    def subscribe(
        self, listener: Callable[[ManualSolveEvent, str | None], None]
    ) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: ManualSolveEvent, url: str | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, url)
            except Exception:
                logger.debug(
                    "Manual solve listener failed on %s", event.value,
                    exc_info=True,
                )

    @property
    def current_url(self) -> str | None:
        return self._active[0] if self._active else None

    async def request_manual_solve(
        self, url: str, timeout: float | None = None
    ) -> str:
        """Ask the UI to solve ``url``; returns the resulting cookie header.

        Requests are served one at a time in arrival order. ``timeout``
        covers the wait for earlier requests as well as the solve itself.
        """
        return await asyncio.wait_for(self._serve(url), timeout)

    async def _serve(self, url: str) -> str:
        async with self._lock:
            future = asyncio.get_running_loop().create_future()
            self._active = (url, future)
            logger.info("Requesting manual challenge solve for %s", url)
            self._emit(ManualSolveEvent.SHOW, url)
            try:
                return await future
            finally:
                if self._active is not None and self._active[1] is future:
                    self._active = None
                    self._emit(ManualSolveEvent.HIDE, url)

    def handle_success(self, cookie_header: str) -> None:
        if self._active is None:
            return
        url, future = self._active
        if not future.done():
            logger.info("Manual challenge solve succeeded for %s", url)
            future.set_result(cookie_header)

    def handle_cancel(self) -> None:
        if self._active is None:
            return
        url, future = self._active
        if not future.done():
            logger.info("Manual challenge solve cancelled for %s", url)
            future.set_exception(ManualSolveCancelled(url))
