"""MangaGate -- the process-wide context object.

Build one at startup and pass it (or its members) to whatever needs them.
It owns the only CredentialStore, CookieJar, SolverGateway and
BypassOrchestrator in the process; nothing in mangagate keeps module-level
state.
"""

import logging
import time
from typing import Callable

from mangagate._client import RequestClient
from mangagate._cookies import CookieJar
from mangagate._credentials import Credential, CredentialStore
from mangagate._gateway import SolverGateway
from mangagate._manual import ManualSolveCoordinator
from mangagate._orchestrator import BypassOrchestrator, CookieExtractor
from mangagate._retry import MAX_RETRIES
from mangagate._storage import JsonDirStorage, KeyValueStore, MemoryStorage

logger = logging.getLogger("mangagate")


class MangaGate:
    """Wires storage, credential store, jar, gateway, orchestrator, client.

    The cookie extractor is resolved per call, so a renderer attached
    after construction is picked up by solves that start later.
    """

    def __init__(
        self,
        storage: KeyValueStore | None = None,
        *,
        max_retries: int = MAX_RETRIES,
        clock: Callable[[], float] = time.time,
        manual_solve: bool = False,
        orchestrator_kwargs: dict | None = None,
        **client_kwargs,
    ):
        self.storage = storage if storage is not None else MemoryStorage()
        self.credentials = CredentialStore(self.storage, clock=clock)
        self.jar = CookieJar(self.storage, clock=clock)
        self.gateway = SolverGateway(invalidate_session=self.credentials.invalidate)
        self.manual = ManualSolveCoordinator() if manual_solve else None
        self._cookie_source: CookieExtractor | None = None
        self.orchestrator = BypassOrchestrator(
            self.gateway,
            self.credentials,
            self._extract_cookies,
            max_retries=max_retries,
            manual_solver=self.manual,
            **(orchestrator_kwargs or {}),
        )
        self.client = RequestClient(
            jar=self.jar,
            credentials=self.credentials,
            orchestrator=self.orchestrator,
            **client_kwargs,
        )

    @classmethod
    def create(
        cls,
        cache_dir: str | None = None,
        storage: KeyValueStore | None = None,
        **kwargs,
    ) -> "MangaGate":
        """Context persisted under ``cache_dir`` (in-memory when None).

        An explicit ``storage`` backend takes precedence over ``cache_dir``.
        """
        if storage is None:
            storage = JsonDirStorage(cache_dir) if cache_dir else MemoryStorage()
        return cls(storage, **kwargs)

    async def _extract_cookies(self, url: str) -> list[Credential]:
        if self._cookie_source is None:
            logger.warning("No cookie source attached, cannot read %s", url)
            return []
        return await self._cookie_source(url)

    def attach_renderer(self, renderer) -> None:
        """Attach a rendering surface (``render``, ``render_post``, ``cookies``)."""
        self._cookie_source = renderer.cookies
        self.gateway.register_renderer(
            renderer.render,
            renderer.render_post,
            self.credentials.invalidate,
        )

    def detach_renderer(self) -> None:
        self.gateway.unregister_renderer()
        self._cookie_source = None

    async def fetch_text(self, url: str, referer: str | None = None) -> str:
        return await self.client.fetch_text(url, referer=referer)

    async def close(self) -> None:
        self.detach_renderer()
        await self.client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
