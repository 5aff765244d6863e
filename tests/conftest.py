"""Shared mock objects and factories for mangagate tests."""

import asyncio
import json

from mangagate._client import RequestClient
from mangagate._cookies import CookieJar
from mangagate._credentials import Credential, CredentialStore
from mangagate._gateway import SolverGateway
from mangagate._orchestrator import BypassOrchestrator
from mangagate._storage import MemoryStorage

CHALLENGE_HTML = (
    "<html><head><title>Just a moment...</title></head>"
    '<body><div id="challenge-running"></div></body></html>'
)
PAGE_HTML = "<html><head><title>Chapter 1</title></head><body>ok</body></html>"

# ---------------------------------------------------------------------------
# Mock rnet types
# ---------------------------------------------------------------------------


class MockStatus:
    def __init__(self, code: int):
        self._code = code

    def as_int(self) -> int:
        return self._code

    def is_success(self) -> bool:
        return 200 <= self._code < 300


class MockHeaderMap:
    """Mock rnet HeaderMap with bytes keys and bytes values.

    Mirrors rnet's real HeaderMap behavior:
    - keys() returns unique bytes keys
    - get() returns first value only
    - get_all() returns list of all values for a key

    ``data`` values may be lists for repeated headers (Set-Cookie).
    """

    def __init__(self, data: dict | None = None):
        self._raw: dict[bytes, list[bytes]] = {}
        for k, v in (data or {}).items():
            bk = k.lower().encode("ascii")
            values = v if isinstance(v, list) else [v]
            self._raw.setdefault(bk, []).extend(
                item.encode("utf-8") for item in values
            )

    def keys(self):
        return list(self._raw.keys())

    def get(self, key):
        if isinstance(key, str):
            key = key.lower().encode("ascii")
        values = self._raw.get(key)
        return values[0] if values else None

    def get_all(self, key):
        if isinstance(key, str):
            key = key.lower().encode("ascii")
        return list(self._raw.get(key, []))


class AsyncMockResponse:
    """Mock rnet response with async text()."""

    def __init__(
        self,
        status_code: int,
        headers: dict | None = None,
        body: str = "",
    ):
        self.status = MockStatus(status_code)
        self.headers = MockHeaderMap(headers)
        self._body = body

    async def text(self):
        return self._body

    def json(self):
        return json.loads(self._body)


class AsyncMockClient:
    """Async mock rnet client that returns responses from a sequence.

    The last response repeats once the sequence is used up.
    """

    def __init__(self, responses: list[AsyncMockResponse | Exception]):
        self._responses = responses
        self._index = 0
        self.request_count = 0
        self.last_kwargs: dict = {}
        self.request_log: list[tuple] = []

    async def request(self, method, url, **kwargs):
        self.last_kwargs = kwargs
        resp = self._responses[
            min(self._index, len(self._responses) - 1)
        ]
        self._index += 1
        self.request_count += 1
        self.request_log.append((method, url, kwargs))
        if isinstance(resp, Exception):
            raise resp
        return resp


# ---------------------------------------------------------------------------
# Renderer / clock fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRenderer:
    """Scripted rendering surface.

    ``pages`` is consumed one per render (last one repeats); an Exception
    entry is raised instead. ``cookies`` is what ``cookies()`` reports
    after a render. Set ``gate`` to hold every render until it is set.
    """

    def __init__(
        self,
        pages: list | None = None,
        cookies: list[Credential] | None = None,
        gate: asyncio.Event | None = None,
    ):
        self.pages = pages or [PAGE_HTML]
        self.cookie_values = cookies if cookies is not None else []
        self.gate = gate
        self.calls: list[tuple] = []
        self._index = 0

    def _next(self):
        page = self.pages[min(self._index, len(self.pages) - 1)]
        self._index += 1
        if isinstance(page, Exception):
            raise page
        return page

    async def render(self, url: str, timeout_ms: int) -> str:
        self.calls.append(("GET", url, timeout_ms))
        if self.gate is not None:
            await self.gate.wait()
        return self._next()

    async def render_post(self, url, body=None, headers=None, timeout_ms=0):
        self.calls.append(("POST", url, body, headers, timeout_ms))
        return self._next()

    async def cookies(self, url: str) -> list[Credential]:
        return list(self.cookie_values)


def clearance(domain: str = "example.com", value: str = "abc") -> Credential:
    return Credential(name="cf_clearance", value=value, domain=domain)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_orchestrator(renderer: FakeRenderer | None = None, **kwargs):
    """BypassOrchestrator over a gateway with ``renderer`` attached.

    Returns (orchestrator, gateway, credential store). Retry delays are
    zero unless overridden.
    """
    clock = kwargs.pop("clock", None)
    storage = kwargs.pop("storage", None) or MemoryStorage()
    store_kwargs = {"clock": clock} if clock is not None else {}
    credentials = CredentialStore(storage, **store_kwargs)
    gateway = SolverGateway(invalidate_session=credentials.invalidate)
    renderer = renderer or FakeRenderer()
    gateway.register_renderer(renderer.render, renderer.render_post)
    kwargs.setdefault("retry_delays", (0.0,))
    orchestrator = BypassOrchestrator(
        gateway, credentials, renderer.cookies, **kwargs
    )
    return orchestrator, gateway, credentials


def make_client(responses, renderer: FakeRenderer | None = None, **kwargs):
    """RequestClient over AsyncMockClient, with an orchestrator attached.

    Returns (client, mock, credential store).
    """
    storage = MemoryStorage()
    clock = kwargs.pop("clock", None)
    jar_kwargs = {"clock": clock} if clock is not None else {}
    orchestrator, _gateway, credentials = make_orchestrator(
        renderer, storage=storage, clock=clock, **kwargs
    )
    mock = AsyncMockClient(responses)
    client = RequestClient(
        jar=CookieJar(storage, **jar_kwargs),
        credentials=credentials,
        orchestrator=orchestrator,
        client=mock,
    )
    return client, mock, credentials


def challenge_response(status: int = 503) -> AsyncMockResponse:
    return AsyncMockResponse(
        status,
        {"server": "cloudflare", "cf-ray": "8a1b2c3d4e5f-AMS"},
        CHALLENGE_HTML,
    )
