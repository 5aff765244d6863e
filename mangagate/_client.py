"""RequestClient -- cookie-aware async HTTP client wrapping rnet.Client.

Every site adapter goes through here. Outgoing requests carry the
domain's cookies (jar cookies merged with stored challenge credentials);
incoming Set-Cookie headers are merged into the jar. Non-2xx responses
that look like challenges are handed to the BypassOrchestrator, which
solves and replays them; anything still failing surfaces as HttpError.
"""

import datetime
import logging
import time
from typing import Any

import rnet
from rnet import Emulation, Method

from mangagate._challenge import CHALLENGE_STATUSES
from mangagate._cookies import CookieJar, extract_domain
from mangagate._credentials import CredentialStore
from mangagate._errors import ConnectionFailed, HttpError, InvalidInput
from mangagate._orchestrator import BypassOrchestrator
from mangagate._response import FetchResponse

logger = logging.getLogger("mangagate")

_METHOD_MAP: dict[str, Method] = {
    "GET": Method.GET,
    "POST": Method.POST,
    "PUT": Method.PUT,
    "DELETE": Method.DELETE,
    "HEAD": Method.HEAD,
    "OPTIONS": Method.OPTIONS,
    "PATCH": Method.PATCH,
}

# Default to a recent Chrome emulation profile
DEFAULT_EMULATION = Emulation.Chrome145

DEFAULT_HEADERS = {
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,image/apng,*/*;q=0.8"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}

DEFAULT_CONNECT_TIMEOUT = datetime.timedelta(seconds=10)
DEFAULT_TIMEOUT = datetime.timedelta(seconds=30)


def _to_method(method: str) -> Method:
    """Convert a string HTTP method to rnet Method enum."""
    try:
        return _METHOD_MAP[method.upper()]
    except KeyError:
        raise InvalidInput(f"Unknown HTTP method: {method}") from None


def _normalize_timeout(val) -> datetime.timedelta:
    if isinstance(val, datetime.timedelta):
        return val
    return datetime.timedelta(seconds=float(val))


def _decode_headers(header_map) -> dict[str, str]:
    """Decode rnet HeaderMap to lowercase string dict.

    Multi-value headers are joined with "; " so nothing is dropped;
    Set-Cookie values are read separately via get_all().
    """
    result: dict[str, str] = {}
    for raw_key in header_map.keys():
        k = raw_key.decode("ascii", errors="replace").lower()
        all_vals = header_map.get_all(k)
        parts = [v.decode("utf-8", errors="replace") for v in all_vals]
        result[k] = "; ".join(parts)
    return result


def _set_cookie_values(header_map) -> list[str]:
    return [
        v.decode("utf-8", errors="replace") if isinstance(v, bytes) else str(v)
        for v in header_map.get_all("set-cookie")
    ]


def merge_cookie_headers(*headers: str | None) -> str | None:
    """Merge Cookie header strings by cookie name; later arguments win."""
    merged: dict[str, str] = {}
    for header in headers:
        if not header:
            continue
        for part in header.split(";"):
            name, sep, value = part.strip().partition("=")
            if sep and name:
                merged[name] = value
    if not merged:
        return None
    return "; ".join(f"{k}={v}" for k, v in merged.items())


class RequestClient:
    """Async HTTP client with its own cookie jar and challenge recovery.

    Args:
        jar: Cookie jar for ordinary Set-Cookie bookkeeping.
        credentials: Challenge-solve credentials, attached to requests.
        orchestrator: Handles challenge responses. Without one, challenge
            responses surface as HttpError like any other non-2xx.
        emulation: rnet browser emulation profile.
        headers: Default request headers (replaces DEFAULT_HEADERS).
        user_agent: Overrides the emulation's User-Agent.
        client: Pre-built rnet client (tests inject a fake here).
    """

    def __init__(
        self,
        *,
        jar: CookieJar | None = None,
        credentials: CredentialStore | None = None,
        orchestrator: BypassOrchestrator | None = None,
        emulation: Emulation | None = None,
        headers: dict[str, str] | None = None,
        user_agent: str | None = None,
        connect_timeout: datetime.timedelta | float | int | None = None,
        timeout: datetime.timedelta | float | int | None = None,
        proxy: str | None = None,
        client=None,
    ):
        self._jar = jar if jar is not None else CookieJar()
        self._credentials = credentials
        self._orchestrator = orchestrator
        self.headers = dict(headers) if headers is not None else dict(DEFAULT_HEADERS)
        self._user_agent = user_agent
        if user_agent:
            self.headers["User-Agent"] = user_agent
        self.connect_timeout = (
            _normalize_timeout(connect_timeout)
            if connect_timeout is not None
            else DEFAULT_CONNECT_TIMEOUT
        )
        self.timeout = (
            _normalize_timeout(timeout)
            if timeout is not None
            else DEFAULT_TIMEOUT
        )
        self._emulation = emulation or DEFAULT_EMULATION
        self._proxy = proxy

        if client is not None:
            self._client = client
        else:
            self._client = rnet.Client(**self._build_client_kwargs())
        logger.debug(
            "RequestClient created with emulation=%s, timeout=%s",
            self._emulation,
            self.timeout,
        )

    def _build_client_kwargs(self) -> dict:
        kwargs = {
            "emulation": self._emulation,
            "headers": dict(self.headers),
            "connect_timeout": self.connect_timeout,
            "timeout": self.timeout,
            # Cookies are tracked by CookieJar, not rnet's own store.
            "cookie_store": False,
        }
        if self._proxy:
            kwargs["proxies"] = [rnet.Proxy.all(self._proxy)]
        return kwargs

    @property
    def jar(self) -> CookieJar:
        return self._jar

    @property
    def user_agent(self) -> str | None:
        return self._user_agent

    def set_orchestrator(self, orchestrator: BypassOrchestrator | None) -> None:
        self._orchestrator = orchestrator

    async def _cookie_header(self, domain: str, override: str | None) -> str | None:
        jar_header = await self._jar.cookie_header(domain)
        stored = (
            await self._credentials.get_cookie_header(domain)
            if self._credentials is not None
            else None
        )
        return merge_cookie_headers(jar_header, stored, override)

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        timeout,
        body: str | bytes | None,
        json_body: Any,
    ) -> FetchResponse:
        if self._client is None:
            raise InvalidInput("RequestClient is closed")
        kwargs: dict[str, Any] = {"headers": headers}
        if timeout is not None:
            kwargs["timeout"] = _normalize_timeout(timeout)
        if body is not None:
            kwargs["body"] = body
        if json_body is not None:
            kwargs["json"] = json_body

        try:
            resp = await self._client.request(_to_method(method), url, **kwargs)
            status = resp.status.as_int()
            resp_headers = _decode_headers(resp.headers)
            set_cookies = _set_cookie_values(resp.headers)
            text = await resp.text()
        except InvalidInput:
            raise
        except Exception as e:
            raise ConnectionFailed(url, str(e)) from e

        domain = extract_domain(url)
        if domain and set_cookies:
            await self._jar.merge_set_cookies(domain, set_cookies)

        logger.debug("%s %s -> %d (%d bytes)", method, url[:80], status, len(text))
        return FetchResponse(
            status_code=status,
            headers=resp_headers,
            url=url,
            text=text,
            set_cookies=set_cookies,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: datetime.timedelta | float | int | None = None,
        body: str | bytes | None = None,
        json: Any = None,
    ) -> FetchResponse:
        """Send a request, recovering from challenges when possible.

        Returns the final response, which may still be non-2xx when the
        failure was not a challenge.
        """
        start_time = time.monotonic()
        domain = extract_domain(url)
        if not domain:
            raise InvalidInput(f"URL has no host: {url!r}")
        method = method.upper()

        async def send(extra: dict[str, str]) -> FetchResponse:
            merged = dict(headers or {})
            extra = dict(extra)
            cookie = await self._cookie_header(domain, extra.pop("Cookie", None))
            if cookie:
                merged["Cookie"] = cookie
            merged.update(extra)
            return await self._send(method, url, merged, timeout, body, json)

        logger.debug("%s %s", method, url[:80])
        resp = await send({})

        if (
            not resp.ok
            and resp.status_code in CHALLENGE_STATUSES
            and self._orchestrator is not None
        ):
            resp = await self._orchestrator.recover(method, url, resp, send)

        resp.elapsed = time.monotonic() - start_time
        return resp

    async def get_text(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: datetime.timedelta | float | int | None = None,
    ) -> str:
        resp = await self.request("GET", url, headers=headers, timeout=timeout)
        resp.raise_for_status()
        return resp.text

    async def get_json(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: datetime.timedelta | float | int | None = None,
    ) -> Any:
        resp = await self.request("GET", url, headers=headers, timeout=timeout)
        resp.raise_for_status()
        return resp.json()

    async def post(
        self,
        url: str,
        data: str | bytes | dict | None = None,
        headers: dict[str, str] | None = None,
        timeout: datetime.timedelta | float | int | None = None,
    ) -> str:
        """POST ``data`` (a dict is sent as JSON) and return the body text."""
        if isinstance(data, dict):
            resp = await self.request(
                "POST", url, headers=headers, timeout=timeout, json=data
            )
        else:
            resp = await self.request(
                "POST", url, headers=headers, timeout=timeout, body=data
            )
        resp.raise_for_status()
        return resp.text

    async def fetch_text(self, url: str, referer: str | None = None) -> str:
        """Entry point for site adapters: GET ``url`` and return its HTML."""
        headers = {"Referer": referer} if referer else None
        return await self.get_text(url, headers=headers)

    async def has_clearance(self, domain: str) -> bool:
        """Fresh clearance cookie in the jar (younger than 25 minutes)."""
        return await self._jar.has_clearance(domain)

    async def warm_up(self, base_url: str) -> bool:
        """Visit ``base_url`` to collect session cookies.

        Skipped when the jar already holds a fresh clearance cookie.
        Returns True if a request was made.
        """
        domain = extract_domain(base_url)
        if not domain:
            raise InvalidInput(f"URL has no host: {base_url!r}")
        if await self.has_clearance(domain):
            logger.debug("Warm-up skipped for %s, clearance is fresh", domain)
            return False
        try:
            await self.get_text(base_url)
        except HttpError as e:
            logger.warning("Warm-up of %s failed: %s", base_url, e)
        return True

    async def close(self) -> None:
        """Drop the transport; rnet releases its pool when the client is freed."""
        self._client = None
        logger.debug("RequestClient closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    @staticmethod
    def is_challenge(response: FetchResponse) -> bool:
        """Fast header-only check: 403/503 served through Cloudflare."""
        if response.status_code not in CHALLENGE_STATUSES:
            return False
        server = response.headers.get("server", "").lower()
        return "cloudflare" in server or "cf-ray" in response.headers
