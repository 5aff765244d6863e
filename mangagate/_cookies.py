"""Request-client cookie jar: Set-Cookie bookkeeping with JSON persistence.

Separate from the credential store. The jar captures whatever ordinary
responses set; the credential store only holds challenge-solve results.
Persisted layout: ``{domain: {name: {value, expires_at, timestamp}}}``.
"""

import asyncio
import email.utils
import json
import logging
import time
from typing import Callable
from urllib.parse import urlparse

from mangagate._storage import KeyValueStore, MemoryStorage

logger = logging.getLogger("mangagate")

STORAGE_KEY = "cookie_jar"
CLEARANCE_COOKIE = "cf_clearance"
CLEARANCE_MAX_AGE = 25 * 60  # seconds


def extract_domain(url: str) -> str | None:
    """Extract hostname from a URL."""
    return urlparse(url).hostname


def _parse_cookie_name(raw: str) -> str | None:
    """Extract cookie name from a Set-Cookie header value."""
    eq = raw.find("=")
    if eq <= 0:
        return None
    return raw[:eq].strip() or None


def _parse_cookie_value(raw: str) -> str:
    """Extract the value part of ``name=value; attr...``."""
    first = raw.split(";", 1)[0]
    eq = first.find("=")
    if eq == -1:
        return ""
    return first[eq + 1 :].strip().strip('"')


def _parse_cookie_expires(raw: str, now: float) -> float | None:
    """Extract expiry timestamp from Set-Cookie, or None for session cookies."""
    lower = raw.lower()

    # max-age takes precedence over expires
    idx = lower.find("max-age=")
    if idx != -1:
        rest = raw[idx + 8 :]
        semi = rest.find(";")
        val = rest[:semi] if semi != -1 else rest
        try:
            return now + max(0, int(val.strip()))
        except ValueError:
            pass

    idx = lower.find("expires=")
    if idx != -1:
        rest = raw[idx + 8 :]
        semi = rest.find(";")
        val = rest[:semi] if semi != -1 else rest
        try:
            dt = email.utils.parsedate_to_datetime(val.strip())
            return dt.timestamp()
        except (ValueError, TypeError):
            pass

    return None


class CookieJar:
    """Per-domain cookie jar with write-through persistence.

    Reads are served from memory. Each merge updates memory first, then
    writes a snapshot under ``_write_lock`` so concurrent merges persist
    in order and reads right after a merge see the new cookies.
    """

    def __init__(
        self,
        storage: KeyValueStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
        storage_key: str = STORAGE_KEY,
        clearance_cookie: str = CLEARANCE_COOKIE,
        clearance_max_age: float = CLEARANCE_MAX_AGE,
    ):
        self._storage = storage if storage is not None else MemoryStorage()
        self._clock = clock
        self._storage_key = storage_key
        self._clearance_cookie = clearance_cookie
        self._clearance_max_age = clearance_max_age
        self._jar: dict[str, dict[str, dict]] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def load(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            try:
                raw = await asyncio.to_thread(
                    self._storage.get, self._storage_key
                )
            except Exception as e:
                logger.warning("Failed to load cookie jar: %s", e)
                raw = None
            loaded: dict[str, dict[str, dict]] = {}
            if raw:
                try:
                    data = json.loads(raw)
                    if isinstance(data, dict):
                        loaded = {
                            d: dict(c) for d, c in data.items()
                            if isinstance(c, dict)
                        }
                    else:
                        logger.warning("Corrupt cookie jar, ignoring")
                except json.JSONDecodeError as e:
                    logger.warning("Corrupt cookie jar, ignoring: %s", e)
            for domain, cookies in self._jar.items():
                loaded.setdefault(domain, {}).update(cookies)
            self._jar = loaded
            self._loaded = True

    async def _persist(self) -> None:
        async with self._write_lock:
            snapshot = json.dumps(self._jar)
            try:
                await asyncio.to_thread(
                    self._storage.set, self._storage_key, snapshot
                )
            except Exception as e:
                logger.warning("Failed to persist cookie jar: %s", e)

    def _live(self, domain: str, now: float) -> dict[str, dict]:
        cookies = self._jar.get(domain, {})
        return {
            name: entry
            for name, entry in cookies.items()
            if not entry.get("expires_at") or entry["expires_at"] > now
        }

    async def cookie_header(self, domain: str) -> str | None:
        """Cookie header for ``domain`` from unexpired jar entries."""
        await self.load()
        live = self._live(domain, self._clock())
        if not live:
            return None
        return "; ".join(f"{n}={e['value']}" for n, e in live.items())

    async def get(self, domain: str, name: str) -> dict | None:
        await self.load()
        return self._live(domain, self._clock()).get(name)

    async def merge_set_cookies(
        self, domain: str, raw_values: list
    ) -> int:
        """Parse Set-Cookie header values and merge them for ``domain``.

        A cookie whose expiry is already in the past deletes the entry.
        Returns the number of headers applied.
        """
        await self.load()
        now = self._clock()
        applied = 0
        cookies = dict(self._jar.get(domain, {}))
        for raw in raw_values:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            else:
                raw = str(raw)
            name = _parse_cookie_name(raw)
            if not name:
                continue
            expires_at = _parse_cookie_expires(raw, now)
            if expires_at is not None and expires_at <= now:
                cookies.pop(name, None)
            else:
                cookies[name] = {
                    "value": _parse_cookie_value(raw),
                    "expires_at": expires_at,
                    "timestamp": now,
                }
            applied += 1
        if not applied:
            return 0
        if cookies:
            self._jar[domain] = cookies
        else:
            self._jar.pop(domain, None)
        await self._persist()
        logger.debug("Merged %d cookies for %s", applied, domain)
        return applied

    async def has_clearance(self, domain: str) -> bool:
        """Clearance cookie present and younger than the staleness window."""
        entry = await self.get(domain, self._clearance_cookie)
        if entry is None:
            return False
        age = self._clock() - entry.get("timestamp", 0)
        return age < self._clearance_max_age

    async def clear(self, domain: str) -> None:
        await self.load()
        if self._jar.pop(domain, None) is not None:
            await self._persist()

    async def domains(self) -> list[str]:
        await self.load()
        return list(self._jar)
