"""Credential store: persistent, expiring per-domain session credentials.

Holds the cookies captured after a challenge solve. One StoredSession per
domain, overwritten on every successful solve. Persisted as a single JSON
object ``{domain: session}`` under one storage key, loaded lazily on the
first read and rewritten on every mutation.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from mangagate._errors import InvalidInput
from mangagate._storage import KeyValueStore, MemoryStorage

logger = logging.getLogger("mangagate")

STORAGE_KEY = "credential_sessions"
CLEARANCE_COOKIE = "cf_clearance"
DEFAULT_SESSION_TTL = 24 * 60 * 60  # seconds


@dataclass(frozen=True)
class Credential:
    """A single captured cookie. ``expires_at`` is a Unix timestamp."""

    name: str
    value: str
    domain: str
    path: str | None = None
    expires_at: float | None = None
    http_only: bool | None = None
    secure: bool | None = None

    @classmethod
    def from_browser_cookie(cls, cookie: dict) -> "Credential":
        """Build from a Playwright ``context.cookies()`` entry.

        Playwright reports session cookies with ``expires == -1``.
        """
        expires = cookie.get("expires", -1)
        return cls(
            name=cookie["name"],
            value=cookie.get("value", ""),
            domain=cookie.get("domain", "").lstrip("."),
            path=cookie.get("path") or None,
            expires_at=(
                float(expires)
                if isinstance(expires, (int, float)) and expires > 0
                else None
            ),
            http_only=cookie.get("httpOnly"),
            secure=cookie.get("secure"),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        return cls(
            name=data["name"],
            value=data.get("value", ""),
            domain=data.get("domain", ""),
            path=data.get("path"),
            expires_at=data.get("expires_at"),
            http_only=data.get("http_only"),
            secure=data.get("secure"),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires_at": self.expires_at,
            "http_only": self.http_only,
            "secure": self.secure,
        }


@dataclass
class StoredSession:
    domain: str
    credentials: list[Credential] = field(default_factory=list)
    cookie_header: str = ""
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def has_cookie(self, name: str, now: float | None = None) -> bool:
        creds = self.credentials if now is None else self.live_credentials(now)
        return any(c.name == name for c in creds)

    def live_credentials(self, now: float) -> list[Credential]:
        """Credentials without an expiry or expiring after ``now``."""
        return [
            c for c in self.credentials
            if c.expires_at is None or c.expires_at > now
        ]

    @classmethod
    def from_dict(cls, data: dict) -> "StoredSession":
        return cls(
            domain=data["domain"],
            credentials=[
                Credential.from_dict(c) for c in data.get("credentials", [])
            ],
            cookie_header=data.get("cookie_header", ""),
            expires_at=float(data.get("expires_at", 0.0)),
        )

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "credentials": [c.to_dict() for c in self.credentials],
            "cookie_header": self.cookie_header,
            "expires_at": self.expires_at,
        }


def build_cookie_header(credentials: list[Credential]) -> str:
    """Join credentials into a Cookie header value, last name wins."""
    by_name: dict[str, str] = {}
    for c in credentials:
        by_name[c.name] = c.value
    return "; ".join(f"{k}={v}" for k, v in by_name.items())


def session_expiry(
    credentials: list[Credential],
    now: float,
    default_ttl: float = DEFAULT_SESSION_TTL,
) -> float:
    """Latest explicit credential expiry, else ``now + default_ttl``."""
    explicit = [c.expires_at for c in credentials if c.expires_at]
    if explicit:
        return max(explicit)
    return now + default_ttl


class CredentialStore:
    """Process-wide cache of post-solve session credentials.

    Mutations update the in-memory map in a single step and are then
    persisted under ``_write_lock``, so writes reach storage in mutation
    order and no reader sees a half-built entry.
    """

    def __init__(
        self,
        storage: KeyValueStore | None = None,
        *,
        clearance_cookie: str = CLEARANCE_COOKIE,
        default_ttl: float = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.time,
        storage_key: str = STORAGE_KEY,
    ):
        self._storage = storage if storage is not None else MemoryStorage()
        self._clearance_cookie = clearance_cookie
        self._default_ttl = default_ttl
        self._clock = clock
        self._storage_key = storage_key
        self._sessions: dict[str, StoredSession] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def clearance_cookie(self) -> str:
        return self._clearance_cookie

    async def load(self) -> None:
        """Read persisted sessions once. Bad data means an empty store."""
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
                logger.warning("Failed to load credential store: %s", e)
                raw = None
            loaded = self._decode(raw) if raw else {}
            # Writes that happened before the load finished take priority.
            loaded.update(self._sessions)
            self._sessions = loaded
            self._loaded = True
            logger.debug(
                "Loaded credentials for %d domains", len(self._sessions)
            )

    def _decode(self, raw: str) -> dict[str, StoredSession]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Corrupt credential store, ignoring: %s", e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Corrupt credential store, ignoring")
            return {}
        sessions = {}
        for domain, entry in data.items():
            try:
                sessions[domain] = StoredSession.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Dropping corrupt credential entry for %s: %s",
                    domain,
                    e,
                )
        return sessions

    async def _persist(self) -> None:
        """Write the current snapshot. Failures are logged, not raised."""
        async with self._write_lock:
            snapshot = {d: s.to_dict() for d, s in self._sessions.items()}
            try:
                if snapshot:
                    await asyncio.to_thread(
                        self._storage.set,
                        self._storage_key,
                        json.dumps(snapshot),
                    )
                else:
                    await asyncio.to_thread(
                        self._storage.remove, self._storage_key
                    )
            except Exception as e:
                logger.warning("Failed to persist credential store: %s", e)

    async def set_credentials(
        self, domain: str, credentials: list[Credential]
    ) -> StoredSession:
        if not domain:
            raise InvalidInput("domain must not be empty")
        if not credentials:
            raise InvalidInput(f"No credentials to store for {domain}")
        await self.load()

        now = self._clock()
        session = StoredSession(
            domain=domain,
            credentials=list(credentials),
            cookie_header=build_cookie_header(credentials),
            expires_at=session_expiry(credentials, now, self._default_ttl),
        )
        self._sessions[domain] = session
        await self._persist()
        logger.info(
            "Stored %d credentials for %s (expires in %.0fs)",
            len(credentials),
            domain,
            session.expires_at - now,
        )
        return session

    async def get_session(self, domain: str) -> StoredSession | None:
        """Return the live session for ``domain``, evicting it if expired."""
        await self.load()
        session = self._sessions.get(domain)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            logger.debug("Credentials expired for %s", domain)
            if self._sessions.get(domain) is session:
                del self._sessions[domain]
                await self._persist()
            return None
        return session

    async def get_cookie_header(self, domain: str) -> str | None:
        """Header joined at read time; individually expired cookies drop out."""
        session = await self.get_session(domain)
        if session is None:
            return None
        return build_cookie_header(session.live_credentials(self._clock())) or None

    async def has_valid_session(self, domain: str) -> bool:
        session = await self.get_session(domain)
        return bool(
            session
            and session.has_cookie(self._clearance_cookie, self._clock())
        )

    async def invalidate(self, domain: str) -> None:
        await self.load()
        self._sessions.pop(domain, None)
        await self._persist()
        logger.info("Invalidated credentials for %s", domain)

    async def invalidate_all(self) -> None:
        await self.load()
        self._sessions.clear()
        await self._persist()
        logger.info("Invalidated all stored credentials")

    async def prune_expired(self) -> int:
        """Evict all expired sessions. Returns how many were removed."""
        await self.load()
        now = self._clock()
        expired = [
            d for d, s in self._sessions.items() if s.is_expired(now)
        ]
        for domain in expired:
            del self._sessions[domain]
        if expired:
            await self._persist()
            logger.debug("Pruned %d expired sessions", len(expired))
        return len(expired)

    async def domains(self) -> list[str]:
        await self.load()
        return list(self._sessions)
