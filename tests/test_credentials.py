"""Tests for the credential store."""

import json

import pytest

from mangagate._credentials import (
    DEFAULT_SESSION_TTL,
    STORAGE_KEY,
    Credential,
    CredentialStore,
    StoredSession,
    build_cookie_header,
    session_expiry,
)
from mangagate._errors import InvalidInput
from mangagate._storage import MemoryStorage
from tests.conftest import FakeClock, clearance

# ---------------------------------------------------------------------------
# Credential / StoredSession
# ---------------------------------------------------------------------------


class TestCredential:
    def test_from_browser_cookie(self):
        cred = Credential.from_browser_cookie({
            "name": "cf_clearance",
            "value": "xyz",
            "domain": ".example.com",
            "path": "/",
            "expires": 1_800_000_000,
            "httpOnly": True,
            "secure": True,
        })
        assert cred.domain == "example.com"
        assert cred.expires_at == 1_800_000_000.0
        assert cred.http_only is True

    def test_session_cookie_has_no_expiry(self):
        cred = Credential.from_browser_cookie(
            {"name": "a", "value": "1", "domain": "x.com", "expires": -1}
        )
        assert cred.expires_at is None

    def test_dict_roundtrip(self):
        cred = Credential("a", "1", "x.com", path="/", expires_at=5.0)
        assert Credential.from_dict(cred.to_dict()) == cred


class TestStoredSession:
    def test_expiry_boundary(self):
        session = StoredSession("x.com", expires_at=100.0)
        assert not session.is_expired(99.9)
        assert session.is_expired(100.0)

    def test_has_cookie(self):
        session = StoredSession("x.com", credentials=[clearance("x.com")])
        assert session.has_cookie("cf_clearance")
        assert not session.has_cookie("other")


class TestHelpers:
    def test_cookie_header(self):
        creds = [
            Credential("a", "1", "x.com"),
            Credential("b", "2", "x.com"),
        ]
        assert build_cookie_header(creds) == "a=1; b=2"

    def test_cookie_header_last_name_wins(self):
        creds = [
            Credential("a", "old", "x.com"),
            Credential("a", "new", "x.com"),
        ]
        assert build_cookie_header(creds) == "a=new"

    def test_expiry_uses_latest_explicit(self):
        creds = [
            Credential("a", "1", "x.com", expires_at=500.0),
            Credential("b", "2", "x.com", expires_at=900.0),
            Credential("c", "3", "x.com"),
        ]
        assert session_expiry(creds, now=100.0) == 900.0

    def test_expiry_default_ttl(self):
        creds = [Credential("a", "1", "x.com")]
        assert session_expiry(creds, now=100.0) == 100.0 + DEFAULT_SESSION_TTL


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class TestCredentialStore:
    @pytest.mark.asyncio
    async def test_set_and_get(self):
        clock = FakeClock()
        store = CredentialStore(clock=clock)
        await store.set_credentials(
            "example.com",
            [clearance(), Credential("sid", "s1", "example.com")],
        )
        header = await store.get_cookie_header("example.com")
        assert header == "cf_clearance=abc; sid=s1"
        assert await store.has_valid_session("example.com")

    @pytest.mark.asyncio
    async def test_unknown_domain(self):
        store = CredentialStore()
        assert await store.get_session("nope.com") is None
        assert await store.get_cookie_header("nope.com") is None
        assert not await store.has_valid_session("nope.com")

    @pytest.mark.asyncio
    async def test_overwrite(self):
        store = CredentialStore()
        await store.set_credentials("example.com", [clearance(value="1")])
        await store.set_credentials("example.com", [clearance(value="2")])
        assert await store.get_cookie_header("example.com") == "cf_clearance=2"

    @pytest.mark.asyncio
    async def test_set_credentials_idempotent(self):
        clock = FakeClock()
        store = CredentialStore(clock=clock)
        creds = [
            clearance(),
            Credential("sid", "s1", "example.com", expires_at=clock() + 600),
        ]
        first = await store.set_credentials("example.com", creds)
        second = await store.set_credentials("example.com", creds)
        assert second.cookie_header == first.cookie_header
        assert second.expires_at == first.expires_at
        assert await store.domains() == ["example.com"]

    @pytest.mark.asyncio
    async def test_expired_cookie_dropped_from_header(self):
        clock = FakeClock()
        store = CredentialStore(clock=clock)
        await store.set_credentials("example.com", [
            Credential(
                "cf_clearance", "abc", "example.com", expires_at=clock() + 3600
            ),
            Credential("__cf_bm", "old", "example.com", expires_at=clock() + 60),
        ])
        assert (
            await store.get_cookie_header("example.com")
            == "cf_clearance=abc; __cf_bm=old"
        )
        clock.advance(120)
        assert await store.get_cookie_header("example.com") == "cf_clearance=abc"
        assert await store.has_valid_session("example.com")

    @pytest.mark.asyncio
    async def test_expired_clearance_not_valid(self):
        clock = FakeClock()
        store = CredentialStore(clock=clock)
        await store.set_credentials("example.com", [
            Credential(
                "cf_clearance", "abc", "example.com", expires_at=clock() + 60
            ),
            Credential("sid", "1", "example.com", expires_at=clock() + 3600),
        ])
        clock.advance(120)
        assert not await store.has_valid_session("example.com")
        assert await store.get_cookie_header("example.com") == "sid=1"

    @pytest.mark.asyncio
    async def test_session_without_clearance_not_valid(self):
        store = CredentialStore()
        await store.set_credentials(
            "example.com", [Credential("sid", "1", "example.com")]
        )
        assert await store.get_session("example.com") is not None
        assert not await store.has_valid_session("example.com")

    @pytest.mark.asyncio
    async def test_rejects_empty_input(self):
        store = CredentialStore()
        with pytest.raises(InvalidInput):
            await store.set_credentials("", [clearance()])
        with pytest.raises(InvalidInput):
            await store.set_credentials("example.com", [])

    @pytest.mark.asyncio
    async def test_expired_session_evicted(self):
        clock = FakeClock()
        storage = MemoryStorage()
        store = CredentialStore(storage, clock=clock)
        await store.set_credentials("example.com", [clearance()])

        clock.advance(DEFAULT_SESSION_TTL)
        assert await store.get_session("example.com") is None
        assert "example.com" not in await store.domains()
        assert storage.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_explicit_expiry(self):
        clock = FakeClock(1000.0)
        store = CredentialStore(clock=clock)
        cred = Credential("cf_clearance", "x", "example.com", expires_at=1060.0)
        await store.set_credentials("example.com", [cred])
        clock.advance(59)
        assert await store.has_valid_session("example.com")
        clock.advance(1)
        assert not await store.has_valid_session("example.com")

    @pytest.mark.asyncio
    async def test_invalidate(self):
        store = CredentialStore()
        await store.set_credentials("a.com", [clearance("a.com")])
        await store.set_credentials("b.com", [clearance("b.com")])
        await store.invalidate("a.com")
        assert await store.domains() == ["b.com"]
        await store.invalidate("missing.com")

    @pytest.mark.asyncio
    async def test_invalidate_all(self):
        storage = MemoryStorage()
        store = CredentialStore(storage)
        await store.set_credentials("a.com", [clearance("a.com")])
        await store.invalidate_all()
        assert await store.domains() == []
        assert storage.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_prune_expired(self):
        clock = FakeClock(1000.0)
        store = CredentialStore(clock=clock)
        short = Credential("cf_clearance", "x", "a.com", expires_at=1010.0)
        await store.set_credentials("a.com", [short])
        await store.set_credentials("b.com", [clearance("b.com")])
        clock.advance(20)
        assert await store.prune_expired() == 1
        assert await store.domains() == ["b.com"]

    @pytest.mark.asyncio
    async def test_persists_and_reloads(self):
        storage = MemoryStorage()
        clock = FakeClock()
        store = CredentialStore(storage, clock=clock)
        await store.set_credentials("example.com", [clearance()])

        data = json.loads(storage.get(STORAGE_KEY))
        assert data["example.com"]["cookie_header"] == "cf_clearance=abc"

        reloaded = CredentialStore(storage, clock=clock)
        assert await reloaded.has_valid_session("example.com")

    @pytest.mark.asyncio
    async def test_corrupt_storage_is_empty(self):
        storage = MemoryStorage({STORAGE_KEY: "{not json"})
        store = CredentialStore(storage)
        assert await store.domains() == []
        await store.set_credentials("example.com", [clearance()])
        assert json.loads(storage.get(STORAGE_KEY))

    @pytest.mark.asyncio
    async def test_corrupt_entry_dropped(self):
        good = StoredSession(
            "a.com", [clearance("a.com")], "cf_clearance=abc", 9e12
        ).to_dict()
        raw = json.dumps({"a.com": good, "b.com": {"nope": 1}})
        store = CredentialStore(MemoryStorage({STORAGE_KEY: raw}))
        assert await store.domains() == ["a.com"]

    @pytest.mark.asyncio
    async def test_storage_failure_logged_not_raised(self):
        class BrokenStorage(MemoryStorage):
            def set(self, key, value):
                raise OSError("disk full")

        store = CredentialStore(BrokenStorage())
        await store.set_credentials("example.com", [clearance()])
        assert await store.has_valid_session("example.com")
