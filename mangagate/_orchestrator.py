"""BypassOrchestrator -- turns challenge responses into replayed successes.

Per request key (``METHOD:url``) the flow is:

    IDLE -> DETECTING -> SOLVING -> REPLAYING -> RESOLVED | FAILED

Detection runs on every failed response. A challenge starts (or joins)
the single in-flight solve for the key; the solve renders the URL through
the gateway, pulls the resulting cookies, requires the clearance cookie,
and stores the credentials. Each waiting caller then replays its own
request with the stored Cookie header.

Attempt counting: a key may start ``max_retries`` solves since its last
success. A failed solve keeps its count, so the next challenge on the key
fails fast with BypassExhausted (which resets the key). A successful
solve resets the count.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable

from mangagate._challenge import is_challenge_response
from mangagate._cookies import extract_domain
from mangagate._credentials import Credential, CredentialStore
from mangagate._errors import (
    BypassExhausted,
    BypassFailed,
    ChallengeStillPresent,
    ClearanceNotObtained,
    ManualSolveCancelled,
    RenderTimeout,
)
from mangagate._gateway import SolverGateway
from mangagate._manual import ManualSolveCoordinator, parse_cookie_header
from mangagate._response import FetchResponse
from mangagate._retry import (
    MAX_RETRIES,
    RETRY_DELAYS,
    SOLVE_TIMEOUT_BASE_MS,
    SOLVE_TIMEOUT_STEP_MS,
    RetryLedger,
    request_key,
    retry_delay,
    solve_timeout_ms,
)

logger = logging.getLogger("mangagate")

CookieExtractor = Callable[[str], Awaitable[list[Credential]]]
Replay = Callable[[dict[str, str]], Awaitable[FetchResponse]]

DEFAULT_MANUAL_TIMEOUT = 300.0  # seconds
MAX_TRACKED_STATES = 1024


class BypassState(enum.Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    SOLVING = "solving"
    REPLAYING = "replaying"
    RESOLVED = "resolved"
    FAILED = "failed"


TERMINAL_STATES = (BypassState.RESOLVED, BypassState.FAILED)


def filter_domain_credentials(
    credentials: list[Credential], domain: str
) -> list[Credential]:
    """Keep credentials scoped to ``domain`` or a parent or subdomain of it.

    Renderer cookie stores return cookies for every domain the page
    touched (CDN, challenge iframes). Matching is per DNS label, so
    ``notexample.com`` never matches ``example.com``. Credentials with
    no domain always match.
    """
    if not domain:
        return list(credentials)
    bare = domain.removeprefix("www.")
    matched = []
    for c in credentials:
        cookie_domain = c.domain.lstrip(".")
        if (
            not cookie_domain
            or cookie_domain in (domain, bare)
            or cookie_domain.endswith("." + bare)
            or domain.endswith("." + cookie_domain)
        ):
            matched.append(c)
    return matched


class BypassOrchestrator:
    """Detects challenges, deduplicates solves, retries, and replays."""

    def __init__(
        self,
        gateway: SolverGateway,
        credentials: CredentialStore,
        extract_cookies: CookieExtractor,
        *,
        max_retries: int = MAX_RETRIES,
        timeout_base_ms: int = SOLVE_TIMEOUT_BASE_MS,
        timeout_step_ms: int = SOLVE_TIMEOUT_STEP_MS,
        retry_delays: tuple[float, ...] = RETRY_DELAYS,
        manual_solver: ManualSolveCoordinator | None = None,
        manual_timeout: float = DEFAULT_MANUAL_TIMEOUT,
        max_tracked_states: int = MAX_TRACKED_STATES,
    ):
        self._gateway = gateway
        self._credentials = credentials
        self._extract_cookies = extract_cookies
        self._ledger = RetryLedger(max_retries)
        self._timeout_base_ms = timeout_base_ms
        self._timeout_step_ms = timeout_step_ms
        self._retry_delays = retry_delays
        self._manual = manual_solver
        self._manual_timeout = manual_timeout
        self._states: dict[str, BypassState] = {}
        self._max_tracked_states = max_tracked_states

    @property
    def max_retries(self) -> int:
        return self._ledger.max_retries

    @property
    def ledger(self) -> RetryLedger:
        return self._ledger

    def state(self, method: str, url: str) -> BypassState:
        return self._states.get(request_key(method, url), BypassState.IDLE)

    def _set_state(self, key: str, state: BypassState) -> None:
        # Re-insert so dict order tracks last update.
        self._states.pop(key, None)
        self._states[key] = state
        excess = len(self._states) - self._max_tracked_states
        if excess > 0:
            stale = [
                k for k, s in self._states.items()
                if s in TERMINAL_STATES and k != key
            ]
            for k in stale[:excess]:
                del self._states[k]

    async def recover(
        self,
        method: str,
        url: str,
        response: FetchResponse,
        replay: Replay,
    ) -> FetchResponse:
        """Handle a failed response for ``method url``.

        Returns ``response`` unchanged when it is not a challenge,
        otherwise the replayed response after a successful solve.

        Raises:
            BypassExhausted: the key's attempt budget is used up.
            BypassFailed: the solve or the replay did not clear the
                challenge.
        """
        key = request_key(method, url)
        self._set_state(key, BypassState.DETECTING)
        if not is_challenge_response(
            response.status_code, response.text, response.headers
        ):
            self._states.pop(key, None)
            return response

        task = self._ledger.inflight(key)
        if task is None:
            if not self._ledger.can_retry(key):
                attempts = self._ledger.attempts(key)
                self._ledger.clear(key)
                self._set_state(key, BypassState.FAILED)
                logger.warning(
                    "Challenge retry limit reached for %s", key[:100]
                )
                raise BypassExhausted(attempts, url)
            self._ledger.use_attempt(key)
            logger.info("Starting challenge solve for %s", key[:100])
            task = asyncio.ensure_future(self._solve(url))
            self._ledger.start(key, task)
            task.add_done_callback(
                lambda t, k=key: self._ledger.finish(k, t)
            )
        else:
            logger.debug("Joining in-flight solve for %s", key[:100])

        self._set_state(key, BypassState.SOLVING)
        try:
            # shield: one cancelled caller must not abort the shared solve
            attempts = await asyncio.shield(task)
        except BypassFailed:
            self._set_state(key, BypassState.FAILED)
            raise

        # A solved key starts over with a fresh budget.
        self._ledger.reset(key)
        self._set_state(key, BypassState.REPLAYING)
        domain = extract_domain(url) or ""
        cookie_header = await self._credentials.get_cookie_header(domain)
        headers = {"Cookie": cookie_header} if cookie_header else {}
        logger.debug("Replaying %s with solved credentials", key[:100])
        replayed = await replay(headers)
        replayed.was_replayed = True

        if is_challenge_response(
            replayed.status_code, replayed.text, replayed.headers
        ):
            # The origin rejected the fresh session; don't reuse it.
            await self._credentials.invalidate(domain)
            self._set_state(key, BypassState.FAILED)
            raise BypassFailed(attempts, url, ChallengeStillPresent(url))

        self._set_state(key, BypassState.RESOLVED)
        return replayed

    async def _solve(self, url: str) -> int:
        """Bounded solve loop. Returns the number of attempts used."""
        domain = extract_domain(url) or ""
        clearance = self._credentials.clearance_cookie
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            timeout_ms = solve_timeout_ms(
                attempt, self._timeout_base_ms, self._timeout_step_ms
            )
            logger.info(
                "Solving challenge for %s (attempt %d/%d, timeout %dms)",
                domain,
                attempt,
                self.max_retries,
                timeout_ms,
            )
            try:
                await self._gateway.fetch_html(url, timeout_ms)
                cookies = await self._extract_cookies(url)
            except (ChallengeStillPresent, RenderTimeout) as e:
                logger.warning("Solve attempt %d failed: %s", attempt, e)
                last_error = e
            except Exception as e:
                # RendererUnavailable and transport failures are terminal.
                logger.warning("Solve for %s aborted: %s", url[:80], e)
                raise BypassFailed(attempt, url, e) from e
            else:
                credentials = filter_domain_credentials(cookies, domain)
                if any(c.name == clearance for c in credentials):
                    await self._credentials.set_credentials(
                        domain, credentials
                    )
                    logger.info("Solved challenge for %s", domain)
                    return attempt
                logger.warning(
                    "No %s cookie after attempt %d for %s",
                    clearance,
                    attempt,
                    domain,
                )
                last_error = ClearanceNotObtained(url, clearance)

            if attempt < self.max_retries:
                delay = retry_delay(attempt, self._retry_delays)
                logger.debug("Retrying solve in %.1fs", delay)
                await asyncio.sleep(delay)

        if isinstance(last_error, ClearanceNotObtained) and self._manual:
            return await self._solve_manually(url, domain)

        raise BypassFailed(self.max_retries, url, last_error) from last_error

    async def _solve_manually(self, url: str, domain: str) -> int:
        attempts = self.max_retries + 1
        try:
            header = await self._manual.request_manual_solve(
                url, timeout=self._manual_timeout
            )
        except (ManualSolveCancelled, asyncio.TimeoutError) as e:
            raise BypassFailed(attempts, url, e) from e

        clearance = self._credentials.clearance_cookie
        credentials = parse_cookie_header(header, domain)
        if not any(c.name == clearance for c in credentials):
            logger.warning(
                "Manual solve for %s returned no %s cookie", domain, clearance
            )
            error = ClearanceNotObtained(url, clearance)
            raise BypassFailed(attempts, url, error)
        await self._credentials.set_credentials(domain, credentials)
        logger.info("Manual solve stored credentials for %s", domain)
        return attempts
