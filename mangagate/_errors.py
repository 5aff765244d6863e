"""Typed exceptions for mangagate."""


class MangaGateError(Exception):
    """Base exception for all mangagate errors."""


class InvalidInput(MangaGateError, ValueError):
    """Bad call-site arguments. Never retried."""


class RendererUnavailable(MangaGateError):
    """No interactive renderer attached before the request timed out."""

    def __init__(self, url: str, timeout_ms: int):
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(
            f"No renderer attached within {timeout_ms}ms for {url}"
        )


class RenderTimeout(MangaGateError, TimeoutError):
    """An attached renderer did not finish within its timeout."""

    def __init__(self, url: str, timeout_ms: int):
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Render of {url} exceeded {timeout_ms}ms timeout"
        )


class ChallengeStillPresent(MangaGateError):
    """The interactively rendered page still shows the challenge."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Challenge still present after render of {url}")


class ClearanceNotObtained(MangaGateError):
    """Solve ran but no clearance credential was produced."""

    def __init__(self, url: str, cookie_name: str = "cf_clearance"):
        self.url = url
        self.cookie_name = cookie_name
        super().__init__(f"No {cookie_name} cookie obtained for {url}")


class ManualSolveCancelled(MangaGateError):
    """The user dismissed the manual solve."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Manual challenge solve cancelled for {url}")


class BypassExhausted(MangaGateError):
    """Retry budget for a request key is used up."""

    def __init__(self, attempts: int, url: str):
        self.attempts = attempts
        self.url = url
        super().__init__(
            f"Challenge bypass retry limit ({attempts}) exceeded for {url}"
        )


class BypassFailed(MangaGateError):
    """Challenge bypass gave up. ``cause`` holds the last error."""

    def __init__(self, attempts: int, url: str, cause: BaseException):
        self.attempts = attempts
        self.url = url
        self.cause = cause
        super().__init__(
            f"Failed to bypass challenge at {url} after "
            f"{attempts} attempt(s): {cause}"
        )


class HttpError(MangaGateError):
    """Non-2xx response that was not (or could not be) recovered."""

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} at {url}")


class ConnectionFailed(MangaGateError):
    """Failed to establish a connection or read the response."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Connection failed to {url}: {reason}")
