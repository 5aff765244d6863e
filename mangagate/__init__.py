"""mangagate -- challenge-aware HTTP client for manga sites."""

import logging
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mangagate")
except PackageNotFoundError:
    __version__ = "0.0.0"

from mangagate._challenge import is_challenge_body, is_challenge_response
from mangagate._client import DEFAULT_HEADERS, RequestClient
from mangagate._context import MangaGate
from mangagate._cookies import CookieJar
from mangagate._credentials import Credential, CredentialStore, StoredSession
from mangagate._errors import (
    BypassExhausted,
    BypassFailed,
    ChallengeStillPresent,
    ClearanceNotObtained,
    ConnectionFailed,
    HttpError,
    InvalidInput,
    MangaGateError,
    ManualSolveCancelled,
    RendererUnavailable,
    RenderTimeout,
)
from mangagate._gateway import GatewayEvent, SolverGateway
from mangagate._manual import ManualSolveCoordinator, ManualSolveEvent
from mangagate._orchestrator import BypassOrchestrator, BypassState
from mangagate._response import FetchResponse
from mangagate._storage import JsonDirStorage, KeyValueStore, MemoryStorage

__all__ = [
    "__version__",
    "MangaGate",
    "RequestClient",
    "FetchResponse",
    "CookieJar",
    "Credential",
    "CredentialStore",
    "StoredSession",
    "SolverGateway",
    "GatewayEvent",
    "BypassOrchestrator",
    "BypassState",
    "ManualSolveCoordinator",
    "ManualSolveEvent",
    "KeyValueStore",
    "MemoryStorage",
    "JsonDirStorage",
    "is_challenge_response",
    "is_challenge_body",
    "MangaGateError",
    "InvalidInput",
    "RendererUnavailable",
    "RenderTimeout",
    "ChallengeStillPresent",
    "ClearanceNotObtained",
    "BypassExhausted",
    "BypassFailed",
    "ManualSolveCancelled",
    "HttpError",
    "ConnectionFailed",
    "DEFAULT_HEADERS",
]

# Silent by default; callers opt in via logging.getLogger("mangagate").setLevel(...)
logging.getLogger("mangagate").addHandler(logging.NullHandler())
