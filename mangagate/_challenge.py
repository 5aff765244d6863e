"""Challenge detection for anti-bot interstitial pages.

Pure logic, no I/O. Two entry points:

1. ``is_challenge_response`` -- strict: needs a 403/503 status AND a
   marker in the body or headers. Ordinary 403/503 pages (auth walls,
   maintenance) must not trigger a solve.
2. ``is_challenge_body`` -- loose: body markers only, for content that
   came back through the renderer where no status code is available.

The marker list is redundant on purpose: several independent phrases and
script names, so one upstream change does not blind detection.
"""

import logging

logger = logging.getLogger("mangagate")

CHALLENGE_STATUSES = frozenset({403, 503})

# Matched case-insensitively against the lowercased body.
BODY_MARKERS = (
    "cf-browser-verification",
    "challenge-running",
    "__cf_chl_jschl_tk__",
    "cf_chl_opt",
    "_cf_chl_ctx",
    "challenge-form",
    "<title>just a moment",
    "just a moment...",
    "checking your browser",
)

TITLE_MARKERS = (
    "just a moment",
    "attention required",
)


def _lower_headers(headers: dict[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {k.lower(): v for k, v in headers.items()}


def _match_body(body: str) -> str | None:
    lower = body.lower()
    for marker in BODY_MARKERS:
        if marker in lower:
            return marker
    return None


def _match_headers(headers: dict[str, str]) -> str | None:
    if headers.get("cf-mitigated", "").lower() == "challenge":
        return "cf-mitigated"
    title = headers.get("title", "").lower()
    for marker in TITLE_MARKERS:
        if marker in title:
            return marker
    return None


def is_challenge_response(
    status_code: int,
    body: str | None,
    headers: dict[str, str] | None = None,
) -> bool:
    """Classify an HTTP response as an anti-bot challenge.

    Args:
        status_code: HTTP status code.
        body: Decoded response body, or None for binary/unread bodies.
        headers: Response headers, any key case.

    Returns:
        True only for 403/503 responses carrying a known marker.
    """
    if status_code not in CHALLENGE_STATUSES:
        return False

    marker = _match_headers(_lower_headers(headers))
    if marker is None and body:
        marker = _match_body(body)
    if marker is None:
        return False

    logger.info(
        "Challenge detected (HTTP %d, marker %r)", status_code, marker
    )
    return True


def is_challenge_body(body: str | None) -> bool:
    """Check rendered HTML for challenge markers, ignoring status."""
    if not body:
        return False
    marker = _match_body(body)
    if marker is None:
        return False
    logger.info("Challenge detected in rendered body (marker %r)", marker)
    return True
