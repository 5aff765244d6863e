"""Cloudflare challenge wait for the browser renderer."""

import asyncio
import logging
import time

from mangagate._challenge import is_challenge_body

logger = logging.getLogger("mangagate")


async def wait_for_cloudflare(
    page, timeout_ms: int, clearance_cookie: str = "cf_clearance"
) -> bool:
    """Wait for a Cloudflare challenge on ``page`` to resolve.

    Handles managed challenges (auto-solve) and interactive Turnstile
    (click the checkbox inside the challenges.cloudflare.com iframe).
    The clearance cookie is the definitive solve signal; the Turnstile
    body is clicked on every pass since the first click may not register.

    Returns False early when, after a 3s grace period, no challenge iframe
    appeared and the page no longer shows challenge markers: the origin
    let the browser straight through.
    """
    deadline = time.monotonic() + timeout_ms / 1000
    grace_deadline = time.monotonic() + 3.0
    iframe_seen = False

    while time.monotonic() < deadline:
        cookies = await page.context.cookies()
        if any(c["name"] == clearance_cookie for c in cookies):
            return True

        try:
            for frame in page.frames:
                if "challenges.cloudflare.com" in frame.url:
                    iframe_seen = True
                    await frame.locator("body").click(timeout=2000)
                    logger.debug("Clicked Cloudflare Turnstile")
                    break
        except Exception:
            logger.debug("Turnstile click failed", exc_info=True)

        if not iframe_seen and time.monotonic() > grace_deadline:
            try:
                html = await page.content()
            except Exception:
                html = ""
            if not is_challenge_body(html):
                logger.info(
                    "No Cloudflare challenge after 3s, "
                    "browser likely passed through"
                )
                return False

        await asyncio.sleep(1.0)

    return False
