"""FetchResponse -- transport-independent response snapshot."""

import json
from typing import Any


class FetchResponse:
    """Fully-read response handed between client and orchestrator.

    - ``status_code``: int
    - ``headers``: dict[str, str] (lowercase keys)
    - ``text``: decoded body
    - ``url``: URL the response came from
    - ``set_cookies``: individual Set-Cookie header values
    - ``ok``: True if 200 <= status_code < 300
    """

    __slots__ = (
        "status_code",
        "headers",
        "text",
        "url",
        "set_cookies",
        "was_replayed",
        "elapsed",
    )

    def __init__(
        self,
        *,
        status_code: int,
        headers: dict[str, str],
        url: str,
        text: str = "",
        set_cookies: list[str] | None = None,
        was_replayed: bool = False,
        elapsed: float = 0.0,
    ):
        self.status_code = status_code
        self.headers = headers
        self.url = url
        self.text = text
        self.set_cookies = set_cookies or []
        self.was_replayed = was_replayed
        self.elapsed = elapsed

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self, **kwargs) -> Any:
        return json.loads(self.text, **kwargs)

    def raise_for_status(self) -> None:
        from mangagate._errors import HttpError

        if not self.ok:
            raise HttpError(self.status_code, self.url)

    def __repr__(self) -> str:
        return f"<FetchResponse [{self.status_code}]>"
