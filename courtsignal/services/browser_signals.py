"""Browser attribution signals (Meta `_fbp` / `_fbc` cookies).

WHAT:
    Reads the Meta browser id (`_fbp`) and click id (`_fbc`) cookies from
    whatever cookie store the caller has: a mapping such as
    `request.cookies` or `httpx.Cookies`, or a raw `Cookie` header string.

WHY:
    Both cookies are forwarded with server-side events so Meta can match
    them to the pixel session. A missing store (non-browser context) must
    yield empty signals rather than an error.
"""

import logging
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import Any, Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

FBP_COOKIE = "_fbp"
FBC_COOKIE = "_fbc"

CookieSource = Union[Mapping[str, str], str, None]


@dataclass(frozen=True)
class AttributionCookies:
    """Meta attribution cookies; absent cookies are None."""
    fbp: Optional[str] = None
    fbc: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        """Only the present cookies, keyed as the relay expects."""
        return {k: v for k, v in (("fbp", self.fbp), ("fbc", self.fbc)) if v}


def _parse_cookie_header(header: str) -> Dict[str, str]:
    jar = SimpleCookie()
    try:
        jar.load(header)
    except CookieError:
        logger.debug("[PIXEL] Unparsable cookie header ignored")
        return {}
    return {name: morsel.value for name, morsel in jar.items()}


def read_attribution_cookies(cookies: CookieSource = None) -> AttributionCookies:
    """Read `_fbp` and `_fbc` without touching the cookie store.

    Args:
        cookies: Mapping of cookie name to value, a raw Cookie header, or None

    Returns:
        AttributionCookies with absent fields left as None
    """
    if not cookies:
        return AttributionCookies()

    if isinstance(cookies, str):
        cookies = _parse_cookie_header(cookies)

    return AttributionCookies(
        fbp=cookies.get(FBP_COOKIE) or None,
        fbc=cookies.get(FBC_COOKIE) or None,
    )
