"""
auth/fingerprint.py -- Device fingerprinting from request headers.

The fingerprint is the session deduplication key. It is intentionally coarse:
only (platform, browser) participate, so a user's Chrome on Windows keeps one
session row across browser updates.

Precedence:
  1. Structured client hints (sec-ch-ua, sec-ch-ua-platform) when present and
     non-trivial.
  2. Substring rules over the user-agent, first match wins.

Unrecognized input yields "Unknown" for the field, never an error.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from auth.models import DeviceFingerprint

UNKNOWN = "Unknown"

# Ordered rule tables. Each pattern is a marker search, not a full UA grammar.
_BROWSER_RULES: list[tuple[str, re.Pattern]] = [
    ("Edge", re.compile(r"Edg/|Edge/|EdgA/|EdgiOS/|Microsoft Edge", re.I)),
    ("Chromium", re.compile(r"Chrome|Chromium|CriOS/", re.I)),
    ("Opera", re.compile(r"OPR/|Opera", re.I)),
    ("Brave", re.compile(r"Brave", re.I)),
    ("Firefox", re.compile(r"Firefox|FxiOS/", re.I)),
    ("Safari", re.compile(r"Safari", re.I)),
]

_PLATFORM_RULES: list[tuple[str, re.Pattern]] = [
    ("Windows", re.compile(r"Windows", re.I)),
    ("macOS", re.compile(r"Macintosh|macOS|(?<!like )Mac OS X", re.I)),
    ("Linux", re.compile(r"X11|Linux(?!;?\s*Android)", re.I)),
    ("Android", re.compile(r"Android", re.I)),
    ("iOS", re.compile(r"iPhone|iPad|iPod|\biOS\b", re.I)),
]

# Values browsers send when a hint is withheld or empty.
_TRIVIAL_HINTS = {"", '""', "''", "?0", "?1", "unknown"}

# GREASE brands ("Not A(Brand", "Not:A-Brand", ...) carry no information.
_GREASE = re.compile(r"not.?a.?brand", re.I)
_BRAND = re.compile(r"""["']([^"']+)["']""")


def _classify(text: str, rules: list[tuple[str, re.Pattern]]) -> str:
    for name, pattern in rules:
        if pattern.search(text):
            return name
    return UNKNOWN


def _is_trivial(value: str | None) -> bool:
    return value is None or value.strip().lower() in _TRIVIAL_HINTS


def browser_from_client_hint(sec_ch_ua: str) -> str:
    """Classify a sec-ch-ua brand list such as
    '"Chromium";v="134", "Not:A-Brand";v="24", "Opera GX";v="119"'.
    """
    brands = [b for b in _BRAND.findall(sec_ch_ua) if not _GREASE.search(b)]
    if not brands:
        # Unquoted form: 'Chromium;v=134, Google Chrome;v=134'
        brands = [part.split(";")[0].strip() for part in sec_ch_ua.split(",")]
        brands = [b for b in brands if b and not _GREASE.search(b)]
    return _classify(" ".join(brands), _BROWSER_RULES)


def platform_from_client_hint(sec_ch_ua_platform: str) -> str:
    """Normalize a sec-ch-ua-platform value such as '"macOS"'.

    Known platforms map onto the user-agent vocabulary; any other non-empty
    value (e.g. "Chrome OS") is kept as sent, minus quotes.
    """
    cleaned = sec_ch_ua_platform.replace('"', "").replace("'", "").strip()
    if not cleaned:
        return UNKNOWN
    known = _classify(cleaned, _PLATFORM_RULES)
    return known if known != UNKNOWN else cleaned


def browser_from_user_agent(user_agent: str) -> str:
    return _classify(user_agent, _BROWSER_RULES)


def platform_from_user_agent(user_agent: str) -> str:
    return _classify(user_agent, _PLATFORM_RULES)


def fingerprint_from_headers(headers: Mapping[str, str]) -> DeviceFingerprint:
    """Derive the normalized device fingerprint for a request.

    headers may be a Starlette Headers object or any case-insensitive mapping;
    a plain dict must use lowercase keys.
    """
    user_agent = headers.get("user-agent") or ""
    hint_browser = headers.get("sec-ch-ua")
    hint_platform = headers.get("sec-ch-ua-platform")

    browser = UNKNOWN
    if not _is_trivial(hint_browser):
        browser = browser_from_client_hint(hint_browser)
    if browser == UNKNOWN:
        browser = browser_from_user_agent(user_agent)

    platform = UNKNOWN
    if not _is_trivial(hint_platform):
        platform = platform_from_client_hint(hint_platform)
    if platform == UNKNOWN:
        platform = platform_from_user_agent(user_agent)

    return DeviceFingerprint(platform=platform, browser=browser, user_agent=user_agent)
