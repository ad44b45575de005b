"""Unit tests for auth/fingerprint.py -- device fingerprint normalization.

Covers:
- User-agent rules for the common browser/platform pairs
- Rule order: Edge before Chromium, Android and iOS not mistaken for Linux/macOS
- Client hints win over the user-agent when present and non-trivial
- GREASE brands and trivial hint values are ignored
- Unrecognized input degrades to "Unknown", never an error
"""

import pytest

from auth.fingerprint import (
    UNKNOWN,
    browser_from_client_hint,
    fingerprint_from_headers,
    platform_from_client_hint,
)
from tests.factories import CHROME_WINDOWS, FIREFOX_LINUX, SAFARI_IPHONE

EDGE_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.2478.51"
)
SAFARI_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15"
)
CHROME_ANDROID = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36"
)
FIREFOX_IOS = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) FxiOS/125.0 Mobile/15E148 Safari/605.1.15"
)


@pytest.mark.parametrize(
    ("user_agent", "platform", "browser"),
    [
        (CHROME_WINDOWS, "Windows", "Chromium"),
        (EDGE_WINDOWS, "Windows", "Edge"),
        (FIREFOX_LINUX, "Linux", "Firefox"),
        (SAFARI_MAC, "macOS", "Safari"),
        (SAFARI_IPHONE, "iOS", "Safari"),
        (CHROME_ANDROID, "Android", "Chromium"),
        (FIREFOX_IOS, "iOS", "Firefox"),
    ],
)
def test_user_agent_classification(user_agent, platform, browser):
    fp = fingerprint_from_headers({"user-agent": user_agent})
    assert (fp.platform, fp.browser) == (platform, browser)
    assert fp.user_agent == user_agent


class TestClientHints:
    def test_hints_take_precedence(self):
        headers = {
            "user-agent": FIREFOX_LINUX,
            "sec-ch-ua": '"Chromium";v="124", "Microsoft Edge";v="124", "Not-A.Brand";v="99"',
            "sec-ch-ua-platform": '"Windows"',
        }
        fp = fingerprint_from_headers(headers)
        assert fp.platform == "Windows"
        assert fp.browser == "Edge"

    def test_grease_brand_alone_falls_back_to_user_agent(self):
        headers = {"user-agent": CHROME_WINDOWS, "sec-ch-ua": '"Not A(Brand";v="99"'}
        assert fingerprint_from_headers(headers).browser == "Chromium"

    def test_trivial_platform_hint_falls_back_to_user_agent(self):
        headers = {"user-agent": SAFARI_MAC, "sec-ch-ua-platform": '""'}
        assert fingerprint_from_headers(headers).platform == "macOS"

    def test_unknown_platform_hint_is_kept_verbatim(self):
        assert platform_from_client_hint('"Chrome OS"') == "Chrome OS"

    def test_unquoted_brand_list(self):
        assert browser_from_client_hint("Chromium;v=134, Google Chrome;v=134") == "Chromium"


class TestUnknownInput:
    def test_empty_headers(self):
        fp = fingerprint_from_headers({})
        assert fp.platform == UNKNOWN
        assert fp.browser == UNKNOWN
        assert fp.key == "Unknown|Unknown"

    def test_unrecognized_user_agent(self):
        fp = fingerprint_from_headers({"user-agent": "curl/8.5.0"})
        assert (fp.platform, fp.browser) == (UNKNOWN, UNKNOWN)


def test_key_ignores_browser_version():
    """Two Chrome versions on the same OS share one dedup key."""
    older = CHROME_WINDOWS.replace("Chrome/124", "Chrome/119")
    assert fingerprint_from_headers({"user-agent": older}).key == fingerprint_from_headers(
        {"user-agent": CHROME_WINDOWS}
    ).key
