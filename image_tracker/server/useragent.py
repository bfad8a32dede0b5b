from __future__ import annotations

import re
from typing import Pattern, Sequence, Tuple

# Ordered (label, pattern) rules; the first match wins.
Rule = Tuple[str, Pattern[str]]

BROWSER_RULES: Sequence[Rule] = (
    ("Gmail Image Proxy", re.compile(r"googleimageproxy", re.I)),
    ("Yahoo Mail Proxy", re.compile(r"yahoomailproxy", re.I)),
    ("Edge", re.compile(r"edg(e|a|ios)?/", re.I)),
    ("Opera", re.compile(r"\bopr/|opera", re.I)),
    ("Samsung Internet", re.compile(r"samsungbrowser", re.I)),
    ("Chrome", re.compile(r"chrome/|crios/", re.I)),
    ("Firefox", re.compile(r"firefox/|fxios/", re.I)),
    ("Safari", re.compile(r"safari/", re.I)),
    ("Internet Explorer", re.compile(r"msie |trident/", re.I)),
    ("curl", re.compile(r"^curl/", re.I)),
)

OS_RULES: Sequence[Rule] = (
    ("Windows", re.compile(r"windows", re.I)),
    # iPadOS/iOS agents also carry "Mac OS X", so they go before macOS.
    ("iOS", re.compile(r"iphone|ipad|ipod", re.I)),
    ("Android", re.compile(r"android", re.I)),
    ("macOS", re.compile(r"mac os x|macintosh", re.I)),
    ("Chrome OS", re.compile(r"\bcros\b", re.I)),
    ("Linux", re.compile(r"linux|x11", re.I)),
)

UNKNOWN = "Unknown"


def first_match(rules: Sequence[Rule], value: str, default: str = UNKNOWN) -> str:
    for label, pattern in rules:
        if pattern.search(value):
            return label
    return default


def parse_user_agent(ua: str) -> Tuple[str, str]:
    """
    Coarse (browser, os) labels from a raw User-Agent header.
    """
    ua = (ua or "").strip()
    if not ua:
        return UNKNOWN, UNKNOWN
    return first_match(BROWSER_RULES, ua), first_match(OS_RULES, ua)
