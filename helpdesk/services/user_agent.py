"""
Best-effort user-agent classification.

Substring matching against a handful of well-known browser / OS tokens.
It is deliberately approximate: the result is only used for display
and soft anomaly signals, never for an authorization decision, and it
never raises; anything unrecognised degrades to "Unknown" / OTHER.

Token order matters: Edge and Opera both advertise "Chrome", and
Chrome advertises "Safari".
"""

import re
from typing import NamedTuple

from helpdesk.models.session import DeviceType

UNKNOWN = "Unknown"

_BROWSERS: list[tuple[str, str, re.Pattern[str]]] = [
    ("Edg/", "Edge", re.compile(r"Edg/(\d+)")),
    ("OPR/", "Opera", re.compile(r"OPR/(\d+)")),
    ("Opera", "Opera", re.compile(r"Opera/(\d+)")),
    ("Firefox", "Firefox", re.compile(r"Firefox/(\d+)")),
    ("Chrome", "Chrome", re.compile(r"Chrome/(\d+)")),
    ("Safari", "Safari", re.compile(r"Version/(\d+)")),
]


class DeviceInfo(NamedTuple):
    browser: str
    os: str
    device_type: DeviceType


def _browser(ua: str) -> str:
    for token, name, version in _BROWSERS:
        if token in ua:
            match = version.search(ua)
            return f"{name} {match.group(1)}" if match else name
    return UNKNOWN


def _os(ua: str) -> str:
    if "Windows NT 10" in ua:
        return "Windows 10/11"
    if "Windows NT 6.3" in ua:
        return "Windows 8.1"
    if "Windows NT 6.1" in ua:
        return "Windows 7"
    if "Windows" in ua:
        return "Windows"
    # iOS agents also say "like Mac OS X", so check them first
    if "iPhone" in ua or "iPad" in ua:
        match = re.search(r"OS (\d+)[._](\d+)", ua)
        return f"iOS {match.group(1)}.{match.group(2)}" if match else "iOS"
    if "Mac OS X" in ua:
        match = re.search(r"Mac OS X (\d+)[._](\d+)", ua)
        return f"macOS {match.group(1)}.{match.group(2)}" if match else "macOS"
    if "Android" in ua:
        match = re.search(r"Android (\d+(?:\.\d+)?)", ua)
        return f"Android {match.group(1)}" if match else "Android"
    if "CrOS" in ua:
        return "ChromeOS"
    if "Linux" in ua:
        return "Linux"
    return UNKNOWN


def _device_type(ua: str) -> DeviceType:
    if "iPad" in ua or "Tablet" in ua:
        return DeviceType.TABLET
    if "Android" in ua and "Mobile" not in ua:
        return DeviceType.TABLET
    if "Mobile" in ua or "iPhone" in ua or "Android" in ua:
        return DeviceType.MOBILE
    if any(token in ua for token in ("Windows", "Macintosh", "X11", "CrOS")):
        return DeviceType.DESKTOP
    return DeviceType.OTHER


def classify(user_agent: str | None) -> DeviceInfo:
    if not user_agent or not user_agent.strip():
        return DeviceInfo(UNKNOWN, UNKNOWN, DeviceType.OTHER)
    ua = user_agent[:512]
    return DeviceInfo(_browser(ua), _os(ua), _device_type(ua))
