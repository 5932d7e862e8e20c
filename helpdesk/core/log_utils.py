"""
Helpers for putting attacker-controlled strings into log lines.

Login identifiers, user agents and addresses all come straight from
the request, so they are scrubbed of anything that could forge a new
log entry before they are formatted.
"""

import re

_UNSAFE = re.compile(r"[\n\r\[\]<>\x00-\x1f\x7f-\x9f]")


def sanitize(value: str | None, max_length: int = 255) -> str:
    if not value:
        return "unknown"
    return _UNSAFE.sub("", str(value).strip())[:max_length]


def mask_email(email: str | None) -> str:
    """`jane.doe@example.com` → `jan***@example.com`."""
    if not email or "@" not in email:
        return sanitize(email)
    local, domain = email.rsplit("@", 1)
    masked = local[:3] + "***" if len(local) > 3 else (local[:1] or "") + "***"
    return f"{sanitize(masked)}@{sanitize(domain)}"
