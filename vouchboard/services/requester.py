"""Requester identity for rate limiting.

Raw client addresses are never stored: the identity is a SHA-256 digest of the
first usable IP in the forwarding headers, or a long-lived opaque client token.
"""

import hashlib
import re
from typing import Mapping

# Checked in order; the first header yielding a valid address wins.
CLIENT_IP_HEADERS = (
    "x-vercel-forwarded-for",
    "cf-connecting-ip",
    "x-real-ip",
    "x-forwarded-for",
)

_IPV4_OCTET = r"(25[0-5]|2[0-4]\d|1?\d?\d)"
_IPV4_WITH_PORT = re.compile(
    rf"^({_IPV4_OCTET}(?:\.{_IPV4_OCTET}){{3}})(?::\d{{1,5}})?$", re.IGNORECASE
)
_BRACKETED = re.compile(r"^\[([^\[\]]+)\](?::\d{1,5})?$")
_IPV6 = re.compile(r"^[0-9a-f:]+$", re.IGNORECASE)


def _normalize_candidate_ip(raw: str) -> str | None:
    trimmed = raw.strip().lower()
    if not trimmed or trimmed == "unknown":
        return None

    candidate = trimmed.split(",")[0].strip()
    if not candidate:
        return None

    bracketed = _BRACKETED.match(candidate)
    if bracketed:
        candidate = bracketed.group(1)

    ipv4 = _IPV4_WITH_PORT.match(candidate)
    if ipv4:
        return ipv4.group(1)

    # Drop an IPv6 zone index (fe80::1%eth0).
    candidate = re.sub(r"%.+$", "", candidate)
    if ":" in candidate and _IPV6.match(candidate):
        return candidate

    return None


def get_client_ip(headers: Mapping[str, str]) -> str | None:
    """Extract the client IP from forwarding headers (keys compared case-insensitively)."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in CLIENT_IP_HEADERS:
        value = lowered.get(name)
        if not value:
            continue
        normalized = _normalize_candidate_ip(value)
        if normalized:
            return normalized
    return None


def create_requester_identity(headers: Mapping[str, str], fallback_client_id: str) -> str:
    """Return ``ip:<sha256>`` when an address is available, else ``cookie:<client id>``."""
    ip = get_client_ip(headers)
    if ip:
        digest = hashlib.sha256(ip.encode()).hexdigest()
        return f"ip:{digest}"
    return f"cookie:{fallback_client_id}"
