"""Trustdown parser: VOUCHED.td text to normalized trust entries.

Format, one record per line:

    # comment
    @alice                  vouch for github:alice
    gitlab:bob  reviewer    vouch with a free-text detail
    - mallory spam bot      denounce with a detail

Later lines override earlier ones for the same ``platform:username``. Lines that
cannot yield a handle are dropped; parsing never fails.
"""

import re
from typing import Iterable

from vouchboard.schemas import TrustEntry

DEFAULT_PLATFORM = "github"

_LINE_SPLIT = re.compile(r"\r?\n")
_RECORD = re.compile(r"^(\S+)(?:\s+(.+))?$")


def _parse_line(raw_line: str) -> TrustEntry | None:
    line = raw_line.strip()
    if not line or line.startswith("#"):
        return None

    is_denounce = line.startswith("-")
    remainder = line[1:].strip() if is_denounce else line
    if not remainder:
        return None

    match = _RECORD.match(remainder)
    if match is None:
        return None

    handle_part = match.group(1)
    details = (match.group(2) or "").strip() or None

    if ":" in handle_part:
        platform_raw, username_raw = handle_part.split(":", 1)
    else:
        platform_raw, username_raw = DEFAULT_PLATFORM, handle_part

    platform = platform_raw.strip().lower()
    username = username_raw.strip().lstrip("@").lower()
    if not platform or not username:
        return None

    return TrustEntry(
        platform=platform,
        username=username,
        type="denounce" if is_denounce else "vouch",
        details=details,
    )


def parse_trustdown(text: str) -> list[TrustEntry]:
    """Parse Trustdown text into entries sorted by handle, last occurrence winning."""
    records: dict[str, TrustEntry] = {}
    for raw_line in _LINE_SPLIT.split(text):
        entry = _parse_line(raw_line)
        if entry is not None:
            records[entry.handle] = entry
    return [records[handle] for handle in sorted(records)]


def render_trustdown(entries: Iterable[TrustEntry]) -> str:
    """Render entries back to Trustdown text (one line each, in the given order)."""
    lines = []
    for entry in entries:
        prefix = "- " if entry.type == "denounce" else ""
        line = f"{prefix}{entry.handle}"
        if entry.details:
            line = f"{line} {entry.details}"
        lines.append(line)
    return "\n".join(lines) + ("\n" if lines else "")
