# backend/passkey_gate/core/log_utils.py
"""Helpers for logging user-controlled values without log injection.

Usernames, device names, user agents and raw credential fields all come from
the client. Anything that ends up in a log line goes through
`sanitize_for_log` first.

This does NOT protect against format-string injection.
Always use: logger.info("%s", user_input) NOT logger.info(user_input)
"""

from __future__ import annotations

import re
from typing import Any

# CSI, OSC and single-character ESC sequences
_ANSI_RE = re.compile(
    r"""
    \x1B
    (?:
        [@-Z\\-_]
      | \[ [0-?]* [ -/]* [@-~]
      | \] (?: [^\x07\x1B]* (?:\x07|\x1B\\))
    )
    """,
    re.VERBOSE,
)

# Control characters other than \t \n \r, which are escaped separately
_UNSAFE_CTRL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")

# Bidirectional overrides ("Trojan Source") and zero-width characters
_BIDI_RE = re.compile(r"[\u202A-\u202E\u2066-\u2069\u200E\u200F]")
_INVISIBLE_RE = re.compile(r"[\u200B-\u200D\u2060\u00AD]")

_TRUNCATED_SUFFIX = "...[truncated]"


def sanitize_for_log(value: Any, max_length: int | None = 256) -> str:
    """Return `value` as a single-line string that is safe to log.

    Args:
        value: Any value; converted with str(), falling back to repr().
        max_length: Output is cut to this length (None for no limit).

    Examples:
        >>> sanitize_for_log("alice\\nFAKE ENTRY")
        'alice\\\\nFAKE ENTRY'
        >>> sanitize_for_log(None)
        '<None>'
    """
    if value is None:
        return "<None>"

    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).decode("utf-8", errors="backslashreplace")
    else:
        try:
            text = str(value)
        except Exception:
            text = f"<unprintable {type(value).__name__}>"

    text = _ANSI_RE.sub("", text)
    text = (
        text.replace("\\", "\\\\")
        .replace("\r", "\\r")
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )
    text = _UNSAFE_CTRL_RE.sub("", text)
    text = _BIDI_RE.sub("", text)
    text = _INVISIBLE_RE.sub("", text)

    if max_length is not None and len(text) > max_length:
        keep = max(0, max_length - len(_TRUNCATED_SUFFIX))
        text = text[:keep] + _TRUNCATED_SUFFIX

    return text


def short_id(value: str | bytes | None, length: int = 12) -> str:
    """Shorten a credential id or token for log correlation."""
    if not value:
        return "<none>"
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).hex()
    return sanitize_for_log(value[:length], max_length=length)
