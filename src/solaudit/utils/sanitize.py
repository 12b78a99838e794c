"""Error message sanitization to prevent credential leakage."""

from __future__ import annotations

import os
import re

# Ordered: the specific key formats run before the generic sk- rule
_REDACTIONS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"sk-or-v1-[a-zA-Z0-9_-]+"), "[REDACTED_KEY]"),
    (re.compile(r"sk-ant-[a-zA-Z0-9_-]+"), "[REDACTED_KEY]"),
    (re.compile(r"sk-[a-zA-Z0-9_-]{20,}"), "[REDACTED_KEY]"),
    (re.compile(r"Bearer\s+\S+"), "Bearer [REDACTED]"),
    (re.compile(r"(x-)?api-key:\s*\S+", re.IGNORECASE), r"\1api-key: [REDACTED]"),
    (re.compile(r"Authorization:\s*\S+", re.IGNORECASE), "Authorization: [REDACTED]"),
    # Wallet private keys pasted into config or env dumps
    (re.compile(r"\b(0x)?[0-9a-fA-F]{64}\b"), "[REDACTED_PRIVATE_KEY]"),
    # Project ids embedded in RPC endpoints (Infura /v3/<id>, Alchemy /v2/<key>)
    (re.compile(r"(https?://[^\s/]+/v[23]/)[a-zA-Z0-9_-]{16,}"), r"\1[REDACTED]"),
)


def sanitize_error(message: str) -> str:
    """Sanitize error messages to prevent API key, wallet key and path leakage."""
    if not message:
        return message

    sanitized = message
    for pattern, replacement in _REDACTIONS:
        sanitized = pattern.sub(replacement, sanitized)

    home = os.environ.get("USERPROFILE") or os.environ.get("HOME") or ""
    if home and home != "/":
        sanitized = sanitized.replace(home, "[USER_HOME]")

    return sanitized
