"""Provider checkout references that embed the local order id."""

from __future__ import annotations

import re
import secrets
import string
import time

_REFERENCE_PATTERN = re.compile(r"^ORDER-(\d+)(?:-|$)")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
RETRY_SUFFIX = "retry"


def build_checkout_reference(order_id: int) -> str:
    """``ORDER-{id}-{epoch_ms}-{rand6}``, unique per creation attempt."""

    random_part = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORDER-{order_id}-{int(time.time() * 1000)}-{random_part}"


def retry_reference(reference: str) -> str:
    return f"{reference}-{RETRY_SUFFIX}"


def parse_order_reference(reference: str | None) -> int | None:
    if not reference:
        return None
    match = _REFERENCE_PATTERN.match(reference)
    return int(match.group(1)) if match else None


__all__ = [
    "RETRY_SUFFIX",
    "build_checkout_reference",
    "parse_order_reference",
    "retry_reference",
]
