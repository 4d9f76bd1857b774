"""Protocol codes customers use to track their requests."""

from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timezone
from typing import Optional

RETURN_PREFIX = "RET"
REFUND_PREFIX = "RB"
_ALPHABET = string.ascii_uppercase + string.digits

RETURN_PATTERN = re.compile(r"^RET-[A-Z0-9]{8}$")
REFUND_PATTERN = re.compile(r"^RB-\d{4}-\d{6}$")


def return_protocol() -> str:
    return f"{RETURN_PREFIX}-" + "".join(secrets.choice(_ALPHABET) for _ in range(8))


def refund_protocol(now: Optional[datetime] = None) -> str:
    year = (now or datetime.now(timezone.utc)).year
    return f"{REFUND_PREFIX}-{year}-{secrets.randbelow(1_000_000):06d}"


def generate_protocol(request_type: str, now: Optional[datetime] = None) -> str:
    if request_type == "refund":
        return refund_protocol(now)
    return return_protocol()


def is_valid_protocol(code: str) -> bool:
    return bool(RETURN_PATTERN.match(code) or REFUND_PATTERN.match(code))
