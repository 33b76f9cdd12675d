"""Mapping between legacy integer business ids and UUID-shaped keys."""

import re
from typing import Union

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


def integer_to_uuid(value: Union[int, str]) -> str:
    """Map an integer id to a UUID-shaped string; UUIDs pass through.

    The integer is written as lower-case hex, left-padded to 32 digits and
    split 8-4-4-4-12, so distinct integers never collide.

    Raises:
        ValueError: For negative numbers or strings that are neither a UUID
            nor a decimal integer
    """
    if isinstance(value, str):
        text = value.strip()
        if UUID_RE.match(text):
            return text.lower()
        if not text.isdigit():
            raise ValueError(f"Cannot map business id {value!r} to a UUID")
        value = int(text)

    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"Cannot map business id {value!r} to a UUID")

    digits = format(value, 'x').zfill(32)
    if len(digits) > 32:
        raise ValueError(f"Business id {value} does not fit in 128 bits")
    return f"{digits[:8]}-{digits[8:12]}-{digits[12:16]}-{digits[16:20]}-{digits[20:]}"


def uuid_to_integer(value: str) -> int:
    """Reverse ``integer_to_uuid``."""
    if not UUID_RE.match(value or ''):
        raise ValueError(f"Not a UUID: {value!r}")
    return int(value.replace('-', ''), 16)
