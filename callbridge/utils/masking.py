"""Helpers for keeping phone numbers and call ids out of logs in clear text."""

import re
from typing import Optional

_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Replace every digit but the last four with '*'."""
    if not phone:
        return phone
    s = str(phone)
    if len(s) <= 4:
        return s
    return "*" * (len(s) - 4) + s[-4:]


def mask_ucid(ucid: Optional[str]) -> Optional[str]:
    if not ucid:
        return ucid
    s = str(ucid)
    return f"{s[:4]}...{s[-4:]}"


def safe_trunc(value, limit: int = 500) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return str(value)[:limit]


def safe_name(value: Optional[str]) -> str:
    """Filesystem-safe form of an archive recording id."""
    return _SAFE_NAME_RE.sub("_", str(value or ""))[:128]
