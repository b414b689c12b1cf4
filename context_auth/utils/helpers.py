"""
Small shared helpers: encoding, time, client address
"""
import base64
import time
from typing import Optional

from fastapi import Request


# -------- Base64 utilities --------
def b64u(data: bytes) -> str:
    """Base64url encode bytes to string."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

def b64u_dec(s: str) -> bytes:
    """Base64url decode string to bytes."""
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode())

# -------- Time utilities --------
def now() -> int:
    """Get current timestamp."""
    return int(time.time())

_UNITS = (
    ("year", 365 * 24 * 3600),
    ("month", 30 * 24 * 3600),
    ("week", 7 * 24 * 3600),
    ("day", 24 * 3600),
    ("hour", 3600),
    ("minute", 60),
)

def format_created_at(ts: int, reference: Optional[int] = None) -> str:
    """Human readable age of a timestamp, e.g. '5 minutes ago'."""
    delta = max(0, (reference if reference is not None else now()) - int(ts))
    for unit, seconds in _UNITS:
        count = delta // seconds
        if count >= 1:
            return f"{count} {unit}{'s' if count > 1 else ''} ago"
    return "just now"

# -------- Request utilities --------
def client_address(req: Request) -> Optional[str]:
    """Client IP honouring the reverse proxy headers."""
    forwarded = req.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if req.headers.get("x-real-ip"):
        return req.headers.get("x-real-ip").strip()
    return req.client.host if req.client else None
