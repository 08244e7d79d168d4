"""Identifier helpers."""

import re
from uuid import uuid4

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def new_id(prefix: str) -> str:
    """Row id such as `evt_<hex>`; the prefix names the owning table."""
    return f"{prefix}_{uuid4().hex}"


def slug(text: str) -> str:
    """Lowercase, hyphen-separated form of free text, usable as a session id."""
    return _NON_SLUG.sub("-", text.lower()).strip("-")
