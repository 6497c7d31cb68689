"""
auth/slugs.py -- Human-readable, URL-safe account handles.

A slug is derived from "first-last", lower-cased, with everything outside
[a-z0-9-] removed. Uniqueness is resolved by numeric suffixes:
jane-doe, jane-doe-1, jane-doe-2, ...

The store calls candidates() and relies on its UNIQUE(slug) constraint for
the final word, so two concurrent inserts of the same name cannot both win.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterator

_INVALID = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")


def slugify(first_name: str, last_name: str) -> str:
    """Return the base slug for a name, or "user" when nothing usable is left."""
    text = unicodedata.normalize("NFKD", f"{first_name} {last_name}")
    text = text.encode("ascii", "ignore").decode("ascii").lower()
    text = _INVALID.sub("", text)
    text = _WHITESPACE.sub("-", text.strip())
    text = _DASHES.sub("-", text).strip("-")
    return text or "user"


def candidates(base: str) -> Iterator[str]:
    """Yield base, base-1, base-2, ... forever."""
    yield base
    counter = 1
    while True:
        yield f"{base}-{counter}"
        counter += 1
