"""Utility helpers for the shelfhome service."""

from __future__ import annotations

import hashlib
import re
import time
import unicodedata


def slugify(value: str) -> str:
    """Return a URL-friendly slug, or an empty string when nothing survives."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def normalize_title(title: str | None) -> str:
    """Return a comparison key used to spot the same title across sources."""

    if not title:
        return ""
    slug = slugify(title)
    if slug:
        return slug
    # Titles without any ASCII letters (CJK, for example) compare casefolded.
    return " ".join(title.casefold().split())


def cover_cache_key(cover_url: str) -> str:
    """Return the file name under which a cover URL is cached."""

    return hashlib.md5(cover_url.encode("utf-8")).hexdigest()


def now_millis() -> int:
    return int(time.time() * 1000)
