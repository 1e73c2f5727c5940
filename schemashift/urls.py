"""Helpers for database and source URLs."""

from __future__ import annotations


def scheme_from_url(url: str) -> str:
    """Return the scheme of ``url``: everything before the first colon."""
    if url == "":
        raise ValueError("URL cannot be empty")
    index = url.find(":")
    if index < 1:
        raise ValueError("no scheme")
    return url[:index]