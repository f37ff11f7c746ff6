"""Conversion between user queries, URL-safe slugs and readable titles."""

from __future__ import annotations

import re

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHEN_RUNS = re.compile(r"-+")
_VALID_SLUG = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


def slugify(text: str) -> str:
    """Normalise free text into a slug: ``"Sleep Training?"`` → ``"sleep-training"``.

    Idempotent: ``slugify(slugify(x)) == slugify(x)``.
    """
    cleaned = _NON_SLUG_CHARS.sub("", text.lower().replace("_", " "))
    cleaned = _WHITESPACE.sub(" ", cleaned).strip().replace(" ", "-")
    return _HYPHEN_RUNS.sub("-", cleaned).strip("-")


def query_to_slug(query: str) -> str:
    # Path traversal fragments never survive into a slug.
    return slugify(query.replace("..", ""))


def slug_to_query(slug: str) -> str:
    return slug.replace("-", " ").strip()


def slug_to_title(slug: str) -> str:
    return " ".join(word.capitalize() for word in slug.split("-") if word)


def is_valid_slug(slug: str) -> bool:
    return bool(slug) and len(slug) <= 200 and bool(_VALID_SLUG.match(slug))


def normalise_slug(value: str) -> str:
    """Turn a slug or free-text topic into a valid slug, or raise ``ValueError``."""
    if not value.strip():
        raise ValueError("slug must not be empty")
    normalised = query_to_slug(value)
    if not is_valid_slug(normalised):
        raise ValueError(f"Invalid slug: {value!r}")
    return normalised
