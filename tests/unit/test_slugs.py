"""Unit tests for slug conversion helpers."""

from __future__ import annotations

import pytest

from almanac.slugs import (
    is_valid_slug,
    normalise_slug,
    query_to_slug,
    slug_to_query,
    slug_to_title,
    slugify,
)


class TestSlugify:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Sleep Training", "sleep-training"),
            ("  Sleep   Training?  ", "sleep-training"),
            ("sleep_training", "sleep-training"),
            ("Baby's first-year milestones!", "babys-first-year-milestones"),
            ("a -- b", "a-b"),
            ("---", ""),
        ],
    )
    def test_normalises(self, text: str, expected: str) -> None:
        assert slugify(text) == expected

    def test_idempotent(self) -> None:
        once = slugify("Teething & Sore Gums")
        assert slugify(once) == once


class TestQueryConversion:
    def test_query_to_slug_drops_traversal(self) -> None:
        assert query_to_slug("../../etc/passwd") == "etcpasswd"

    def test_slug_to_query(self) -> None:
        assert slug_to_query("sleep-training") == "sleep training"

    def test_slug_to_title(self) -> None:
        assert slug_to_title("baby-development-milestones") == "Baby Development Milestones"


class TestIsValidSlug:
    @pytest.mark.parametrize("slug", ["teething", "sleep-training", "week-40"])
    def test_valid(self, slug: str) -> None:
        assert is_valid_slug(slug)

    @pytest.mark.parametrize("slug", ["", "Sleep", "-lead", "trail-", "double--dash", "a" * 201])
    def test_invalid(self, slug: str) -> None:
        assert not is_valid_slug(slug)


class TestNormaliseSlug:
    def test_free_text_becomes_slug(self) -> None:
        assert normalise_slug("Sleep Training") == "sleep-training"

    @pytest.mark.parametrize("value", ["", "   ", "!!!", "a" * 201])
    def test_rejects_unusable_input(self, value: str) -> None:
        with pytest.raises(ValueError):
            normalise_slug(value)
