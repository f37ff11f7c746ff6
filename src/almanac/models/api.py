from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from almanac.slugs import normalise_slug


class CacheActionRequest(BaseModel):
    """Body of ``POST /api/admin/cache``.

    ``slug`` is normalised the same way as on the read path, so
    ``"Sleep Training"`` addresses the ``sleep-training`` page.
    """

    action: Literal["invalidate", "warm", "regenerate", "cleanup"]
    slug: str | None = Field(default=None, max_length=200)
    all: bool = False
    topics: list[str] | None = None
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    wait: bool = False  # warm: block until the run finishes and return its summary

    @field_validator("slug", mode="before")
    @classmethod
    def _normalise_slug(cls, v: object) -> object:
        if not isinstance(v, str):
            return v
        return normalise_slug(v)

    @model_validator(mode="after")
    def _required_fields(self) -> CacheActionRequest:
        if self.action == "invalidate" and not (self.slug or self.all):
            raise ValueError("invalidate requires 'slug' or 'all': true")
        if self.action == "regenerate" and not self.slug:
            raise ValueError("regenerate requires 'slug'")
        return self
