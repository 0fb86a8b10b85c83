from datetime import datetime
from typing import Optional
from uuid import UUID
import re

from pydantic import BaseModel, Field, field_validator


SLUG_REGEX = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


class BusinessCreate(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    slug: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Optional: lowercase letters, digits and dashes. Derived from the name when omitted.",
    )
    organization_id: Optional[UUID] = Field(
        default=None,
        description="Optional: add the business to an organization you already own a business in.",
    )

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None

        v = v.strip().lower()

        if not SLUG_REGEX.match(v):
            raise ValueError("Slug may only contain lowercase letters, digits and single dashes")

        return v


class BusinessOut(BaseModel):
    id: UUID
    organization_id: UUID
    name: str
    slug: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}
