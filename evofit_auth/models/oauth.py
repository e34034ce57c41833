"""External identity provider models."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ExternalProfile(BaseModel):
    """A provider profile, validated once at the OAuth boundary.

    Attributes:
        id: Provider subject id (e.g. Google ``sub``)
        email: Verified email address, if the provider returned one
        display_name: Provider display name
        photo_url: Avatar URL
    """

    id: str = Field(..., min_length=1)
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None

    @field_validator("email", "display_name", "photo_url")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty strings from the provider as missing."""
        if v is None:
            return None
        v = v.strip()
        return v or None
