"""Import profile model.

An import profile is a named rule-set. It lists the tags every imported row
must carry with a non-empty value.

Usage:
    profile = ImportProfile(name="Water meters", required_tags={"site", "floor"})
    data = profile.model_dump(mode="json", by_alias=True)
    restored = ImportProfile.model_validate(data)
"""

import uuid

from pydantic import BaseModel, Field, field_validator


class ImportProfile(BaseModel):
    """Named set of validation rules applied to an upload.

    Attributes:
        id: Generated identifier (uuid4 hex)
        name: Human readable name, non-empty
        required_tags: Tag names each row must supply (serialized as requiredTags)
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Profile ID")
    name: str = Field(..., description="Profile name")
    required_tags: set[str] = Field(
        default_factory=set, alias="requiredTags", description="Mandatory tag names"
    )

    model_config = {"frozen": True, "populate_by_name": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject blank names."""
        v = v.strip()
        if not v:
            raise ValueError("Profile name must not be empty")
        return v

    @field_validator("required_tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: object) -> object:
        """Accept any iterable of names, dropping blanks and surrounding whitespace."""
        if v is None:
            return set()
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, list | tuple | set | frozenset):
            return {str(t).strip() for t in v if str(t).strip()}
        return v
