from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ImageSource(str, Enum):
    """Candidate source tiers, highest priority first."""

    USER_SELECTED = "user_selected"
    SUPPLIER_PARSED = "supplier_parsed"
    PLATFORM_ORIGINAL = "platform_original"


class Product(BaseModel):
    """One product row as handed over by the spreadsheet reader.

    The three image fields hold raw cell text: URLs separated by newlines
    and/or commas, possibly with blanks and non-URL noise.
    """

    article: str = ""
    product_name: str
    user_selected: str = ""
    supplier_parsed: str = ""
    platform_original: str = ""

    @field_validator("user_selected", "supplier_parsed", "platform_original", mode="before")
    @classmethod
    def none_as_empty(cls, v: str | None) -> str:
        return v or ""

    def raw_source(self, source: ImageSource) -> str:
        return getattr(self, source.value)


class ImageCandidate(BaseModel):
    url: str = Field(min_length=1)
    source: ImageSource
