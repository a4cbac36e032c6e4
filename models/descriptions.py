from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from utils.openai_utils import strict_schema


class DescriptionSource(str, Enum):
    MODEL = "model"
    FALLBACK = "fallback"


class AltTagPair(BaseModel):
    """One entry of the assistant's `results` array, exactly as it writes it.

    No length keywords here: strict structured outputs reject them. Empty
    values are repaired by the seo_text validators.
    """

    model_config = ConfigDict(json_schema_extra=strict_schema, extra="forbid")

    altTag: str
    seoFilename: str


class AssistantBatchReply(BaseModel):
    """Strict schema for the analysis assistant's JSON reply."""

    model_config = ConfigDict(json_schema_extra=strict_schema, extra="forbid")

    results: list[AltTagPair]


class DescriptionOutcome(BaseModel):
    """Validated alt text and SEO filename for one image."""

    alt_tag: str = Field(min_length=1, max_length=125)
    seo_filename: str = Field(min_length=1, max_length=80, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    source: DescriptionSource = DescriptionSource.MODEL
