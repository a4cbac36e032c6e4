from enum import Enum

from pydantic import BaseModel, Field, model_validator


class StageStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"  # capability not configured


class UpscaleModel(BaseModel):
    key: str
    name: str
    version: str
    max_scale: int = Field(ge=1)

    def clamp_scale(self, scale: int) -> int:
        return max(1, min(scale, self.max_scale))


UPSCALE_MODELS: dict[str, UpscaleModel] = {
    "esrgan": UpscaleModel(
        key="esrgan",
        name="ESRGAN",
        version="f121d640bd286e1fdc67f9799164c1d5be36ff74576ee11c803ae5b665dd46aa",
        max_scale=4,
    ),
    "clarity": UpscaleModel(
        key="clarity",
        name="Clarity Upscaler",
        version="dfad41707589d68ecdccd1dfa600d55a208f9310748e44bfe35b4a6291453d5e",
        max_scale=4,
    ),
}
_MODEL_ALIASES = {"clarity_upscaler": "clarity"}


def resolve_upscale_model(key: str | None) -> UpscaleModel:
    """Look up a model by key (case-insensitive). Unknown keys get ESRGAN."""
    normalised = (key or "").strip().lower()
    normalised = _MODEL_ALIASES.get(normalised, normalised)
    return UPSCALE_MODELS.get(normalised, UPSCALE_MODELS["esrgan"])


class EnhancementOutcome(BaseModel):
    """Resolution Enhancer output for one image.

    `processed_url` is never empty: it falls back to `original_url` whenever
    the upscaling job did not succeed.
    """

    original_url: str = Field(min_length=1)
    processed_url: str = ""
    was_enhanced: bool = False
    status: StageStatus = StageStatus.PENDING
    error: str | None = None

    @model_validator(mode="after")
    def processed_defaults_to_original(self) -> "EnhancementOutcome":
        if not self.processed_url:
            self.processed_url = self.original_url
        return self

    @classmethod
    def passthrough(cls, url: str, status: StageStatus, error: str | None = None) -> "EnhancementOutcome":
        return cls(original_url=url, processed_url=url, was_enhanced=False, status=status, error=error)
