from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Capability credentials. A missing credential disables that stage.
    openai_api_key: str | None = None
    openai_assistant_id: str | None = None
    replicate_token: str | None = None
    tinypng_key: str | None = None
    imgbb_key: str | None = None

    # Asset Locator / Description Generator
    max_batch_size: int = 10
    description_batch_size: int = 5
    alt_tag_max_length: int = 125
    generator_filename_max_length: int = 80
    run_poll_attempts: int = 20
    sub_batch_pause_s: float = 2.0

    # Resolution Enhancer
    upscale_model: str = "esrgan"
    upscale_scale: int = 2
    upscale_timeout_s: int = 120

    # Compression/Hosting Finisher
    target_format: str = "image/webp"
    bounding_box_px: int = 3000
    size_band_min_kb: int = 150
    size_band_max_kb: int = 400
    grow_factor: float = 1.3
    shrink_factor: float = 0.8
    imgbb_upload_url: str = "https://api.imgbb.com/1/upload"
    placeholder_image_url: str = "https://placehold.co/1000x1000.webp?text=No+image"

    # Shared
    poll_interval_s: float = 1.0
    retry_attempts: int = 3
    retry_delays_s: list[float] = [1.0, 3.0, 10.0]
    http_timeout_s: float = 30.0
    max_workers: int = 4
    run_budget_s: float = 330.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SEOIMG_",
        env_file_encoding="utf-8",
    )

    @field_validator(
        "max_batch_size",
        "description_batch_size",
        "run_poll_attempts",
        "upscale_timeout_s",
        "bounding_box_px",
        "retry_attempts",
        "max_workers",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("description_batch_size")
    @classmethod
    def sub_batch_within_attachment_limit(cls, v: int) -> int:
        if v > 5:
            raise ValueError("description_batch_size cannot exceed 5 images per message")
        return v

    @field_validator("alt_tag_max_length")
    @classmethod
    def alt_tag_length_in_range(cls, v: int) -> int:
        if not 20 <= v <= 125:
            raise ValueError("alt_tag_max_length must be between 20 and 125")
        return v

    @field_validator("generator_filename_max_length")
    @classmethod
    def filename_length_in_range(cls, v: int) -> int:
        if not 10 <= v <= 80:
            raise ValueError("generator_filename_max_length must be between 10 and 80")
        return v

    @field_validator("upscale_scale")
    @classmethod
    def scale_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("upscale_scale must be at least 1")
        return v

    @field_validator("retry_delays_s")
    @classmethod
    def delays_not_empty(cls, v: list[float]) -> list[float]:
        if not v or any(d < 0 for d in v):
            raise ValueError("retry_delays_s needs at least one non-negative delay")
        return v

    @model_validator(mode="after")
    def size_band_must_be_ordered(self) -> "Settings":
        if self.size_band_min_kb >= self.size_band_max_kb:
            raise ValueError("size_band_min_kb must be below size_band_max_kb")
        return self

    @property
    def analysis_enabled(self) -> bool:
        return bool(self.openai_api_key and self.openai_assistant_id)

    @property
    def upscaling_enabled(self) -> bool:
        return bool(self.replicate_token)

    @property
    def finishing_enabled(self) -> bool:
        return bool(self.tinypng_key and self.imgbb_key)

    @property
    def upscale_poll_attempts(self) -> int:
        if self.poll_interval_s <= 0:
            return self.upscale_timeout_s
        return max(1, int(self.upscale_timeout_s / self.poll_interval_s))

    def retry_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based); the last delay repeats."""
        return self.retry_delays_s[min(attempt, len(self.retry_delays_s) - 1)]
