from enum import Enum

from pydantic import BaseModel, Field

from models.descriptions import DescriptionSource


class FinishStatus(str, Enum):
    HOSTED = "hosted"
    HOSTED_OUT_OF_BAND = "hosted_out_of_band"
    CONVERTED_NOT_HOSTED = "converted_not_hosted"
    SKIPPED = "skipped"  # compression/hosting not configured
    FAILED = "failed"


class PipelineState(str, Enum):
    LOCATED = "located"
    DESCRIBED = "described"
    ENHANCED = "enhanced"
    FINISHED = "finished"
    ASSEMBLED = "assembled"
    FAILED = "failed"


# (enhanced, not enhanced). Un-enhanced images never score above 5.
_CONFIDENCE: dict[FinishStatus, tuple[int, int]] = {
    FinishStatus.HOSTED: (8, 5),
    FinishStatus.HOSTED_OUT_OF_BAND: (7, 4),
    FinishStatus.CONVERTED_NOT_HOSTED: (6, 4),
    FinishStatus.SKIPPED: (5, 3),
    FinishStatus.FAILED: (4, 3),
}
CATASTROPHIC_CONFIDENCE = 1
_OPTIMIZED = frozenset({FinishStatus.HOSTED, FinishStatus.HOSTED_OUT_OF_BAND})


def score_confidence(was_enhanced: bool, finish_status: FinishStatus) -> int:
    enhanced, plain = _CONFIDENCE[finish_status]
    return enhanced if was_enhanced else plain


class PipelineResult(BaseModel):
    """Final per-image record handed to the spreadsheet writer."""

    alt_tag: str
    seo_filename: str
    processed_image_url: str = Field(min_length=1)
    confidence: int = Field(ge=1, le=8)
    original_url: str | None = None
    was_enhanced: bool = False
    finish_status: FinishStatus | None = None
    size_kb: int | None = None
    description_source: DescriptionSource = DescriptionSource.MODEL
    error: str | None = None

    @property
    def is_optimized(self) -> bool:
        return self.finish_status in _OPTIMIZED


class PipelineReport(BaseModel):
    """Everything the caller needs to store results and report status."""

    article: str = ""
    product_name: str
    state: PipelineState
    results: list[PipelineResult] = Field(default_factory=list)
    enhanced_count: int = 0
    failed_count: int = 0
    optimized_count: int = 0
    fallback_description_count: int = 0
    error: str | None = None

    @property
    def all_enhancements_failed(self) -> bool:
        return bool(self.results) and self.enhanced_count == 0 and self.state != PipelineState.FAILED

    @property
    def enhanced_only_count(self) -> int:
        return sum(1 for r in self.results if r.was_enhanced and not r.is_optimized)

    @property
    def fallback_count(self) -> int:
        return len(self.results) - self.optimized_count - self.enhanced_only_count

    def summary(self) -> str:
        """Human-readable status line for the product row."""
        if self.state == PipelineState.FAILED:
            return f"{self.product_name}: processing failed ({self.error or 'unknown error'})"
        total = len(self.results)
        lines = [
            f"{self.product_name}: {total} image(s)",
            f"  fully optimized: {self.optimized_count}",
            f"  enhanced only:   {self.enhanced_only_count}",
            f"  fallback:        {self.fallback_count}",
        ]
        if self.fallback_description_count:
            lines.append(f"  synthesized descriptions: {self.fallback_description_count}")
        if self.all_enhancements_failed:
            lines.append("  all enhancements failed; original images were used")
        return "\n".join(lines)

    def to_columns(self) -> dict[str, str]:
        """Newline-joined values for the alt-tag, filename and processed-URL cells."""
        return {
            "alt_tags": "\n".join(r.alt_tag for r in self.results),
            "seo_filenames": "\n".join(r.seo_filename for r in self.results),
            "processed_urls": "\n".join(r.processed_image_url for r in self.results),
        }
