"""Run all four stages for one product and assemble the report.

State machine: located → described → enhanced → finished → assembled.
Stages run strictly one after another; each gets the full output of the
previous one. `failed` is only reached from an exception caught here (for
example: no image URLs at all), and still yields at least one result record.
AuthError is re-raised to the caller.
"""
import logging
from collections.abc import Callable

from models.descriptions import DescriptionSource
from models.events import PipelineEvent
from models.product import Product
from models.results import CATASTROPHIC_CONFIDENCE, PipelineReport, PipelineResult, PipelineState
from pipeline import stage1_locate, stage2_describe, stage3_enhance, stage4_finish
from settings import Settings
from utils.errors import AuthError, InvalidPayloadError
from utils.polling import Deadline
from utils.seo_text import fallback_alt_tag, fallback_filename, placeholder_filename

logger = logging.getLogger(__name__)

_PROGRESS = {
    PipelineState.LOCATED: 0.1,
    PipelineState.DESCRIBED: 0.35,
    PipelineState.ENHANCED: 0.7,
    PipelineState.FINISHED: 0.95,
    PipelineState.ASSEMBLED: 1.0,
    PipelineState.FAILED: 1.0,
}

EventHandler = Callable[[PipelineEvent], None]


def run(
    settings: Settings,
    product: Product,
    on_event: EventHandler | None = None,
) -> PipelineReport:
    """Process one product end-to-end. Never returns an empty result list."""
    deadline = Deadline(settings.run_budget_s)
    images: list[str] = []

    try:
        candidates = stage1_locate.run(settings, product)
        if not candidates:
            raise InvalidPayloadError("no image URLs located", stage="locate")
        images = [c.url for c in candidates]
        _emit(
            on_event, product, PipelineState.LOCATED,
            f"{len(images)} images from {candidates[0].source.value}",
        )

        descriptions = stage2_describe.run(settings, images, product.product_name, deadline)
        _emit(on_event, product, PipelineState.DESCRIBED, f"{len(descriptions)} descriptions")

        enhanced = stage3_enhance.run(settings, images, deadline)
        enhanced_count = sum(1 for e in enhanced if e.was_enhanced)
        _emit(on_event, product, PipelineState.ENHANCED, f"{enhanced_count}/{len(enhanced)} enhanced")

        results = stage4_finish.run(settings, enhanced, descriptions, deadline)
        _emit(on_event, product, PipelineState.FINISHED, f"{len(results)} images finished")
    except AuthError:
        raise
    except Exception as exc:
        logger.error("Pipeline failed for %s: %s", product.product_name, exc)
        report = _failed_report(settings, product, images, exc)
        _emit(on_event, product, PipelineState.FAILED, report.error, {"results": len(report.results)})
        return report

    report = _assemble(product, results)
    _emit(
        on_event, product, PipelineState.ASSEMBLED, report.summary(),
        {
            "enhanced_count": report.enhanced_count,
            "failed_count": report.failed_count,
            "optimized_count": report.optimized_count,
        },
    )
    logger.info("Pipeline complete for %s", product.product_name)
    for line in report.summary().splitlines()[1:]:
        logger.info("%s", line)
    return report


def _assemble(product: Product, results: list[PipelineResult]) -> PipelineReport:
    enhanced = sum(1 for r in results if r.was_enhanced)
    return PipelineReport(
        article=product.article,
        product_name=product.product_name,
        state=PipelineState.ASSEMBLED,
        results=results,
        enhanced_count=enhanced,
        failed_count=len(results) - enhanced,
        optimized_count=sum(1 for r in results if r.is_optimized),
        fallback_description_count=sum(
            1 for r in results if r.description_source == DescriptionSource.FALLBACK
        ),
    )


def _failed_report(
    settings: Settings,
    product: Product,
    images: list[str],
    exc: Exception,
) -> PipelineReport:
    """Degraded records: one per located image, or a single placeholder."""
    name = product.product_name
    if images:
        results = [
            PipelineResult(
                alt_tag=fallback_alt_tag(name, index, settings.alt_tag_max_length),
                seo_filename=fallback_filename(name, index, settings.generator_filename_max_length),
                processed_image_url=url,
                confidence=CATASTROPHIC_CONFIDENCE,
                original_url=url,
                description_source=DescriptionSource.FALLBACK,
                error=str(exc),
            )
            for index, url in enumerate(images, start=1)
        ]
    else:
        results = [
            PipelineResult(
                alt_tag=fallback_alt_tag(name, 1, settings.alt_tag_max_length),
                seo_filename=placeholder_filename(),
                processed_image_url=settings.placeholder_image_url,
                confidence=CATASTROPHIC_CONFIDENCE,
                description_source=DescriptionSource.FALLBACK,
                error=str(exc),
            )
        ]
    return PipelineReport(
        article=product.article,
        product_name=name,
        state=PipelineState.FAILED,
        results=results,
        failed_count=len(results),
        fallback_description_count=len(results),
        error=str(exc),
    )


def _emit(
    on_event: EventHandler | None,
    product: Product,
    state: PipelineState,
    message: str,
    payload: dict | None = None,
) -> None:
    if on_event is None:
        return
    on_event(PipelineEvent(
        article=product.article,
        state=state,
        progress=_PROGRESS[state],
        message=message,
        payload=payload,
    ))
