"""Stage 4 (finish): compress, convert to WebP, size-correct and re-host.

Per image, independently:

  1. download the Stage 3 URL (enhanced or original)
  2. TinyPNG /shrink with the raw bytes                → intermediate URL
  3. convert the intermediate to the target format, fit into a bounding box
  4. if the result is outside the size band, convert once more with a
     larger (too small) or smaller (too big) box; keep whichever attempt is
     closer to the band
  5. upload to ImgBB under the image's SEO filename    → public URL

Each image gets a confidence score from how far it got (see
models.results.score_confidence). Without TinyPNG and ImgBB keys the Stage 3
URL is passed through unchanged.
"""
import base64
import logging
from functools import partial

import httpx
from pydantic import BaseModel

from models.descriptions import DescriptionOutcome
from models.enhancement import EnhancementOutcome
from models.results import FinishStatus, PipelineResult, score_confidence
from settings import Settings
from utils.errors import AuthError, InvalidPayloadError, ServiceError
from utils.http import build_client, send_with_retry
from utils.polling import Deadline
from utils.workers import run_ordered

logger = logging.getLogger(__name__)

_SHRINK_URL = "https://api.tinify.com/shrink"


class _Conversion(BaseModel):
    data: bytes
    box_px: int

    @property
    def size_kb(self) -> int:
        return round(len(self.data) / 1024)

    def band_distance(self, settings: Settings) -> int:
        """0 inside the size band, otherwise KB to the nearest edge."""
        if self.size_kb < settings.size_band_min_kb:
            return settings.size_band_min_kb - self.size_kb
        if self.size_kb > settings.size_band_max_kb:
            return self.size_kb - settings.size_band_max_kb
        return 0


def run(
    settings: Settings,
    enhanced: list[EnhancementOutcome],
    descriptions: list[DescriptionOutcome],
    deadline: Deadline | None = None,
) -> list[PipelineResult]:
    """Return one PipelineResult per image, same order as `enhanced`."""
    if len(enhanced) != len(descriptions):
        raise ValueError(
            f"{len(enhanced)} enhancement outcomes but {len(descriptions)} descriptions"
        )
    if not enhanced:
        return []
    deadline = deadline or Deadline.unbounded()

    if not settings.finishing_enabled:
        logger.warning("TinyPNG or ImgBB key not configured; publishing Stage 3 URLs as-is.")
        return [
            _result(outcome, description, FinishStatus.SKIPPED)
            for outcome, description in zip(enhanced, descriptions)
        ]

    with build_client(settings) as client:
        results = run_ordered(
            (
                partial(_finish_one, client, outcome, description, index, settings, deadline)
                for index, (outcome, description) in enumerate(zip(enhanced, descriptions), start=1)
            ),
            max_workers=settings.max_workers,
            deadline=deadline,
        )

    _log_summary(results)
    return results


# ---------------------------------------------------------------------------
# Per-image unit
# ---------------------------------------------------------------------------

def _finish_one(
    client: httpx.Client,
    outcome: EnhancementOutcome,
    description: DescriptionOutcome,
    index: int,
    settings: Settings,
    deadline: Deadline,
) -> PipelineResult:
    try:
        source = _download(client, outcome.processed_url, settings, deadline)
        intermediate_url = _shrink(client, source, settings, deadline)
        conversion = _convert_in_band(client, intermediate_url, index, settings, deadline)
    except AuthError:
        raise
    except Exception as exc:
        logger.warning("  [%d] compression failed; using Stage 3 URL: %s", index, exc)
        return _result(outcome, description, FinishStatus.FAILED, error=str(exc))

    try:
        hosted_url = _host(client, conversion.data, description.seo_filename, settings, deadline)
    except AuthError:
        raise
    except Exception as exc:
        logger.warning("  [%d] hosting failed; using Stage 3 URL: %s", index, exc)
        return _result(
            outcome, description, FinishStatus.CONVERTED_NOT_HOSTED,
            size_kb=conversion.size_kb, error=str(exc),
        )

    in_band = conversion.band_distance(settings) == 0
    status = FinishStatus.HOSTED if in_band else FinishStatus.HOSTED_OUT_OF_BAND
    logger.info("  [%d] %s: %dKB → %s", index, status.value, conversion.size_kb, hosted_url)
    return _result(outcome, description, status, url=hosted_url, size_kb=conversion.size_kb)


def _result(
    outcome: EnhancementOutcome,
    description: DescriptionOutcome,
    status: FinishStatus,
    url: str | None = None,
    size_kb: int | None = None,
    error: str | None = None,
) -> PipelineResult:
    return PipelineResult(
        alt_tag=description.alt_tag,
        seo_filename=description.seo_filename,
        processed_image_url=url or outcome.processed_url,
        confidence=score_confidence(outcome.was_enhanced, status),
        original_url=outcome.original_url,
        was_enhanced=outcome.was_enhanced,
        finish_status=status,
        size_kb=size_kb,
        description_source=description.source,
        error=error or outcome.error,
    )


# ---------------------------------------------------------------------------
# Capability calls
# ---------------------------------------------------------------------------

def _download(client: httpx.Client, url: str, settings: Settings, deadline: Deadline) -> bytes:
    # Image hosts carry no credentials of ours; a 401/403 is a hotlink block.
    response = send_with_retry(
        client, "GET", url,
        settings=settings, service="download", deadline=deadline, credentialed=False,
    )
    if response.status_code != 200:
        raise ServiceError(f"download failed (HTTP {response.status_code})", service="download",
                           http_status=response.status_code)
    if not response.content:
        raise InvalidPayloadError(f"empty image body from {url}", stage="finish")
    return response.content


def _shrink(client: httpx.Client, data: bytes, settings: Settings, deadline: Deadline) -> str:
    """Phase (a): generic compression. Returns the intermediate's URL."""
    response = send_with_retry(
        client, "POST", _SHRINK_URL,
        settings=settings, service="tinypng", deadline=deadline,
        auth=("api", settings.tinypng_key), content=data,
    )
    if response.status_code != 201:
        raise ServiceError(f"shrink failed (HTTP {response.status_code})", service="tinypng",
                           http_status=response.status_code)
    output_url = response.json().get("output", {}).get("url") or response.headers.get("Location")
    if not output_url:
        raise InvalidPayloadError("shrink response has no output URL", stage="finish")
    return output_url


def _convert(
    client: httpx.Client,
    intermediate_url: str,
    box_px: int,
    settings: Settings,
    deadline: Deadline,
) -> _Conversion:
    """Phase (b): format conversion constrained to a `box_px` square."""
    response = send_with_retry(
        client, "POST", intermediate_url,
        settings=settings, service="tinypng", deadline=deadline,
        auth=("api", settings.tinypng_key),
        json={
            "convert": {"type": settings.target_format},
            "resize": {"method": "fit", "width": box_px, "height": box_px},
        },
    )
    if response.status_code != 200:
        raise ServiceError(f"convert failed (HTTP {response.status_code})", service="tinypng",
                           http_status=response.status_code)
    if not response.content:
        raise InvalidPayloadError("convert returned an empty body", stage="finish")
    return _Conversion(data=response.content, box_px=box_px)


def _convert_in_band(
    client: httpx.Client,
    intermediate_url: str,
    index: int,
    settings: Settings,
    deadline: Deadline,
) -> _Conversion:
    """Convert, then correct once if the result falls outside the size band.

    After the single corrective attempt the result closer to the band wins
    (ties go to the corrected one). A failed correction keeps the first.
    """
    first = _convert(client, intermediate_url, settings.bounding_box_px, settings, deadline)
    if first.band_distance(settings) == 0:
        return first

    too_small = first.size_kb < settings.size_band_min_kb
    factor = settings.grow_factor if too_small else settings.shrink_factor
    box_px = max(1, round(first.box_px * factor))
    logger.info(
        "  [%d] %dKB is %s the %d-%dKB band; retrying at %dpx",
        index, first.size_kb, "below" if too_small else "above",
        settings.size_band_min_kb, settings.size_band_max_kb, box_px,
    )
    try:
        second = _convert(client, intermediate_url, box_px, settings, deadline)
    except AuthError:
        raise
    except Exception as exc:
        logger.warning("  [%d] size correction failed (%s); keeping first result", index, exc)
        return first

    return second if second.band_distance(settings) <= first.band_distance(settings) else first


def _host(
    client: httpx.Client,
    data: bytes,
    filename: str,
    settings: Settings,
    deadline: Deadline,
) -> str:
    response = send_with_retry(
        client, "POST", settings.imgbb_upload_url,
        settings=settings, service="imgbb", deadline=deadline,
        params={"key": settings.imgbb_key},
        data={"image": base64.b64encode(data).decode("ascii"), "name": filename},
    )
    if response.status_code != 200:
        raise ServiceError(f"upload failed (HTTP {response.status_code})", service="imgbb",
                           http_status=response.status_code)
    body = response.json()
    url = (body.get("data") or {}).get("url")
    if not body.get("success") or not url:
        raise InvalidPayloadError(f"upload rejected: {body.get('error') or body}", stage="finish")
    return url


def _log_summary(results: list[PipelineResult]) -> None:
    counts: dict[str, int] = {}
    for r in results:
        counts[r.finish_status.value] = counts.get(r.finish_status.value, 0) + 1
    logger.info("Stage 4 complete")
    for status, count in sorted(counts.items()):
        logger.info("  %-22s %d", status, count)
