"""Stage 3 (enhance): upscale every image through Replicate predictions.

Per image, independently:

  POST /predictions {version, input: {image, scale}}  → expect 201 + id
  GET  /predictions/<id> every poll interval          → until succeeded/failed/canceled

A succeeded prediction's output URL becomes `processed_url`. Any failure
(non-201, failed job, timeout, transport error) leaves the original URL in
place. Images are processed on a bounded thread pool; results keep input
order. Without a Replicate token every image passes through untouched.
"""
import logging
from functools import partial

import httpx

from models.enhancement import EnhancementOutcome, StageStatus, UpscaleModel, resolve_upscale_model
from settings import Settings
from utils.errors import AuthError, PollTimeoutError, ServiceError
from utils.http import build_client, send_with_retry
from utils.polling import Deadline, poll_until
from utils.workers import run_ordered

logger = logging.getLogger(__name__)

_API_BASE = "https://api.replicate.com/v1"
_TERMINAL_STATES = frozenset({"succeeded", "failed", "canceled"})


def run(
    settings: Settings,
    images: list[str],
    deadline: Deadline | None = None,
    model: UpscaleModel | None = None,
) -> list[EnhancementOutcome]:
    """Return one EnhancementOutcome per image, same order as `images`."""
    if not images:
        return []
    deadline = deadline or Deadline.unbounded()

    if not settings.upscaling_enabled:
        logger.warning("Replicate token not configured; using original images.")
        return [EnhancementOutcome.passthrough(url, StageStatus.SKIPPED) for url in images]

    model = model or resolve_upscale_model(settings.upscale_model)
    scale = model.clamp_scale(settings.upscale_scale)
    logger.info("Upscaling %d images with %s (scale=%d)", len(images), model.name, scale)

    with build_client(
        settings,
        base_url=_API_BASE,
        headers={"Authorization": f"Token {settings.replicate_token}"},
    ) as client:
        outcomes = run_ordered(
            (
                partial(_enhance_one, client, url, index, model, scale, settings, deadline)
                for index, url in enumerate(images, start=1)
            ),
            max_workers=settings.max_workers,
            deadline=deadline,
        )

    _log_summary(outcomes)
    return outcomes


# ---------------------------------------------------------------------------
# Per-image unit
# ---------------------------------------------------------------------------

def _enhance_one(
    client: httpx.Client,
    url: str,
    index: int,
    model: UpscaleModel,
    scale: int,
    settings: Settings,
    deadline: Deadline,
) -> EnhancementOutcome:
    try:
        output_url = _upscale(client, url, model, scale, settings, deadline)
    except AuthError:
        raise
    except PollTimeoutError as exc:
        logger.warning("  [%d] upscaling timed out; keeping original: %s", index, exc)
        return EnhancementOutcome.passthrough(url, StageStatus.TIMED_OUT, str(exc))
    except Exception as exc:
        logger.warning("  [%d] upscaling failed; keeping original: %s", index, exc)
        return EnhancementOutcome.passthrough(url, StageStatus.FAILED, str(exc))

    logger.info("  [%d] enhanced", index)
    return EnhancementOutcome(
        original_url=url,
        processed_url=output_url,
        was_enhanced=True,
        status=StageStatus.SUCCEEDED,
    )


def _upscale(
    client: httpx.Client,
    url: str,
    model: UpscaleModel,
    scale: int,
    settings: Settings,
    deadline: Deadline,
) -> str:
    """Submit one prediction and wait for its output URL."""
    response = send_with_retry(
        client, "POST", "/predictions",
        settings=settings, service="replicate", deadline=deadline,
        json={"version": model.version, "input": {"image": url, "scale": scale}},
    )
    if response.status_code != 201:
        raise ServiceError(
            f"prediction not created (HTTP {response.status_code})",
            service="replicate", http_status=response.status_code,
        )
    prediction_id = response.json()["id"]

    def fetch() -> dict:
        status = send_with_retry(
            client, "GET", f"/predictions/{prediction_id}",
            settings=settings, service="replicate", deadline=deadline,
        )
        status.raise_for_status()
        return status.json()

    prediction = poll_until(
        fetch,
        lambda p: p.get("status") in _TERMINAL_STATES,
        interval_s=settings.poll_interval_s,
        max_attempts=settings.upscale_poll_attempts,
        deadline=deadline,
        what=f"prediction {prediction_id}",
    )
    if prediction["status"] != "succeeded":
        raise ServiceError(
            f"prediction {prediction['status']}: {prediction.get('error') or 'no detail'}",
            service="replicate",
        )
    output = _output_url(prediction.get("output"))
    if not output:
        raise ServiceError("prediction succeeded without an output URL", service="replicate")
    return output


def _output_url(output) -> str | None:
    # Models return either a single URL or a list of URLs.
    if isinstance(output, list):
        output = output[0] if output else None
    return output if isinstance(output, str) and output.startswith("http") else None


def _log_summary(outcomes: list[EnhancementOutcome]) -> None:
    enhanced = sum(1 for o in outcomes if o.was_enhanced)
    failed = len(outcomes) - enhanced
    logger.info("Stage 3 complete")
    logger.info("  Enhanced:     %d/%d", enhanced, len(outcomes))
    logger.info("  Originals:    %d", failed)
    if enhanced == 0:
        logger.warning("All enhancements failed; continuing with original images.")
