"""Stage 2 (describe): alt texts and SEO filenames via an OpenAI assistant.

Images are sent in sub-batches of at most five (attachment limit per
message). Each sub-batch gets its own thread:

  create thread → post prompt + image URLs → start run (reply pinned to a
  strict JSON schema) → poll run → read the newest assistant message →
  parse {"results": [...]}.

Any failure inside a sub-batch replaces only that sub-batch with synthesised
tags ("<product> - image N"). AuthError is the one exception that escapes.
Without an API key or assistant id the network path is skipped entirely.
"""
import logging
import time as time_module
from collections.abc import Callable
from typing import TypeVar

from openai import (
    APIConnectionError,
    AuthenticationError,
    InternalServerError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
)
from pydantic import ValidationError

from models.descriptions import AssistantBatchReply, DescriptionOutcome, DescriptionSource
from settings import Settings
from utils.errors import AuthError, InvalidPayloadError, ServiceError, TransientServiceError
from utils.openai_utils import (
    extract_results_object,
    json_schema_format,
    latest_assistant_text,
    loads_strict,
)
from utils.polling import Deadline, poll_until
from utils.seo_text import fallback_alt_tag, fallback_filename, validate_alt_tag, validate_seo_filename

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TERMINAL_RUN_STATES = frozenset({"completed", "failed", "cancelled", "expired", "incomplete"})
_REPLY_FORMAT = json_schema_format(AssistantBatchReply, "alt_tag_batch")

_PROMPT = """\
Analyse the {count} images of the product "{product_name}" (in the order attached) and create for each one:
1. An SEO-optimised alt text, at most {alt_max} characters, in the language of the product name.
   Describe what is visible; do not use the words "image", "photo" or "picture".
2. An SEO filename: lowercase latin letters, digits and hyphens only, at most 60 characters, NO extension.

Reply with JSON only, exactly {count} entries, in image order:
{{
  "results": [
    {{"altTag": "alt text 1", "seoFilename": "filename-1"}},
    {{"altTag": "alt text 2", "seoFilename": "filename-2"}}
  ]
}}
"""


def run(
    settings: Settings,
    images: list[str],
    product_name: str,
    deadline: Deadline | None = None,
) -> list[DescriptionOutcome]:
    """Return one DescriptionOutcome per image, same order as `images`."""
    if not images:
        return []
    deadline = deadline or Deadline.unbounded()

    if not settings.analysis_enabled:
        logger.warning(
            "Analysis assistant not configured; synthesising tags for %d images.", len(images)
        )
        return [fallback_outcome(product_name, i, settings) for i in range(1, len(images) + 1)]

    client = OpenAI(api_key=settings.openai_api_key, max_retries=0)
    size = settings.description_batch_size
    offsets = range(0, len(images), size)
    total = len(offsets)
    outcomes: list[DescriptionOutcome] = []

    for number, offset in enumerate(offsets, start=1):
        batch = images[offset: offset + size]
        try:
            described = _describe_sub_batch(client, batch, product_name, settings, deadline)
            logger.info("  Sub-batch %d/%d: %d images described", number, total, len(batch))
        except AuthError:
            raise
        except Exception as exc:
            logger.warning(
                "  Sub-batch %d/%d failed (%s); using synthesised tags.", number, total, exc
            )
            described = [
                fallback_outcome(product_name, offset + i, settings)
                for i in range(1, len(batch) + 1)
            ]
        outcomes.extend(described)

        if number < total and not deadline.expired:
            time_module.sleep(settings.sub_batch_pause_s)

    fallback = sum(1 for o in outcomes if o.source == DescriptionSource.FALLBACK)
    logger.info("Stage 2 complete")
    logger.info("  Sub-batches:  %d", total)
    logger.info("  From model:   %d", len(outcomes) - fallback)
    logger.info("  Synthesised:  %d", fallback)
    return outcomes


def fallback_outcome(product_name: str, index: int, settings: Settings) -> DescriptionOutcome:
    """Synthesised description for image `index` (1-based, across the whole batch)."""
    return DescriptionOutcome(
        alt_tag=fallback_alt_tag(product_name, index, settings.alt_tag_max_length),
        seo_filename=fallback_filename(product_name, index, settings.generator_filename_max_length),
        source=DescriptionSource.FALLBACK,
    )


# ---------------------------------------------------------------------------
# One sub-batch
# ---------------------------------------------------------------------------

def _describe_sub_batch(
    client: OpenAI,
    batch: list[str],
    product_name: str,
    settings: Settings,
    deadline: Deadline,
) -> list[DescriptionOutcome]:
    deadline.check("description sub-batch")
    threads = client.beta.threads

    thread = _call(lambda: threads.create(), settings)
    content = [{
        "type": "text",
        "text": _PROMPT.format(
            count=len(batch), product_name=product_name, alt_max=settings.alt_tag_max_length
        ),
    }]
    content.extend({"type": "image_url", "image_url": {"url": url}} for url in batch)
    _call(lambda: threads.messages.create(thread_id=thread.id, role="user", content=content), settings)

    run_obj = _call(
        lambda: threads.runs.create(
            thread_id=thread.id,
            assistant_id=settings.openai_assistant_id,
            response_format=_REPLY_FORMAT,
        ),
        settings,
    )
    if run_obj.status not in _TERMINAL_RUN_STATES:
        run_obj = poll_until(
            lambda: _call(lambda: threads.runs.retrieve(run_obj.id, thread_id=thread.id), settings),
            lambda r: r.status in _TERMINAL_RUN_STATES,
            interval_s=settings.poll_interval_s,
            max_attempts=settings.run_poll_attempts,
            deadline=deadline,
            what=f"assistant run {run_obj.id}",
        )
    if run_obj.status != "completed":
        raise ServiceError(f"assistant run ended with status {run_obj.status!r}", service="openai")

    messages = _call(lambda: threads.messages.list(thread_id=thread.id, order="desc", limit=10), settings)
    text = latest_assistant_text(messages)
    if not text:
        raise InvalidPayloadError("assistant produced no text reply", stage="describe")

    reply = parse_reply(text, expected=len(batch))
    return [
        DescriptionOutcome(
            alt_tag=validate_alt_tag(pair.altTag, product_name, settings.alt_tag_max_length),
            seo_filename=validate_seo_filename(pair.seoFilename, settings.generator_filename_max_length),
        )
        for pair in reply.results
    ]


def parse_reply(text: str, expected: int) -> AssistantBatchReply:
    """Validate the assistant's reply strictly; fall back to embedded-JSON extraction.

    Raises InvalidPayloadError when neither path yields exactly `expected`
    schema-valid results.
    """
    try:
        reply = AssistantBatchReply.model_validate(loads_strict(text))
    except (ValueError, ValidationError) as exc:
        logger.debug("Strict reply parse failed (%s); searching for embedded JSON.", exc)
        data = extract_results_object(text)
        if data is None:
            raise InvalidPayloadError("no JSON results object in reply", stage="describe") from exc
        try:
            reply = AssistantBatchReply.model_validate(data)
        except ValidationError as inner:
            raise InvalidPayloadError(f"reply failed schema validation: {inner}", stage="describe") from inner

    if len(reply.results) != expected:
        raise InvalidPayloadError(
            f"expected {expected} results, got {len(reply.results)}", stage="describe"
        )
    return reply


# ---------------------------------------------------------------------------
# OpenAI call wrapper
# ---------------------------------------------------------------------------

def _call(fn: Callable[[], T], settings: Settings) -> T:
    """Run one SDK call, retrying rate limits and server errors with backoff."""
    attempts = settings.retry_attempts
    for attempt in range(attempts):
        try:
            return fn()
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise AuthError(
                f"OpenAI rejected the credentials: {exc}",
                service="openai",
                http_status=getattr(exc, "status_code", None),
            ) from exc
        except (RateLimitError, InternalServerError, APIConnectionError) as exc:
            if attempt == attempts - 1:
                raise TransientServiceError(
                    f"OpenAI still failing after {attempts} attempts: {exc}",
                    service="openai",
                    http_status=getattr(exc, "status_code", None),
                ) from exc
            delay = settings.retry_delay(attempt)
            logger.debug(
                "OpenAI transient error; retrying in %.1fs (attempt %d/%d).",
                delay, attempt + 1, attempts,
            )
            time_module.sleep(delay)

    raise RuntimeError("Unreachable")  # pragma: no cover
