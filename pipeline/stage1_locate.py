"""Stage 1 (locate): pick the candidate image URLs for one product.

The three source columns are tried in priority order
(user-selected > supplier-parsed > platform-original). The first tier that
yields at least one http URL is used on its own; tiers are never mixed.

Pure function: no network, no side effects.
"""
import logging
import re

from models.product import ImageCandidate, ImageSource, Product
from settings import Settings

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"[\n,]")

_PRIORITY = (
    ImageSource.USER_SELECTED,
    ImageSource.SUPPLIER_PARSED,
    ImageSource.PLATFORM_ORIGINAL,
)


def run(settings: Settings, product: Product) -> list[ImageCandidate]:
    """Return the de-duplicated, capped candidate list (possibly empty).

    An empty list means "nothing to process", not an error.
    """
    for source in _PRIORITY:
        urls = parse_urls(product.raw_source(source))
        if not urls:
            continue

        unique = _dedupe(urls)
        capped = unique[: settings.max_batch_size]
        logger.info("Stage 1 complete → %s", source.value)
        logger.info("  URLs found:   %d", len(urls))
        logger.info("  Unique:       %d", len(unique))
        logger.info("  Processing:   %d", len(capped))
        return [ImageCandidate(url=url, source=source) for url in capped]

    logger.warning("No image URLs found for %s (%s).", product.article or "?", product.product_name)
    return []


def parse_urls(raw: str) -> list[str]:
    """Split a cell on newlines/commas and keep trimmed http(s) entries."""
    if not raw:
        return []
    return [
        part.strip() for part in _SPLIT_RE.split(raw)
        if part.strip().startswith("http")
    ]


def _dedupe(urls: list[str]) -> list[str]:
    # Case-sensitive; first occurrence wins.
    return list(dict.fromkeys(urls))
