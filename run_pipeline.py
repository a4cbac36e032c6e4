#!/usr/bin/env python3
"""Run the product image pipeline for one product.

Usage:
    python run_pipeline.py product.json                     # report JSON to stdout
    python run_pipeline.py product.json --out report.json   # write report to a file
    python run_pipeline.py product.json --sources-only      # only list the located URLs

product.json holds one Product: article, product_name, user_selected,
supplier_parsed, platform_original. Credentials and tunables come from
SEOIMG_* environment variables or .env.
"""
import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from models.events import PipelineEvent
from models.product import Product
from models.results import PipelineState
from pipeline import orchestrator, stage1_locate
from settings import Settings
from utils.errors import AuthError

logger = logging.getLogger("run_pipeline")


def _log_event(event: PipelineEvent) -> None:
    if not event.is_terminal:
        logger.info("=== %s ===", event.status_line())
        return
    level = logging.WARNING if event.state == PipelineState.FAILED else logging.INFO
    logger.log(level, "=== %s ===", event.status_line())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("product", type=Path, help="Path to a product JSON file")
    parser.add_argument("--out", type=Path, default=None,
                        help="Write the report here instead of stdout")
    parser.add_argument("--sources-only", action="store_true", dest="sources_only",
                        help="Only run the asset locator and print the URLs")
    args = parser.parse_args(argv)

    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    product = Product.model_validate_json(args.product.read_text(encoding="utf-8"))

    if args.sources_only:
        candidates = stage1_locate.run(settings, product)
        output = json.dumps([c.model_dump(mode="json") for c in candidates], indent=2, ensure_ascii=False)
    else:
        try:
            report = orchestrator.run(settings, product, on_event=_log_event)
        except AuthError as exc:
            logger.error("Authentication failed for %s: %s", exc.service, exc.message)
            return 2
        logger.info("%s", report.summary())
        payload = report.model_dump(mode="json")
        payload["columns"] = report.to_columns()
        output = json.dumps(payload, indent=2, ensure_ascii=False)

    if args.out:
        args.out.write_text(output, encoding="utf-8")
        logger.info("=== Done → %s ===", args.out)
    else:
        print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
