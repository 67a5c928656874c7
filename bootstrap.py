#populate (or refresh) the catalog from the command line
import argparse
import json
import sys

from app import create_app
from catalog_core.config import IngestionConfig
from catalog_core.enrichment import BACKFILL_FIELDS


def _page_cap(value):
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return n


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the catalog ingestion pipeline once.")
    parser.add_argument("--platforms", default="", help="comma-separated catalog provider ids (default: configured / all active)")
    parser.add_argument("--max-pages", type=_page_cap, default=None, help="page cap per platform")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--update", action="store_true", help="incremental update instead of a full bootstrap")
    mode.add_argument("--backfill", choices=BACKFILL_FIELDS, help="re-fetch TMDB details for movies missing this field")
    mode.add_argument("--refresh-title", metavar="CATALOG_ID", help="re-read one title and its offers from the catalog")
    parser.add_argument("--limit", type=int, default=None, help="max movies to backfill")
    args = parser.parse_args(argv)

    config = IngestionConfig.from_env()
    config.schedule_enabled = False
    config.bootstrap_on_start = False
    app = create_app(config)
    orchestrator = app.extensions["catalog"]["orchestrator"]

    platform_ids = [p.strip() for p in args.platforms.split(",") if p.strip()] or None
    try:
        with app.app_context():
            if args.backfill:
                result = {"success": True, **orchestrator.enrichment.backfill_missing(args.backfill, args.limit)}
            elif args.refresh_title:
                title = orchestrator.ingestion.refresh_title(args.refresh_title)
                result = {"success": title is not None, "title": title}
            elif args.update:
                result = orchestrator.update_catalog()
            else:
                result = orchestrator.bootstrap(platform_ids, args.max_pages)
    finally:
        orchestrator.close()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
