"""
Catalog ingestion: page through a platform's titles on the catalog provider,
upsert movies and their offers, then sweep offers that were not re-observed
during the pass.
"""
import logging
import time

from models import db, utcnow, Platform
from .metrics import AVAILABILITY_UPSERTS
from .repositories import PlatformRepository, MovieRepository, AvailabilityRepository

logger = logging.getLogger(__name__)

_QUALITY_RANK = {"unknown": 0, "SD": 1, "HD": 2, "UHD": 3, "4K": 4}


class CatalogIngestion:
    def __init__(self, catalog, platforms: PlatformRepository | None = None,
                 movies: MovieRepository | None = None, availabilities: AvailabilityRepository | None = None,
                 page_delay: float = 0.5, platform_delay: float = 1.0, sleep=time.sleep):
        self.catalog = catalog
        self.platforms = platforms or PlatformRepository()
        self.movies = movies or MovieRepository()
        self.availabilities = availabilities or AvailabilityRepository()
        self.page_delay = page_delay
        self.platform_delay = platform_delay
        self._sleep = sleep

    def sync_platforms(self) -> list[Platform]:
        logger.info("Syncing platforms from catalog provider...")
        providers = self.catalog.fetch_providers()
        if not providers:
            logger.warning("No providers fetched from catalog provider")
            return []
        platforms = self.platforms.bulk_upsert(providers)
        logger.info("Synced %d platforms from catalog provider", len(platforms))
        return platforms

    def _offer_platform(self, offer: dict, platform: Platform | None) -> Platform | None:
        provider_id = offer.get("provider_id")
        if platform is not None and (not provider_id or provider_id == platform.external_id):
            return platform
        if not provider_id:
            return None
        # cross-listed offer fulfilled by another platform
        other = self.platforms.find_by_external_id(provider_id)
        if other is None and offer.get("provider_name"):
            other = self.platforms.find_or_create(provider_id, offer["provider_name"])
        return other

    def _best_offers(self, title: dict, platform: Platform | None) -> list[tuple[Platform, dict]]:
        """One offer per (platform, monetization type): the highest quality tier wins."""
        best = {}
        for offer in title.get("offers") or []:
            offer_platform = self._offer_platform(offer, platform)
            if offer_platform is None:
                logger.debug("Skipping offer with unknown provider %s for %s",
                             offer.get("provider_id"), title.get("title"))
                continue
            key = (offer_platform.id, offer["monetization_type"])
            kept = best.get(key)
            rank = _QUALITY_RANK.get(offer.get("quality"), 0)
            if kept is None or rank > _QUALITY_RANK.get(kept[1].get("quality"), 0):
                best[key] = (offer_platform, offer)
        return list(best.values())

    def process_title(self, title: dict, platform: Platform | None) -> dict:
        """Upsert one normalized title and every offer it carries."""
        if not title.get("catalog_id"):
            raise ValueError("title without catalog id")

        movie, created = self.movies.upsert_from_catalog(title)
        result = {"movie": movie, "created": created, "availabilities_created": 0, "availabilities_updated": 0}

        for offer_platform, offer in self._best_offers(title, platform):
            _, is_new = self.availabilities.upsert(
                movie,
                offer_platform,
                offer["monetization_type"],
                quality=offer.get("quality"),
                price_amount=offer.get("price_amount"),
                price_currency=offer.get("price_currency"),
                external_url=offer.get("url"),
            )
            key = "availabilities_created" if is_new else "availabilities_updated"
            result[key] += 1
            AVAILABILITY_UPSERTS.labels("created" if is_new else "updated").inc()
        return result

    def refresh_title(self, catalog_id: str) -> dict | None:
        """Re-read a single title from the catalog and upsert it with its offers. No staleness sweep."""
        title = self.catalog.fetch_movie_details(catalog_id)
        if title is None:
            logger.warning("Title not found on catalog provider: %s", catalog_id)
            return None
        r = self.process_title(title, None)
        logger.info("Refreshed title %s (%s)", r["movie"].title, catalog_id)
        return {
            "catalog_id": str(catalog_id),
            "movie_id": r["movie"].id,
            "created": r["created"],
            "availabilities_created": r["availabilities_created"],
            "availabilities_updated": r["availabilities_updated"],
        }

    def ingest_platform(self, external_id: str, max_pages: int = 10) -> dict:
        platform = self.platforms.find_by_external_id(external_id)
        if platform is None:
            logger.error("Platform not found: %s", external_id)
            return {"platform_id": external_id, "error": "platform not found"}

        logger.info("Ingesting movies from platform: %s", platform.name)
        started_at = utcnow()
        stats = {
            "platform_id": external_id,
            "movies": 0,
            "movies_created": 0,
            "availabilities_created": 0,
            "availabilities_updated": 0,
            "marked_unavailable": 0,
            "errors": 0,
            "pages": 0,
        }

        page = 1
        has_more = True
        while has_more and page <= max_pages:
            logger.info("Fetching page %d for %s...", page, platform.name)
            response = self.catalog.fetch_titles_page(external_id, page)
            stats["pages"] += 1

            for title in response["items"]:
                try:
                    r = self.process_title(title, platform)
                except Exception as e:
                    db.session.rollback()
                    stats["errors"] += 1
                    logger.error("Error processing title %s on %s: %s", title.get("catalog_id"), platform.name, e)
                    continue
                stats["movies"] += 1
                stats["movies_created"] += int(r["created"])
                stats["availabilities_created"] += r["availabilities_created"]
                stats["availabilities_updated"] += r["availabilities_updated"]

            has_more = bool(response.get("has_more"))
            if not has_more:
                logger.info("Reached last page (%d) for %s", page, platform.name)
                break
            page += 1
            if page <= max_pages and self.page_delay:
                self._sleep(self.page_delay)

        if stats["pages"]:
            stats["marked_unavailable"] = self.availabilities.mark_stale_as_unavailable(platform.id, started_at)
        else:
            logger.warning("No pages fetched for %s, skipping staleness sweep", platform.name)
        logger.info(
            "Completed ingestion for %s: %d movies, %d new / %d refreshed availabilities",
            platform.name, stats["movies"], stats["availabilities_created"], stats["availabilities_updated"],
        )
        return stats

    def ingest_platforms(self, platform_ids: list[str], max_pages: int = 10) -> dict:
        logger.info("Starting ingestion from %d platforms...", len(platform_ids))
        results = []
        for i, platform_id in enumerate(platform_ids):
            try:
                results.append(self.ingest_platform(platform_id, max_pages))
            except Exception as e:
                db.session.rollback()
                logger.error("Failed to ingest from platform %s: %s", platform_id, e)
                results.append({"platform_id": platform_id, "error": str(e)})
            if self.platform_delay and i < len(platform_ids) - 1:
                self._sleep(self.platform_delay)

        summary = {
            "total_movies": sum(r.get("movies", 0) for r in results),
            "total_availabilities": sum(
                r.get("availabilities_created", 0) + r.get("availabilities_updated", 0) for r in results
            ),
            "total_marked_unavailable": sum(r.get("marked_unavailable", 0) for r in results),
            "errors": sum(1 for r in results if r.get("error")),
        }
        logger.info("Ingestion summary: %s", summary)
        return {"results": results, "summary": summary}

    def ingest_all_active(self, max_pages: int = 10) -> dict:
        platforms = self.platforms.find_all_active()
        if not platforms:
            logger.warning("No active platforms found")
            return {"results": [], "summary": {"total_movies": 0, "total_availabilities": 0,
                                               "total_marked_unavailable": 0, "errors": 0}}
        return self.ingest_platforms([p.external_id for p in platforms], max_pages)
