import logging
import time

from models import db, Genre, Movie
from .metrics import ENRICHMENT_RESULTS
from .repositories import GenreRepository, MovieRepository

logger = logging.getLogger(__name__)

BACKFILL_FIELDS = ("genres", "runtime")


class MetadataEnrichment:
    """Fills overview, runtime, ratings and genres of catalog movies from the metadata provider."""

    def __init__(self, metadata, genres: GenreRepository | None = None, movies: MovieRepository | None = None,
                 batch_size: int = 10, batch_delay: float = 1.0, sleep=time.sleep):
        self.metadata = metadata
        self.genres = genres or GenreRepository()
        self.movies = movies or MovieRepository()
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._sleep = sleep

    def sync_genres(self) -> list[dict]:
        logger.info("Syncing genres from TMDB...")
        genres = self.metadata.fetch_genres()
        if not genres:
            logger.warning("No genres fetched from TMDB")
            return []
        self.genres.bulk_upsert(genres)
        logger.info("Synced %d genres from TMDB", len(genres))
        return genres

    def _resolve_details(self, movie: Movie) -> dict | None:
        # 1. known TMDB id, 2. IMDb cross-reference, 3. title + year search
        if movie.tmdb_id:
            details = self.metadata.fetch_movie_details(movie.tmdb_id)
            if details:
                return details

        if movie.imdb_id:
            found = self.metadata.find_by_imdb_id(movie.imdb_id)
            if found and found.get("id"):
                details = self.metadata.fetch_movie_details(found["id"])
                if details:
                    return details

        results = self.metadata.search_movie(movie.title, movie.release_year)
        if results and results[0].get("id"):
            return self.metadata.fetch_movie_details(results[0]["id"])
        return None

    def resolve_genres(self, genres: list[dict]) -> list[Genre]:
        return [self.genres.find_or_create(g["id"], g["name"]) for g in genres]

    def enrich_movie(self, movie: Movie) -> Movie | None:
        """Returns the enriched movie, or None when no metadata match was found."""
        logger.debug("Enriching movie: %s (%s)", movie.title, movie.id)
        details = self._resolve_details(movie)
        if not details:
            logger.warning("Could not find TMDB data for movie: %s", movie.title)
            return None

        data = self.metadata.normalize_movie_data(details)
        genres = self.resolve_genres(data.get("genres") or [])
        enriched = self.movies.apply_enrichment(movie, data, genres)
        logger.info("Successfully enriched movie: %s", enriched.title)
        return enriched

    def _in_batches(self, items: list):
        """Yield (number, total, batch); sleeps batch_delay between batches."""
        starts = range(0, len(items), self.batch_size)
        for n, start in enumerate(starts, 1):
            yield n, len(starts), items[start:start + self.batch_size]
            if self.batch_delay and n < len(starts):
                self._sleep(self.batch_delay)

    def enrich_movies(self, movies: list[Movie]) -> dict:
        logger.info("Starting batch enrichment for %d movies...", len(movies))
        enriched = failed = 0

        for n, total, batch in self._in_batches(movies):
            logger.info("Enriching batch %d/%d", n, total)
            for movie in batch:
                try:
                    ok = self.enrich_movie(movie) is not None
                except Exception as e:
                    db.session.rollback()
                    logger.error("Error enriching movie %s: %s", movie.title, e)
                    ok = False
                if ok:
                    enriched += 1
                else:
                    failed += 1
                ENRICHMENT_RESULTS.labels("enriched" if ok else "failed").inc()

        logger.info("Batch enrichment complete: %d enriched, %d failed", enriched, failed)
        return {"enriched": enriched, "failed": failed}

    def enrich_pending_movies(self, limit: int = 50) -> dict:
        logger.info("Finding movies that need enrichment...")
        movies = self.movies.find_needing_enrichment(limit)
        if not movies:
            logger.info("No movies need enrichment")
            return {"enriched": 0, "failed": 0}
        logger.info("Found %d movies needing enrichment", len(movies))
        return self.enrich_movies(movies)

    def backfill_missing(self, field: str, limit: int | None = None) -> dict:
        """
        Repair movies that have a TMDB id but no runtime (field="runtime") or
        no genres (field="genres"), by re-fetching their TMDB details. Only the
        missing field is written.
        """
        if field not in BACKFILL_FIELDS:
            raise ValueError(f"field must be one of {BACKFILL_FIELDS}")
        movies = self.movies.find_missing_details(field, limit)
        logger.info("Found %d movies without %s", len(movies), field)
        updated = failed = 0

        for _, _, batch in self._in_batches(movies):
            for movie in batch:
                try:
                    details = self.metadata.fetch_movie_details(movie.tmdb_id)
                    if not details:
                        failed += 1
                        continue
                    data = self.metadata.normalize_movie_data(details)
                    if field == "runtime":
                        changed = self.movies.backfill_details(movie, runtime=data.get("runtime"))
                    else:
                        genres = self.resolve_genres(data.get("genres") or [])
                        changed = self.movies.backfill_details(movie, genres=genres)
                except Exception as e:
                    db.session.rollback()
                    logger.error("Error backfilling %s for %s: %s", field, movie.title, e)
                    failed += 1
                    continue
                if changed:
                    updated += 1
                    logger.info("Updated %s of %s", field, movie.title)

        logger.info("Updated %d movies with %s", updated, field)
        return {"field": field, "checked": len(movies), "updated": updated, "failed": failed}
