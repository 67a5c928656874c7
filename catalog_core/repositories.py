"""
Storage operations for the catalog entities. Lookups go through natural keys
(external ids, the availability offer triple); inserts run inside a SAVEPOINT
so a concurrent duplicate insert is resolved by re-querying the winner.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from models import db, utcnow, slugify, Platform, Genre, Movie, Availability

logger = logging.getLogger(__name__)

M = TypeVar("M")


def _insert_or_refetch(obj: M, refetch: Callable[[], M | None]) -> tuple[M, bool]:
    """Add obj in a savepoint; on a unique violation return whatever row won the race."""
    try:
        with db.session.begin_nested():
            db.session.add(obj)
    except IntegrityError:
        existing = refetch()
        if existing is None:
            raise
        return existing, False
    return obj, True


def _free_slug(model, base: str, external_id, prefix: str, exclude_id: int | None = None) -> str:
    """Derived slug, or "<prefix>-<external_id>" when empty; the external id is appended on collision."""
    slug = base or f"{prefix}-{external_id}"
    taken = db.session.execute(select(model.id).where(model.slug == slug)).scalar_one_or_none()
    if taken is not None and taken != exclude_id:
        slug = f"{slug}-{external_id}"
    return slug


class PlatformRepository:
    def find_by_external_id(self, external_id: str) -> Platform | None:
        return db.session.execute(
            select(Platform).where(Platform.external_id == str(external_id))
        ).scalar_one_or_none()

    def find_by_slug(self, slug: str) -> Platform | None:
        return db.session.execute(select(Platform).where(Platform.slug == slug)).scalar_one_or_none()

    def _create(self, external_id: str, name: str, icon: str | None) -> tuple[Platform, bool]:
        external_id = str(external_id)
        slug = _free_slug(Platform, slugify(name), external_id, "platform")
        platform = Platform(external_id=external_id, name=name, slug=slug, icon=icon, is_active=True)
        return _insert_or_refetch(platform, lambda: self.find_by_external_id(external_id))

    def find_or_create(self, external_id: str, name: str, icon: str | None = None) -> Platform:
        existing = self.find_by_external_id(external_id)
        if existing:
            return existing
        platform, created = self._create(external_id, name, icon)
        db.session.commit()
        if created:
            logger.debug("Created new platform: %s (%s)", platform.name, platform.external_id)
        return platform

    def bulk_upsert(self, descriptors: Iterable[dict]) -> list[Platform]:
        """Create unseen platforms; backfill icon/slug on known ones. Names stay as first seen."""
        platforms = []
        for d in descriptors:
            existing = self.find_by_external_id(d["id"])
            if existing is None:
                platform, _ = self._create(d["id"], d["name"], d.get("icon"))
            else:
                platform = existing
                if not platform.icon and d.get("icon"):
                    platform.icon = d["icon"]
                if not platform.slug:
                    platform.slug = _free_slug(Platform, slugify(platform.name), platform.external_id, "platform", platform.id)
            platforms.append(platform)
        db.session.commit()
        return platforms

    def find_all_active(self) -> list[Platform]:
        return list(db.session.execute(
            select(Platform).where(Platform.is_active.is_(True)).order_by(Platform.name)
        ).scalars())

    def find_all(self) -> list[Platform]:
        return list(db.session.execute(select(Platform).order_by(Platform.name)).scalars())

    def deactivate(self, platform: Platform) -> Platform:
        platform.is_active = False
        db.session.commit()
        return platform


class GenreRepository:
    def find_by_external_id(self, tmdb_id: int) -> Genre | None:
        return db.session.execute(select(Genre).where(Genre.tmdb_id == tmdb_id)).scalar_one_or_none()

    def find_by_slug(self, slug: str) -> Genre | None:
        return db.session.execute(select(Genre).where(Genre.slug == slug)).scalar_one_or_none()

    def _create(self, tmdb_id: int, name: str) -> tuple[Genre, bool]:
        slug = _free_slug(Genre, slugify(name), tmdb_id, "genre")
        genre = Genre(tmdb_id=tmdb_id, name=name, slug=slug)
        return _insert_or_refetch(genre, lambda: self.find_by_external_id(tmdb_id))

    def find_or_create(self, tmdb_id: int, name: str) -> Genre:
        existing = self.find_by_external_id(tmdb_id)
        if existing:
            return existing
        genre, created = self._create(tmdb_id, name)
        db.session.commit()
        if created:
            logger.debug("Created new genre: %s", genre.name)
        return genre

    def bulk_upsert(self, genres: Iterable[dict]) -> list[Genre]:
        """Keyed by TMDB genre id; an existing genre only gets its name corrected."""
        rows = []
        for g in genres:
            existing = self.find_by_external_id(g["id"])
            if existing is None:
                genre, _ = self._create(g["id"], g["name"])
            else:
                genre = existing
                if g["name"] and genre.name != g["name"]:
                    genre.name = g["name"]
            rows.append(genre)
        db.session.commit()
        return rows

    def find_all(self) -> list[Genre]:
        return list(db.session.execute(select(Genre).order_by(Genre.name)).scalars())


# catalog sync may only touch these; everything else belongs to enrichment
CATALOG_FIELDS = ("title", "original_title", "release_year")
CROSS_REFERENCE_FIELDS = ("tmdb_id", "imdb_id")
# filled from the catalog feed on first sighting
CREATE_FIELDS = ("title", "original_title", "release_year", "release_date", "poster_path", "backdrop_path")
ENRICHMENT_FIELDS = (
    "overview", "tagline", "runtime", "vote_average", "vote_count", "popularity",
    "status", "original_language",
)


class MovieRepository:
    def find_by_external_id(self, catalog_id: str) -> Movie | None:
        return db.session.execute(
            select(Movie).where(Movie.catalog_id == str(catalog_id))
        ).scalar_one_or_none()

    def find_by_tmdb_id(self, tmdb_id: int) -> Movie | None:
        return db.session.execute(select(Movie).where(Movie.tmdb_id == tmdb_id)).scalar_one_or_none()

    def _claimable(self, field: str, value, movie_id: int | None) -> bool:
        """True when no other movie already holds this cross-reference id."""
        if value is None:
            return False
        if field == "imdb_id":
            return True
        owner = self.find_by_tmdb_id(value)
        return owner is None or owner.id == movie_id

    def _build(self, data: dict) -> Movie:
        catalog_id = str(data["catalog_id"])
        movie = Movie(catalog_id=catalog_id)
        for f in CREATE_FIELDS:
            if data.get(f) is not None:
                setattr(movie, f, data[f])
        movie.title = movie.title or catalog_id
        for f in CROSS_REFERENCE_FIELDS:
            if self._claimable(f, data.get(f), None):
                setattr(movie, f, data[f])
        return movie

    def find_or_create(self, data: dict) -> tuple[Movie, bool]:
        existing = self.find_by_external_id(data["catalog_id"])
        if existing:
            return existing, False
        movie, created = _insert_or_refetch(self._build(data), lambda: self.find_by_external_id(data["catalog_id"]))
        db.session.commit()
        return movie, created

    def upsert_from_catalog(self, data: dict) -> tuple[Movie, bool]:
        """
        Create the movie on first sighting. On later sightings only the catalog
        fields move, and cross-reference ids are backfilled when still empty;
        enriched fields are never overwritten here.
        """
        movie, created = self.find_or_create(data)
        if created:
            logger.debug("Created new movie: %s", movie.title)
            return movie, True

        for f in CATALOG_FIELDS:
            if data.get(f) is not None:
                setattr(movie, f, data[f])
        for f in CROSS_REFERENCE_FIELDS:
            if getattr(movie, f) is None and self._claimable(f, data.get(f), movie.id):
                setattr(movie, f, data[f])
        db.session.commit()
        return movie, False

    def apply_enrichment(self, movie: Movie, data: dict, genres: list[Genre]) -> Movie:
        for f in ENRICHMENT_FIELDS:
            if data.get(f) is not None:
                setattr(movie, f, data[f])
        for f in ("original_title", "release_date", "release_year", "poster_path", "backdrop_path"):
            if getattr(movie, f) is None and data.get(f) is not None:
                setattr(movie, f, data[f])
        # TMDB posters replace catalog poster ids, which are not servable
        if data.get("poster_path") and (movie.poster_path or "").startswith("/jw_poster_"):
            movie.poster_path = data["poster_path"]
        for f in CROSS_REFERENCE_FIELDS:
            if getattr(movie, f) is None and self._claimable(f, data.get(f), movie.id):
                setattr(movie, f, data[f])
        if genres:
            movie.genres = genres
        movie.is_enriched = True
        movie.last_enriched_at = utcnow()
        db.session.commit()
        return movie

    def find_needing_enrichment(self, limit: int = 50) -> list[Movie]:
        return list(db.session.execute(
            select(Movie)
            .where(Movie.is_enriched.is_(False))
            .order_by(Movie.created_at.asc(), Movie.id.asc())
            .limit(limit)
        ).scalars())

    def find_missing_details(self, field: str, limit: int | None = None) -> list[Movie]:
        """Movies with a TMDB id whose runtime or genre list is still empty."""
        stmt = select(Movie).where(Movie.tmdb_id.is_not(None))
        if field == "runtime":
            stmt = stmt.where(Movie.runtime.is_(None))
        elif field == "genres":
            stmt = stmt.where(~Movie.genres.any())
        else:
            raise ValueError(f"unknown backfill field {field!r}")
        stmt = stmt.order_by(Movie.created_at.asc(), Movie.id.asc())
        if limit:
            stmt = stmt.limit(limit)
        return list(db.session.execute(stmt).scalars())

    def backfill_details(self, movie: Movie, runtime: int | None = None, genres: list[Genre] | None = None) -> bool:
        # only empty values are filled; returns whether anything changed
        changed = False
        if movie.runtime is None and runtime:
            movie.runtime = runtime
            changed = True
        if not movie.genres and genres:
            movie.genres = genres
            changed = True
        if changed:
            db.session.commit()
        return changed

    def statistics(self) -> dict:
        total = db.session.execute(select(func.count(Movie.id))).scalar_one()
        enriched = db.session.execute(
            select(func.count(Movie.id)).where(Movie.is_enriched.is_(True))
        ).scalar_one()
        return {"total": total, "enriched": enriched, "needing_enrichment": total - enriched}


class AvailabilityRepository:
    def find_one(self, movie_id: int, platform_id: int, monetization_type: str) -> Availability | None:
        return db.session.execute(
            select(Availability).where(
                Availability.movie_id == movie_id,
                Availability.platform_id == platform_id,
                Availability.monetization_type == monetization_type,
            )
        ).scalar_one_or_none()

    def _refresh(self, row: Availability, quality, price_amount, price_currency, external_url, now):
        row.quality = quality or row.quality or "unknown"
        row.price_amount = price_amount
        row.price_currency = price_currency
        row.external_url = external_url
        row.is_available = True
        row.last_seen_at = now

    def upsert(self, movie: Movie, platform: Platform, monetization_type: str, quality: str | None = None,
               price_amount: float | None = None, price_currency: str | None = None,
               external_url: str | None = None) -> tuple[Availability, bool]:
        """Match on (movie, platform, monetization_type); refresh it or insert a new offer."""
        now = utcnow()
        row = self.find_one(movie.id, platform.id, monetization_type)
        created = False
        if row is None:
            row, created = _insert_or_refetch(
                Availability(
                    movie_id=movie.id,
                    platform_id=platform.id,
                    monetization_type=monetization_type,
                    quality=quality or "unknown",
                    price_amount=price_amount,
                    price_currency=price_currency,
                    external_url=external_url,
                    is_available=True,
                    first_seen_at=now,
                    last_seen_at=now,
                ),
                lambda: self.find_one(movie.id, platform.id, monetization_type),
            )
        if not created:
            self._refresh(row, quality, price_amount, price_currency, external_url, now)
        db.session.commit()
        return row, created

    def mark_stale_as_unavailable(self, platform_id: int, cutoff: datetime) -> int:
        """Offers of this platform not seen since cutoff are flipped to unavailable."""
        result = db.session.execute(
            update(Availability)
            .where(
                Availability.platform_id == platform_id,
                Availability.is_available.is_(True),
                Availability.last_seen_at < cutoff,
            )
            .values(is_available=False, last_unavailable_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        db.session.commit()
        count = result.rowcount or 0
        logger.info("Marked %d availabilities as unavailable for platform %s", count, platform_id)
        return count

    def find_by_movie(self, movie_id: int, include_unavailable: bool = False) -> list[Availability]:
        stmt = select(Availability).where(Availability.movie_id == movie_id)
        if not include_unavailable:
            stmt = stmt.where(Availability.is_available.is_(True))
        stmt = stmt.order_by(Availability.platform_id, Availability.monetization_type)
        return list(db.session.execute(stmt).scalars())

    def statistics(self) -> dict:
        total = db.session.execute(select(func.count(Availability.id))).scalar_one()
        available = db.session.execute(
            select(func.count(Availability.id)).where(Availability.is_available.is_(True))
        ).scalar_one()
        by_platform = db.session.execute(
            select(Platform.name, func.count(Availability.id))
            .join(Platform, Platform.id == Availability.platform_id)
            .where(Availability.is_available.is_(True))
            .group_by(Platform.name)
            .order_by(func.count(Availability.id).desc())
        ).all()
        return {
            "total": total,
            "available": available,
            "unavailable": total - available,
            "by_platform": [{"platform": name, "count": count} for name, count in by_platform],
        }
