from sqlalchemy import select
from werkzeug.exceptions import NotFound

from models import Movie, Availability, movie_genre
from .errors import (
    validate_order_param, parse_year, parse_min_rating, parse_monetization
)
from .repositories import GenreRepository, PlatformRepository

DEFAULT_MONETIZATION = ["flatrate", "free", "ads"]

def build_movie_query(req_args):
    """Filtered, ordered SELECT over movies from request query args."""
    stmt = select(Movie)

    q = (req_args.get("q") or "").strip()
    genre_slug = (req_args.get("genre") or "").strip()
    platform_slug = (req_args.get("platform") or "").strip()
    year = parse_year(req_args.get("year"))
    min_rating = parse_min_rating(req_args.get("min_rating"))
    order = validate_order_param()

    if q:
        stmt = stmt.where(Movie.title.ilike(f"%{q}%"))
    if year:
        stmt = stmt.where(Movie.release_year == year)
    if min_rating is not None:
        stmt = stmt.where(Movie.vote_average >= min_rating)

    if genre_slug:
        genre = GenreRepository().find_by_slug(genre_slug)
        if genre is None:
            raise NotFound(f"genre {genre_slug!r} not found")
        stmt = stmt.where(Movie.id.in_(select(movie_genre.c.movie_id).where(movie_genre.c.genre_id == genre.id)))

    if platform_slug:
        platform = PlatformRepository().find_by_slug(platform_slug)
        if platform is None:
            raise NotFound(f"platform {platform_slug!r} not found")
        types = parse_monetization(req_args.get("monetization")) or DEFAULT_MONETIZATION
        offers = select(Availability.movie_id).where(
            Availability.platform_id == platform.id,
            Availability.is_available.is_(True),
            Availability.monetization_type.in_(types),
        )
        stmt = stmt.where(Movie.id.in_(offers))

    if order == "title":
        stmt = stmt.order_by(Movie.title.asc())
    elif order == "rating":
        stmt = stmt.order_by(Movie.vote_average.asc().nulls_last())
    elif order == "-rating":
        stmt = stmt.order_by(Movie.vote_average.desc().nulls_last())
    elif order == "year":
        stmt = stmt.order_by(Movie.release_year.asc().nulls_last())
    elif order == "-year":
        stmt = stmt.order_by(Movie.release_year.desc().nulls_last())
    elif order == "popularity":
        stmt = stmt.order_by(Movie.popularity.asc())
    elif order == "-created_at":
        stmt = stmt.order_by(Movie.created_at.desc())
    else:
        stmt = stmt.order_by(Movie.popularity.desc(), Movie.id.asc())

    return stmt
