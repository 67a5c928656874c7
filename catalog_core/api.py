from flask import Blueprint, request, abort
from sqlalchemy import func, select

from models import db, Movie, Availability
from metadata_api import tmdb_poster_url
from .errors import validate_pagination
from .query_utils import build_movie_query
from .repositories import (
    AvailabilityRepository, GenreRepository, MovieRepository, PlatformRepository
)

api_bp = Blueprint("api", __name__, url_prefix="/api")  # read-only catalog routes

def _iso(dt):
    return dt.isoformat() if dt else None

def movie_to_dict(m: Movie):
    return {
        "id": m.id,
        "catalog_id": m.catalog_id,
        "tmdb_id": m.tmdb_id,
        "imdb_id": m.imdb_id,
        "title": m.title,
        "original_title": m.original_title,
        "release_year": m.release_year,
        "overview": m.overview,
        "runtime": m.runtime,
        "vote_average": m.vote_average,
        "vote_count": m.vote_count,
        "popularity": m.popularity,
        "status": m.status,
        "poster_url": tmdb_poster_url(m.poster_path),
        "genres": [g.name for g in m.genres],
        "is_enriched": m.is_enriched,
    }

def availability_to_dict(a: Availability):
    return {
        "platform": {"name": a.platform.name, "slug": a.platform.slug, "icon": a.platform.icon},
        "monetization_type": a.monetization_type,
        "quality": a.quality,
        "price": {"amount": a.price_amount, "currency": a.price_currency} if a.price_amount is not None else None,
        "url": a.external_url,
        "first_seen_at": _iso(a.first_seen_at),
        "last_seen_at": _iso(a.last_seen_at),
    }

@api_bp.get("/health")
def health():
    return {"ok": True}

@api_bp.get("/movies")
def list_movies():
    page, page_size = validate_pagination()
    stmt = build_movie_query(request.args)
    total = db.session.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    items = db.session.execute(stmt.offset((page - 1) * page_size).limit(page_size)).scalars().all()
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "items": [movie_to_dict(m) for m in items],
    }

@api_bp.get("/movies/<int:movie_id>")
def get_movie(movie_id):
    m = db.session.get(Movie, movie_id)
    if m is None:
        abort(404, "movie not found")
    include_all = request.args.get("include_unavailable") == "true"
    offers = AvailabilityRepository().find_by_movie(m.id, include_unavailable=include_all)
    return movie_to_dict(m) | {
        "tagline": m.tagline,
        "backdrop_url": tmdb_poster_url(m.backdrop_path, size="w1280"),
        "availabilities": [availability_to_dict(a) for a in offers],
    }

@api_bp.get("/genres")
def list_genres():
    return {"items": [{"id": g.id, "name": g.name, "slug": g.slug} for g in GenreRepository().find_all()]}

@api_bp.get("/platforms")
def list_platforms():
    repo = PlatformRepository()
    platforms = repo.find_all() if request.args.get("all") == "true" else repo.find_all_active()
    return {"items": [
        {"id": p.id, "external_id": p.external_id, "name": p.name, "slug": p.slug,
         "icon": p.icon, "is_active": p.is_active}
        for p in platforms
    ]}

@api_bp.get("/statistics")
def statistics():
    return {
        "movies": MovieRepository().statistics(),
        "availabilities": AvailabilityRepository().statistics(),
    }
