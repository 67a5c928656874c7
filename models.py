import re
from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

MONETIZATION_TYPES = ("flatrate", "rent", "buy", "ads", "free")
QUALITY_TIERS = ("SD", "HD", "UHD", "4K", "unknown")
MOVIE_STATUSES = ("rumored", "planned", "in_production", "post_production", "released", "canceled")

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def utcnow() -> datetime:
    # naive UTC, matching what sqlite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def slugify(name: str | None) -> str:
    """Lowercase, collapse every non-alphanumeric run to '-', strip the edges."""
    return _SLUG_SEPARATORS.sub("-", (name or "").lower()).strip("-")


#table of association
movie_genre = db.Table(
    "movie_genre",
    db.Column("movie_id", db.Integer, db.ForeignKey("movie.id"), primary_key=True),
    db.Column("genre_id", db.Integer, db.ForeignKey("genre.id"), primary_key=True),
)

class Platform(db.Model): #streaming service
    __tablename__ = "platform"
    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(64), nullable=False, unique=True, index=True)  # catalog provider id
    name = db.Column(db.String(128), nullable=False, index=True)
    slug = db.Column(db.String(160), nullable=False, unique=True)
    icon = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Platform {self.external_id} {self.name!r}>"

class Genre(db.Model):
    __tablename__ = "genre"
    id = db.Column(db.Integer, primary_key=True)      # local id
    tmdb_id = db.Column(db.Integer, unique=True, nullable=False)      # TMDB genre id
    name = db.Column(db.String(64), nullable=False)
    slug = db.Column(db.String(96), nullable=False, unique=True)

    def __repr__(self):
        return f"<Genre {self.name}>"

class Movie(db.Model): #canonical title record
    __tablename__ = "movie"
    id = db.Column(db.Integer, primary_key=True)
    catalog_id = db.Column(db.String(64), nullable=False, unique=True, index=True)  # catalog provider id
    tmdb_id = db.Column(db.Integer, unique=True, nullable=True)  # sparse until enriched
    imdb_id = db.Column(db.String(16), nullable=True, index=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    original_title = db.Column(db.String(255))
    overview = db.Column(db.Text, nullable=True)
    tagline = db.Column(db.String(512), nullable=True)
    release_date = db.Column(db.Date, nullable=True)
    release_year = db.Column(db.Integer, nullable=True, index=True)
    runtime = db.Column(db.Integer, nullable=True)             # minutes
    poster_path = db.Column(db.String(255), nullable=True)
    backdrop_path = db.Column(db.String(255), nullable=True)
    vote_average = db.Column(db.Float, nullable=True)
    vote_count = db.Column(db.Integer, default=0, nullable=False)
    popularity = db.Column(db.Float, default=0, nullable=False)
    status = db.Column(db.Enum(*MOVIE_STATUSES, name="movie_status"), default="released", nullable=False)
    original_language = db.Column(db.String(8), nullable=True)
    is_enriched = db.Column(db.Boolean, default=False, nullable=False, index=True)
    last_enriched_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    genres = db.relationship("Genre", secondary=movie_genre, lazy="selectin") #many-to-many relationship with the genres
    availabilities = db.relationship("Availability", back_populates="movie", lazy="select")

    def __repr__(self):
        return f"<Movie {self.id} {self.title!r}>" #rep of the movie object

class Availability(db.Model): #one offer of a movie on a platform
    __tablename__ = "availability"
    __table_args__ = (
        db.UniqueConstraint("movie_id", "platform_id", "monetization_type", name="uq_availability_offer"),
        db.Index("ix_availability_platform_sweep", "platform_id", "is_available", "last_seen_at"),
    )
    id = db.Column(db.Integer, primary_key=True)
    movie_id = db.Column(db.Integer, db.ForeignKey("movie.id"), nullable=False, index=True)
    platform_id = db.Column(db.Integer, db.ForeignKey("platform.id"), nullable=False, index=True)
    monetization_type = db.Column(db.Enum(*MONETIZATION_TYPES, name="monetization_type"), nullable=False)
    quality = db.Column(db.Enum(*QUALITY_TIERS, name="quality_tier"), default="unknown", nullable=False)
    price_amount = db.Column(db.Float, nullable=True)
    price_currency = db.Column(db.String(3), nullable=True)
    is_available = db.Column(db.Boolean, default=True, nullable=False)
    first_seen_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_seen_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_unavailable_at = db.Column(db.DateTime, nullable=True)
    external_url = db.Column(db.String(512), nullable=True)

    movie = db.relationship("Movie", back_populates="availabilities")
    platform = db.relationship("Platform", lazy="joined")

    def __repr__(self):
        return f"<Availability movie={self.movie_id} platform={self.platform_id} {self.monetization_type}>"
