import os, sys, pytest

# allow importing the top-level modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import requests

from app import create_app
from catalog_api import normalize_title
from catalog_core.config import IngestionConfig
from models import db


def make_config(**overrides):
    base = dict(
        schedule_enabled=False,
        page_delay_ms=0,
        platform_delay_ms=0,
        batch_delay_ms=0,
        max_retries=0,
        retry_delay_ms=0,
        tmdb_api_key="test-key",
    )
    base.update(overrides)
    return IngestionConfig(**base)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    # using a temp sqlite db for testing
    monkeypatch.setenv("SECRET_KEY", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    # ensure auth is disabled for the default tests
    monkeypatch.delenv("API_TOKEN", raising=False)

    app = create_app(make_config())
    app.config.update(TESTING=True, API_TOKEN=None)
    with app.app_context():
        db.drop_all(); db.create_all()
        yield app
        # teardown: close sessions and dispose engine to silence ResourceWarnings
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


# ---- fake HTTP plumbing ----

class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    """Hands out queued responses (or raises queued exceptions) and records calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        pass


# ---- fake providers ----

def raw_title(jw_id, title, offers=(), year=2020, **extra):
    return {
        "id": jw_id,
        "title": title,
        "original_release_year": year,
        "poster": f"/poster/{jw_id}/s592",
        "offers": list(offers),
        **extra,
    }

def raw_offer(provider_id, monetization="flatrate", name=None, quality="hd", url=None):
    offer = {
        "provider_id": provider_id,
        "monetization_type": monetization,
        "presentation_type": quality,
        "urls": {"standard_web": url or f"https://watch.example/{provider_id}"},
    }
    if name:
        offer["provider"] = {"name": name}
    return offer


class FakeCatalog:
    def __init__(self, providers=None, pages=None, failing=(), details=None):
        self.providers = providers or []
        self.details = details or {}    # catalog id -> raw title
        self.pages = pages or {}        # provider id -> list of lists of raw titles
        self.failing = set(failing)     # provider ids whose page fetch raises
        self.page_calls = []

    def fetch_providers(self):
        return list(self.providers)

    def fetch_titles_page(self, provider_id, page=1):
        self.page_calls.append((provider_id, page))
        if provider_id in self.failing:
            raise requests.ConnectionError("catalog unreachable")
        pages = self.pages.get(provider_id, [])
        raw = pages[page - 1] if page <= len(pages) else []
        return {
            "items": [normalize_title(r) for r in raw],
            "page": page,
            "total_pages": len(pages),
            "has_more": bool(raw) and page < len(pages),
        }

    def fetch_movie_details(self, catalog_id):
        raw = self.details.get(str(catalog_id))
        return normalize_title(raw) if raw else None


def tmdb_details(tmdb_id, title, genres=((878, "Science Fiction"),), **extra):
    return {
        "id": tmdb_id,
        "imdb_id": extra.pop("imdb_id", None),
        "title": title,
        "original_title": title,
        "overview": f"{title} overview",
        "tagline": f"{title} tagline",
        "release_date": "1999-03-31",
        "runtime": 136,
        "poster_path": f"/{tmdb_id}.jpg",
        "vote_average": 8.2,
        "vote_count": 25000,
        "popularity": 80.5,
        "status": "Released",
        "original_language": "en",
        "genres": [{"id": gid, "name": name} for gid, name in genres],
        **extra,
    }


class FakeMetadata:
    def __init__(self, details=None, imdb=None, search=None, genres=None):
        self.details = details or {}    # tmdb id -> raw details
        self.imdb = imdb or {}          # imdb id -> tmdb id
        self.search = search or {}      # title -> list of tmdb ids
        self.genres = genres or []
        self.calls = []

    def fetch_movie_details(self, tmdb_id):
        self.calls.append(("details", tmdb_id))
        return self.details.get(tmdb_id)

    def find_by_imdb_id(self, imdb_id):
        self.calls.append(("imdb", imdb_id))
        tmdb_id = self.imdb.get(imdb_id)
        return {"id": tmdb_id} if tmdb_id else None

    def search_movie(self, title, year=None):
        self.calls.append(("search", title, year))
        return [{"id": i} for i in self.search.get(title, [])]

    def fetch_genres(self):
        return list(self.genres)

    @staticmethod
    def normalize_movie_data(raw):
        from metadata_api import normalize_movie_data
        return normalize_movie_data(raw)
