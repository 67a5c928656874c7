import logging
from datetime import date

from catalog_core.errors import UpstreamNotFound
from catalog_core.http_utils import ProviderClient

logger = logging.getLogger(__name__)

TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p"

STATUS_MAP = {
    "Rumored": "rumored",
    "Planned": "planned",
    "In Production": "in_production",
    "Post Production": "post_production",
    "Released": "released",
    "Canceled": "canceled",
}


def tmdb_poster_url(path: str | None, size: str = "w500") -> str | None:
    if not path:
        return None
    if path.startswith("/jw_poster_"):  # catalog-provider poster id, not hosted on TMDB
        return None
    return f"{TMDB_IMAGE_BASE}/{size}{path}"

def map_status(value) -> str:
    return STATUS_MAP.get(value, "released")

def extract_genres(raw: dict) -> list[dict]:
    genres = raw.get("genres") if isinstance(raw, dict) else None
    if not isinstance(genres, list):
        return []
    return [
        {"id": g["id"], "name": g.get("name") or str(g["id"])}
        for g in genres if isinstance(g, dict) and isinstance(g.get("id"), int)
    ]

def _release(raw: dict) -> tuple[date | None, int | None]:
    value = raw.get("release_date")
    if not isinstance(value, str) or len(value) < 10:
        return None, None
    try:
        d = date.fromisoformat(value[:10])
    except ValueError:
        return None, None
    return d, d.year

def normalize_movie_data(raw: dict) -> dict:
    """Canonical enrichment fields from a TMDB movie-details payload."""
    raw = raw if isinstance(raw, dict) else {}
    external = raw.get("external_ids") if isinstance(raw.get("external_ids"), dict) else {}
    release_date, release_year = _release(raw)
    return {
        "tmdb_id": raw.get("id") if isinstance(raw.get("id"), int) else None,
        "imdb_id": raw.get("imdb_id") or external.get("imdb_id") or None,
        "title": raw.get("title") or None,
        "original_title": raw.get("original_title") or None,
        "overview": raw.get("overview") or None,
        "tagline": raw.get("tagline") or None,
        "release_date": release_date,
        "release_year": release_year,
        "runtime": raw.get("runtime") or None,
        "poster_path": raw.get("poster_path") or None,
        "backdrop_path": raw.get("backdrop_path") or None,
        "vote_average": raw.get("vote_average") or 0,
        "vote_count": raw.get("vote_count") or 0,
        "popularity": raw.get("popularity") or 0,
        "status": map_status(raw.get("status")),
        "original_language": raw.get("original_language") or None,
        "genres": extract_genres(raw),
    }


class MetadataProvider(ProviderClient):
    provider = "tmdb"

    def __init__(self, base_url: str, api_key: str | None = None, token: str | None = None, **kwargs):
        kwargs.setdefault("timeout", 10)
        super().__init__(base_url, **kwargs)
        self.api_key = api_key
        self.token = token

    def _prepare(self, params):
        params = dict(params or {})
        headers = {"accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.api_key:
            params = {"api_key": self.api_key, **params}
        else:
            raise RuntimeError("TMDB_API_KEY or TMDB_TOKEN must be configured")
        return headers, params

    def fetch_movie_details(self, tmdb_id: int) -> dict | None:  # raw details, None when TMDB has no such id
        logger.debug("Fetching TMDB details for movie %s", tmdb_id)
        try:
            return self._request("GET", f"/movie/{tmdb_id}", {"append_to_response": "external_ids"})
        except UpstreamNotFound:
            return None

    def find_by_imdb_id(self, imdb_id: str) -> dict | None:
        try:
            data = self._request("GET", f"/find/{imdb_id}", {"external_source": "imdb_id"})
        except UpstreamNotFound:
            return None
        results = data.get("movie_results") or []
        return results[0] if results else None

    def search_movie(self, title: str, year: int | None = None) -> list[dict]:  # searching movies by title
        params = {"query": title, "include_adult": False}
        if year:
            params["year"] = year
        try:
            data = self._request("GET", "/search/movie", params)
        except Exception as e:
            logger.error("Error searching TMDB for %r: %s", title, e)
            return []
        return data.get("results") or []

    def fetch_genres(self) -> list[dict]:  # list of all tmdb genres
        try:
            data = self._request("GET", "/genre/movie/list")
        except Exception as e:
            logger.error("Error fetching TMDB genres: %s", e)
            return []
        return extract_genres(data)

    normalize_movie_data = staticmethod(normalize_movie_data)
    extract_genres = staticmethod(extract_genres)
