"""
Catalog provider client: platform list and per-platform pages of titles with
their offers, normalized into the shapes the ingestion pipeline consumes.
"""
import logging
import re
from datetime import date

from catalog_core.errors import UpstreamNotFound
from catalog_core.http_utils import ProviderClient
from models import MONETIZATION_TYPES

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 30

_POSTER_ID = re.compile(r"/poster/(\d+)")
_QUALITY_MAP = {"sd": "SD", "hd": "HD", "uhd": "UHD", "4k": "4K"}


def _parse_date(value) -> date | None:
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None

def _as_str(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)

def _as_int(value) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None

def _as_float(value) -> float | None:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def normalize_poster_path(poster) -> str | None:
    # "/poster/{id}/{profile}" -> "/jw_poster_{id}"
    if not poster or not isinstance(poster, str):
        return None
    if "/poster/" in poster:
        m = _POSTER_ID.search(poster)
        return f"/jw_poster_{m.group(1)}" if m else None
    return poster

def _first_backdrop(raw: dict) -> str | None:
    backdrops = raw.get("backdrops")
    if not isinstance(backdrops, list) or not backdrops:
        return None
    first = backdrops[0]
    if isinstance(first, dict):
        first = first.get("backdrop_url")
    return first if isinstance(first, str) and first else None

def map_monetization_type(value) -> str:
    """'FLATRATE_AND_BUY' -> 'flatrate'; unknown values fall back to flatrate."""
    if not isinstance(value, str):
        return "flatrate"
    v = value.strip().lower()
    if v in MONETIZATION_TYPES:
        return v
    for token in v.split("_"):
        if token in MONETIZATION_TYPES:
            return token
    return "flatrate"

def map_quality(value) -> str:
    if not isinstance(value, str):
        return "unknown"
    return _QUALITY_MAP.get(value.strip().lower(), "unknown")


def normalize_movie_data(raw: dict) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    external = raw.get("external_ids") if isinstance(raw.get("external_ids"), dict) else {}
    release_date = _parse_date(raw.get("release_date")) or _parse_date(raw.get("cinema_release_date"))
    release_year = _as_int(raw.get("original_release_year"))
    if release_year is None and release_date:
        release_year = release_date.year

    title = raw.get("title") or None
    return {
        "catalog_id": _as_str(raw.get("id")),
        "title": title,
        "original_title": raw.get("original_title") or title,
        "release_year": release_year,
        "release_date": release_date,
        "poster_path": normalize_poster_path(raw.get("poster")),
        "backdrop_path": normalize_poster_path(_first_backdrop(raw)),
        "tmdb_id": _as_int(external.get("tmdb_id")),
        "imdb_id": _as_str(external.get("imdb_id")),
    }

def extract_offers(raw: dict) -> list[dict]:
    offers = raw.get("offers") if isinstance(raw, dict) else None
    if not isinstance(offers, list):
        return []

    items = []
    for offer in offers:
        if not isinstance(offer, dict):
            continue
        provider = offer.get("provider") if isinstance(offer.get("provider"), dict) else {}
        urls = offer.get("urls") if isinstance(offer.get("urls"), dict) else {}
        items.append({
            "provider_id": _as_str(offer.get("provider_id")),
            "provider_name": provider.get("name") or provider.get("clear_name") or None,
            "monetization_type": map_monetization_type(offer.get("monetization_type")),
            "quality": map_quality(offer.get("presentation_type")),
            "price_amount": _as_float(offer.get("retail_price")),
            "price_currency": _as_str(offer.get("currency")),
            "url": urls.get("standard_web") or None,
        })
    return items

def extract_genres(raw: dict) -> list[dict]:
    # catalog genre ids do not match metadata provider ids; kept for reference only
    genres = raw.get("genres") if isinstance(raw, dict) else None
    if not isinstance(genres, list):
        return []
    return [
        {"id": g.get("id"), "name": g.get("translation") or g.get("short_name"), "slug": g.get("short_name")}
        for g in genres if isinstance(g, dict)
    ]

def normalize_title(raw: dict) -> dict:
    return {
        **normalize_movie_data(raw),
        "offers": extract_offers(raw),
        "genres": extract_genres(raw),
    }


class CatalogProvider(ProviderClient):
    provider = "catalog"

    def __init__(self, base_url: str, region: str = "en_IN", **kwargs):
        kwargs.setdefault("timeout", 15)
        super().__init__(base_url, **kwargs)
        self.region = region

    def _prepare(self, params):
        headers = {
            "accept": "application/json",
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        }
        return headers, dict(params or {})

    def fetch_providers(self) -> list[dict]:
        """Platforms offered in the region; [] when the upstream is unreachable."""
        try:
            data = self._request("GET", f"/providers/locale/{self.region}")
        except Exception as e:
            logger.error("Error fetching catalog providers: %s", e)
            return []

        items = []
        for p in data if isinstance(data, list) else []:
            if not isinstance(p, dict) or p.get("id") is None:
                continue
            name = p.get("clear_name") or p.get("short_name")
            if not name:
                continue
            items.append({"id": str(p["id"]), "name": name, "icon": p.get("icon_url") or None})
        return items

    def fetch_titles_page(self, provider_id: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> dict:
        """One page of movie titles on a platform. Raises on transport failure."""
        logger.debug("Fetching titles from provider %s, page %s", provider_id, page)
        payload = {
            "page": page,
            "page_size": page_size,
            "providers": [provider_id],
            "content_types": ["movie"],
        }
        data = self._request("POST", f"/titles/{self.region}/popular", json=payload)
        data = data if isinstance(data, dict) else {}

        raw_items = data.get("items") if isinstance(data.get("items"), list) else []
        total_pages = _as_int(data.get("total_pages"))
        if not raw_items:
            has_more = False
        elif total_pages is not None:
            has_more = page < total_pages
        elif "has_more" in data:
            has_more = bool(data["has_more"])
        else:
            has_more = len(raw_items) >= page_size

        return {
            "items": [normalize_title(i) for i in raw_items if isinstance(i, dict)],
            "page": page,
            "total_pages": total_pages,
            "has_more": has_more,
        }

    def fetch_movie_details(self, catalog_id: str) -> dict | None:
        try:
            data = self._request("GET", f"/titles/movie/{catalog_id}/locale/{self.region}")
        except UpstreamNotFound:
            return None
        return normalize_title(data) if isinstance(data, dict) else None

    # pure helpers exposed on the client as well
    normalize_movie_data = staticmethod(normalize_movie_data)
    extract_offers = staticmethod(extract_offers)
    extract_genres = staticmethod(extract_genres)
