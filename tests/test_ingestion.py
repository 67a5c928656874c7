from datetime import timedelta

from sqlalchemy import func, select

from catalog_core.ingestion import CatalogIngestion
from catalog_core.repositories import AvailabilityRepository, MovieRepository, PlatformRepository
from models import db, utcnow, Availability, Movie, Platform
from conftest import FakeCatalog, raw_offer, raw_title


def _count(model):
    return db.session.execute(select(func.count(model.id))).scalar_one()


def _ingestion(catalog, **kw):
    return CatalogIngestion(catalog, page_delay=0, platform_delay=0, **kw)


def test_two_page_scenario(app):
    PlatformRepository().find_or_create("p1", "Acme+")
    catalog = FakeCatalog(pages={"p1": [
        [raw_title("a1", "Alpha", offers=[raw_offer("p1", "flatrate")])],
        [raw_title("b1", "Beta")],
    ]})

    stats = _ingestion(catalog).ingest_platform("p1", max_pages=10)

    assert catalog.page_calls == [("p1", 1), ("p1", 2)]
    assert stats["movies"] == 2
    assert stats["movies_created"] == 2
    assert stats["availabilities_created"] == 1
    assert stats["marked_unavailable"] == 0
    assert _count(Movie) == 2
    assert _count(Availability) == 1

    row = db.session.execute(select(Availability)).scalar_one()
    assert row.movie.title == "Alpha"
    assert row.platform.external_id == "p1"
    assert row.monetization_type == "flatrate"
    assert row.is_available is True


def test_reingestion_refreshes_and_sweeps_missing_offers(app):
    platform = PlatformRepository().find_or_create("p1", "Acme+")
    first = FakeCatalog(pages={"p1": [[
        raw_title("a1", "Alpha", offers=[raw_offer("p1")]),
        raw_title("g1", "Gamma", offers=[raw_offer("p1", "rent")]),
    ]]})
    _ingestion(first).ingest_platform("p1")

    # push last_seen into the past so the second pass is clearly later
    for a in db.session.execute(select(Availability)).scalars():
        a.last_seen_at = utcnow() - timedelta(minutes=5)
    db.session.commit()

    # Gamma was pulled from the platform
    second = FakeCatalog(pages={"p1": [[raw_title("a1", "Alpha", offers=[raw_offer("p1")])]]})
    stats = _ingestion(second).ingest_platform("p1")

    assert stats["availabilities_updated"] == 1
    assert stats["availabilities_created"] == 0
    assert stats["marked_unavailable"] == 1
    assert _count(Movie) == 2
    assert _count(Availability) == 2

    gamma = MovieRepository().find_by_external_id("g1")
    repo = AvailabilityRepository()
    assert repo.find_by_movie(gamma.id) == []
    gone = repo.find_by_movie(gamma.id, include_unavailable=True)[0]
    assert gone.last_unavailable_at is not None
    alpha = MovieRepository().find_by_external_id("a1")
    assert repo.find_one(alpha.id, platform.id, "flatrate").is_available is True


def test_cross_listed_offers_resolve_other_platforms(app):
    PlatformRepository().find_or_create("p1", "Acme+")
    PlatformRepository().find_or_create("p2", "Bravo")
    catalog = FakeCatalog(pages={"p1": [[raw_title("a1", "Alpha", offers=[
        raw_offer("p1"),
        raw_offer("p2", "rent"),
        raw_offer("p3", "buy", name="Charlie TV"),
        raw_offer("p4", "ads"),  # unknown provider without a name: skipped
    ])]]})

    stats = _ingestion(catalog).ingest_platform("p1")

    assert stats["availabilities_created"] == 3
    charlie = PlatformRepository().find_by_external_id("p3")
    assert charlie.slug == "charlie-tv"
    assert PlatformRepository().find_by_external_id("p4") is None
    types = sorted(a.monetization_type for a in db.session.execute(select(Availability)).scalars())
    assert types == ["buy", "flatrate", "rent"]


def test_page_cap_bounds_pagination(app):
    PlatformRepository().find_or_create("p1", "Acme+")
    pages = [[raw_title(f"m{i}", f"Movie {i}")] for i in range(5)]
    catalog = FakeCatalog(pages={"p1": pages})

    stats = _ingestion(catalog).ingest_platform("p1", max_pages=2)

    assert stats["pages"] == 2
    assert catalog.page_calls == [("p1", 1), ("p1", 2)]
    assert _count(Movie) == 2


def test_title_failures_do_not_abort_the_platform(app, monkeypatch):
    PlatformRepository().find_or_create("p1", "Acme+")
    catalog = FakeCatalog(pages={"p1": [[
        raw_title("a1", "Alpha"),
        raw_title(None, "No Id"),
        raw_title("c1", "Cursed"),
        raw_title("d1", "Delta"),
    ]]})
    ingestion = _ingestion(catalog)
    real = ingestion.movies.upsert_from_catalog

    def flaky(data):
        if data["catalog_id"] == "c1":
            raise RuntimeError("db hiccup")
        return real(data)

    monkeypatch.setattr(ingestion.movies, "upsert_from_catalog", flaky)
    stats = ingestion.ingest_platform("p1")

    assert stats["movies"] == 2
    assert stats["errors"] == 2
    assert _count(Movie) == 2


def test_platform_failures_are_isolated(app):
    PlatformRepository().find_or_create("p1", "Acme+")
    PlatformRepository().find_or_create("p2", "Bravo")
    catalog = FakeCatalog(
        pages={"p2": [[raw_title("b1", "Beta", offers=[raw_offer("p2")])]]},
        failing={"p1"},
    )
    sleeps = []
    ingestion = CatalogIngestion(catalog, page_delay=0, platform_delay=1.0, sleep=sleeps.append)

    out = ingestion.ingest_platforms(["p1", "missing", "p2"], max_pages=3)

    results = {r["platform_id"]: r for r in out["results"]}
    assert "catalog unreachable" in results["p1"]["error"]
    assert results["missing"]["error"] == "platform not found"
    assert results["p2"]["movies"] == 1
    assert out["summary"] == {
        "total_movies": 1,
        "total_availabilities": 1,
        "total_marked_unavailable": 0,
        "errors": 2,
    }
    assert sleeps == [1.0, 1.0]


def test_failed_page_skips_the_sweep(app):
    platform = PlatformRepository().find_or_create("p1", "Acme+")
    _ingestion(FakeCatalog(pages={"p1": [[raw_title("a1", "Alpha", offers=[raw_offer("p1")])]]})).ingest_platform("p1")

    out = _ingestion(FakeCatalog(failing={"p1"})).ingest_platforms(["p1"])

    assert out["summary"]["errors"] == 1
    assert db.session.execute(select(Availability)).scalar_one().is_available is True
    assert platform.is_active is True


def test_ingest_all_active_and_sync_platforms(app):
    catalog = FakeCatalog(
        providers=[{"id": "p1", "name": "Acme+", "icon": "/a.png"}, {"id": "p2", "name": "Bravo", "icon": None}],
        pages={"p1": [[raw_title("a1", "Alpha")]], "p2": [[raw_title("b1", "Beta")]]},
    )
    ingestion = _ingestion(catalog)
    assert [p.slug for p in ingestion.sync_platforms()] == ["acme", "bravo"]

    PlatformRepository().deactivate(PlatformRepository().find_by_external_id("p2"))
    out = ingestion.ingest_all_active(max_pages=1)
    assert [r["platform_id"] for r in out["results"]] == ["p1"]
    assert _count(Platform) == 2


def test_sync_platforms_with_empty_feed(app):
    assert _ingestion(FakeCatalog()).sync_platforms() == []
    assert _ingestion(FakeCatalog()).ingest_all_active()["results"] == []


def test_zero_page_cap_leaves_offers_alone(app):
    PlatformRepository().find_or_create("p1", "Acme+")
    pages = {"p1": [[raw_title("a1", "Alpha", offers=[raw_offer("p1")])]]}
    _ingestion(FakeCatalog(pages=pages)).ingest_platform("p1", max_pages=5)

    catalog = FakeCatalog(pages=pages)
    stats = _ingestion(catalog).ingest_platform("p1", max_pages=0)

    assert stats["pages"] == 0
    assert stats["marked_unavailable"] == 0
    assert catalog.page_calls == []
    assert db.session.execute(select(Availability)).scalar_one().is_available is True


def test_best_quality_offer_wins_per_monetization_type(app):
    PlatformRepository().find_or_create("p1", "Acme+")
    catalog = FakeCatalog(pages={"p1": [[raw_title("a1", "Alpha", offers=[
        raw_offer("p1", "flatrate", quality="uhd"),
        raw_offer("p1", "flatrate", quality="sd"),
        raw_offer("p1", "rent", quality="sd"),
        raw_offer("p1", "rent", quality="hd"),
    ])]]})

    stats = _ingestion(catalog).ingest_platform("p1")

    assert stats["availabilities_created"] == 2
    assert stats["availabilities_updated"] == 0
    rows = {a.monetization_type: a.quality for a in db.session.execute(select(Availability)).scalars()}
    assert rows == {"flatrate": "UHD", "rent": "HD"}


def test_refresh_title_upserts_movie_and_offers(app):
    PlatformRepository().find_or_create("p1", "Acme+")
    catalog = FakeCatalog(details={"a1": raw_title("a1", "Alpha", offers=[
        raw_offer("p1", "rent"),
        raw_offer("p9", "buy", name="Niner"),
        raw_offer(None, "ads"),  # no provider: nothing to attach it to
    ])})
    ingestion = _ingestion(catalog)

    out = ingestion.refresh_title("a1")

    assert out["catalog_id"] == "a1"
    assert out["created"] is True
    assert out["availabilities_created"] == 2
    assert MovieRepository().find_by_external_id("a1").id == out["movie_id"]
    assert PlatformRepository().find_by_external_id("p9").name == "Niner"

    assert ingestion.refresh_title("a1")["availabilities_updated"] == 2
    assert ingestion.refresh_title("missing") is None
