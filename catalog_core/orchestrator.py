"""
Sequences one ingestion run: platform sync -> genre sync -> catalog ingestion
-> enrichment. At most one run executes at a time per orchestrator; a second
invocation while busy is rejected immediately instead of queued.
"""
import enum
import logging
import threading
import time

from models import utcnow
from .config import IngestionConfig
from .enrichment import MetadataEnrichment
from .ingestion import CatalogIngestion
from .metrics import PIPELINE_DURATION, PIPELINE_RUNS

logger = logging.getLogger(__name__)

BANNER = "=" * 49


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class IngestionOrchestrator:
    def __init__(self, ingestion: CatalogIngestion, enrichment: MetadataEnrichment,
                 config: IngestionConfig | None = None):
        self.ingestion = ingestion
        self.enrichment = enrichment
        self.config = config or IngestionConfig()
        self._lock = threading.Lock()
        self.state = RunState.IDLE
        self.last_run_time = None
        self.last_run_status = None

    @property
    def is_running(self) -> bool:
        return self.state is RunState.RUNNING

    def _stage(self, results: dict, slot: str, label: str, fn):
        """Run one stage; its failure is recorded in its slot and never stops later stages."""
        logger.info(label)
        try:
            results[slot] = {"success": True, **fn()}
        except Exception as e:
            logger.exception("%s failed: %s", slot, e)
            results[slot] = {"success": False, "error": str(e)}

    def _ingest(self, platform_ids, max_pages):
        if platform_ids:
            out = self.ingestion.ingest_platforms(list(platform_ids), max_pages)
        else:
            out = self.ingestion.ingest_all_active(max_pages)
        return {**out["summary"], "results": out["results"]}

    def execute_pipeline(self, sync_platforms: bool = False, sync_genres: bool = False,
                         ingest_movies: bool = True, enrich_movies: bool = True,
                         max_pages_per_platform: int = 10, max_movies_to_enrich: int = 50,
                         platform_ids: list[str] | None = None) -> dict:
        if not self._lock.acquire(blocking=False):
            logger.warning("Ingestion pipeline is already running")
            return {"success": False, "message": "Pipeline already running"}

        self.state = RunState.RUNNING
        started = time.monotonic()
        results = {
            "platforms_sync": None,
            "genres_sync": None,
            "movies_ingestion": None,
            "movies_enrichment": None,
            "duration": None,
            "success": False,
        }
        logger.info(BANNER)
        logger.info("Starting catalog ingestion pipeline...")
        logger.info(BANNER)

        try:
            if sync_platforms:
                self._stage(results, "platforms_sync", "[Step 1/4] Syncing platforms from catalog provider...",
                            lambda: {"count": len(self.ingestion.sync_platforms())})
            else:
                logger.info("[Step 1/4] Skipping platform sync")

            if sync_genres:
                self._stage(results, "genres_sync", "[Step 2/4] Syncing genres from TMDB...",
                            lambda: {"count": len(self.enrichment.sync_genres())})
            else:
                logger.info("[Step 2/4] Skipping genre sync")

            if ingest_movies:
                self._stage(results, "movies_ingestion", "[Step 3/4] Ingesting movies from catalog provider...",
                            lambda: self._ingest(platform_ids, max_pages_per_platform))
            else:
                logger.info("[Step 3/4] Skipping movie ingestion")

            if enrich_movies:
                self._stage(results, "movies_enrichment", "[Step 4/4] Enriching movies with TMDB data...",
                            lambda: self.enrichment.enrich_pending_movies(max_movies_to_enrich))
            else:
                logger.info("[Step 4/4] Skipping movie enrichment")

            results["success"] = True
            results["duration"] = round(time.monotonic() - started, 3)
            self.last_run_status = "success"
            PIPELINE_DURATION.observe(results["duration"])
            logger.info(BANNER)
            logger.info("Pipeline complete in %ds", round(results["duration"]))
            logger.info(BANNER)
            return results
        except Exception as e:
            logger.exception("Pipeline execution failed: %s", e)
            results["success"] = False
            results["error"] = str(e)
            results["duration"] = round(time.monotonic() - started, 3)
            self.last_run_status = "failed"
            return results
        finally:
            self.last_run_time = utcnow()
            PIPELINE_RUNS.labels(self.last_run_status or "failed").inc()
            self.state = RunState.IDLE
            self._lock.release()

    def bootstrap(self, platform_ids: list[str] | None = None, max_pages_per_platform: int | None = None) -> dict:
        """First-time population: every stage, large caps."""
        logger.info("BOOTSTRAP: Initializing catalog from scratch")
        return self.execute_pipeline(
            sync_platforms=True,
            sync_genres=True,
            ingest_movies=True,
            enrich_movies=True,
            max_pages_per_platform=max_pages_per_platform or self.config.bootstrap_max_pages,
            max_movies_to_enrich=self.config.bootstrap_enrich_limit,
            platform_ids=platform_ids or self.config.bootstrap_platforms or None,
        )

    def update_catalog(self) -> dict:
        """Recurring refresh: ingestion and enrichment only, small caps."""
        logger.info("UPDATE: Refreshing catalog data")
        return self.execute_pipeline(
            sync_platforms=False,
            sync_genres=False,
            ingest_movies=True,
            enrich_movies=True,
            max_pages_per_platform=self.config.update_max_pages,
            max_movies_to_enrich=self.config.update_enrich_limit,
        )

    def get_status(self) -> dict:
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_run_status": self.last_run_status,
        }

    def close(self):
        """Release the HTTP sessions of both provider clients."""
        for client in (self.ingestion.catalog, self.enrichment.metadata):
            client.close()
