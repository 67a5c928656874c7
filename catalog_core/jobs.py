import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

JOB_ID = "catalog_update"


class CatalogUpdateJob:
    """
    Cron-driven refresh of the catalog. Runs the orchestrator's update mode
    inside the Flask app context and skips quietly while a run is in progress.
    """

    def __init__(self, app, orchestrator, cron_schedule: str, scheduler=None):
        self.app = app
        self.orchestrator = orchestrator
        self.cron_schedule = cron_schedule
        self.scheduler = scheduler or BackgroundScheduler(daemon=True)
        self.is_scheduled = False

    def start(self) -> bool:
        """Schedule the job. An invalid cron expression disables ingestion instead of failing startup."""
        if self.is_scheduled:
            logger.warning("Catalog update job is already scheduled")
            return True

        try:
            trigger = CronTrigger.from_crontab(self.cron_schedule)
        except ValueError as e:
            logger.error("Invalid cron expression %r, scheduled ingestion disabled: %s", self.cron_schedule, e)
            return False

        self.scheduler.add_job(
            self.run_update,
            trigger=trigger,
            id=JOB_ID,
            name="Catalog update",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        self.is_scheduled = True
        logger.info("Catalog update job scheduled: %s", self.cron_schedule)
        return True

    def stop(self):
        if not self.is_scheduled:
            return
        if self.scheduler.get_job(JOB_ID):
            self.scheduler.remove_job(JOB_ID)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.is_scheduled = False
        logger.info("Catalog update job stopped")

    def run_update(self) -> dict | None:
        if self.orchestrator.is_running:
            logger.info("Catalog update skipped: a pipeline run is already in progress")
            return None

        logger.info("Catalog update triggered")
        with self.app.app_context():
            try:
                result = self.orchestrator.update_catalog()
            except Exception:
                logger.exception("Error during catalog update")
                return None
        if result.get("success"):
            logger.info("Catalog update completed successfully")
        else:
            logger.error("Catalog update did not run: %s", result.get("error") or result.get("message"))
        return result

    def trigger_manual(self) -> threading.Thread:
        """Start an update in the background and return at once."""
        logger.info("Manual catalog update triggered")
        t = threading.Thread(target=self.run_update, name="catalog-update-manual", daemon=True)
        t.start()
        return t

    def get_status(self) -> dict:
        return {
            "is_scheduled": self.is_scheduled,
            "is_running": self.orchestrator.is_running,
            "cron_schedule": self.cron_schedule,
            "orchestrator_status": self.orchestrator.get_status(),
        }
