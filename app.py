import logging
import os
import threading
from pathlib import Path

from flask import Flask, jsonify
from sqlalchemy import text, event

from models import db
from catalog_api import CatalogProvider
from metadata_api import MetadataProvider
from catalog_core.admin import admin_bp
from catalog_core.api import api_bp
from catalog_core.config import IngestionConfig
from catalog_core.enrichment import MetadataEnrichment
from catalog_core.errors import install_json_error_handlers
from catalog_core.ingestion import CatalogIngestion
from catalog_core.jobs import CatalogUpdateJob
from catalog_core.logging_utils import setup_logging
from catalog_core.metrics import metrics_bp
from catalog_core.orchestrator import IngestionOrchestrator

logger = logging.getLogger(__name__)


def _enable_sqlite_savepoints(engine):
    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_orchestrator(config: IngestionConfig) -> IngestionOrchestrator:
    """Wire provider clients, pipeline stages and the orchestrator from config."""
    retry = {"max_retries": config.max_retries, "retry_delay_ms": config.retry_delay_ms}
    catalog = CatalogProvider(
        config.catalog_base_url,
        region=config.catalog_region,
        requests_per_second=config.catalog_requests_per_second,
        timeout=config.catalog_timeout,
        **retry,
    )
    metadata = MetadataProvider(
        config.tmdb_base_url,
        api_key=config.tmdb_api_key,
        token=config.tmdb_token,
        requests_per_second=config.tmdb_requests_per_second,
        timeout=config.tmdb_timeout,
        **retry,
    )
    ingestion = CatalogIngestion(
        catalog,
        page_delay=config.page_delay_ms / 1000.0,
        platform_delay=config.platform_delay_ms / 1000.0,
    )
    enrichment = MetadataEnrichment(
        metadata,
        batch_size=config.enrich_batch_size,
        batch_delay=config.batch_delay_ms / 1000.0,
    )
    return IngestionOrchestrator(ingestion, enrichment, config)


def create_app(ingestion_config: IngestionConfig | None = None):
    config = ingestion_config or IngestionConfig.from_env()
    setup_logging(config.log_level)

    app = Flask(__name__)

    # Load env config
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["API_TOKEN"] = os.getenv("API_TOKEN")
    app.config["INGESTION"] = config

    # Database configuration
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        app.config["SQLALCHEMY_DATABASE_URI"] = database_url
        safe_dest = database_url.split("@", 1)[-1]
        logger.info("Using DATABASE_URL -> %s", safe_dest)
    else:
        instance_db = Path(app.instance_path) / "catalog.db"
        instance_db.parent.mkdir(parents=True, exist_ok=True)
        logger.info("DB file -> %s", instance_db.resolve())
        app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{instance_db}"

    # Installing JSON error handlers & SQLAlchemy
    install_json_error_handlers(app)
    db.init_app(app)

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(db.engine)
        db.create_all()

    orchestrator = build_orchestrator(config)
    job = CatalogUpdateJob(app, orchestrator, config.cron_schedule)
    app.extensions["catalog"] = {"orchestrator": orchestrator, "job": job}

    # HEALTH CHECK ENDPOINT
    @app.route("/health")
    def health():
        """
        Basic health endpoint for monitoring.
        Returns 200 if DB is reachable, 500 otherwise.
        """
        db_ok = True
        try:
            db.session.execute(text("SELECT 1"))
        except Exception:
            db_ok = False

        status_code = 200 if db_ok else 500
        return jsonify({
            "status": "ok" if db_ok else "error",
            "database": db_ok,
            "ingestion": job.get_status(),
        }), status_code

    # Register blueprints
    app.register_blueprint(metrics_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(admin_bp)

    if config.schedule_enabled:
        job.start()
    if config.bootstrap_on_start:
        # same background path as the manual trigger, but a full bootstrap
        def _bootstrap():
            with app.app_context():
                orchestrator.bootstrap()

        threading.Thread(target=_bootstrap, name="catalog-bootstrap", daemon=True).start()

    return app


# Development only
if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    create_app().run(host="0.0.0.0", port=port, debug=False)
