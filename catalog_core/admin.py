from flask import Blueprint, current_app
from .errors import require_auth

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")  # ingestion control

def _job():
    return current_app.extensions["catalog"]["job"]

# GET as well: external cron services call with GET by default
@admin_bp.route("/trigger-update", methods=["POST", "GET"])
@require_auth
def trigger_update():
    job = _job()
    already = job.orchestrator.is_running
    if not already:
        job.trigger_manual()
    return {
        "success": True,
        "status": "running",
        "message": "Catalog update already in progress" if already else "Catalog update triggered",
    }, 202

@admin_bp.get("/ingestion/status")
@require_auth
def ingestion_status():
    return _job().get_status()
