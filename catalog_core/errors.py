from flask import request, current_app
from werkzeug.exceptions import HTTPException, BadRequest, Unauthorized, Forbidden
from typing import Any, Tuple
from functools import wraps

from models import MONETIZATION_TYPES

# -----------------------------
# Upstream errors
# -----------------------------

class UpstreamError(Exception):
    """Raised by provider clients when an upstream call cannot be completed."""

    def __init__(self, provider: str, message: str, status: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class UpstreamNotFound(UpstreamError):
    """404/401-class answer. Never retried; callers treat it as "no data"."""


# -----------------------------
# JSON error handlers
# -----------------------------

def install_json_error_handlers(app):
    @app.errorhandler(HTTPException)
    def handle_http(e: HTTPException):
        return {
            "error": {
                "status": e.code,
                "code": e.name.replace(" ", "_").upper(),
                "message": e.description
            }
        }, e.code

    @app.errorhandler(Exception)
    def handle_generic(e: Exception):
        current_app.logger.exception("Unhandled error: %s", e)
        # Avoid leaking details in production responses
        return {
            "error": {
                "status": 500,
                "code": "INTERNAL_SERVER_ERROR",
                "message": "Internal Server Error"
            }
        }, 500


# -----------------------------
# Validators & helpers
# -----------------------------

ALLOWED_ORDERS = {"-popularity", "popularity", "title", "-rating", "rating", "-year", "year", "-created_at"}

def validate_pagination() -> Tuple[int, int]:
    try:
        page = max(int(request.args.get("page", 1)), 1)
        size = int(request.args.get("page_size", 20))
    except Exception:
        raise BadRequest("page and page_size must be integers")
    page_size = max(min(size, 100), 1)
    return page, page_size

def validate_order_param() -> str:
    order = request.args.get("order", "-popularity")
    if order not in ALLOWED_ORDERS:
        raise BadRequest(f"order must be one of {sorted(ALLOWED_ORDERS)}")
    return order

def parse_year(v: Any) -> int | None:
    year = (v or "").strip()
    if not year:
        return None
    if not (len(year) == 4 and year.isdigit()):
        raise BadRequest("year must be a 4-digit string, e.g. '1999'")
    return int(year)

def parse_min_rating(v: Any) -> float | None:
    if v in (None, ""):
        return None
    try:
        r = float(v)
    except Exception:
        raise BadRequest("min_rating must be a number 0–10")
    if not (0 <= r <= 10):
        raise BadRequest("min_rating must be between 0 and 10")
    return r

def parse_monetization(v: Any) -> list[str]:
    raw = (v or "").strip()
    if not raw:
        return []
    types = [t.strip().lower() for t in raw.split(",") if t.strip()]
    bad = [t for t in types if t not in MONETIZATION_TYPES]
    if bad:
        raise BadRequest(f"monetization must be a comma list of {sorted(MONETIZATION_TYPES)}")
    return types


# -----------------------------
# Auth decorator
# -----------------------------

def require_auth(fn):
    """
    If API_TOKEN is configured on the app, require a Bearer token.
    When API_TOKEN is not set, auth is effectively disabled (everything allowed).
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = current_app.config.get("API_TOKEN")
        if not token:
            return fn(*args, **kwargs)

        hdr = request.headers.get("Authorization", "")
        parts = hdr.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise Unauthorized("Missing or invalid Authorization header")
        if parts[1] != token:
            raise Forbidden("Invalid token")
        return fn(*args, **kwargs)
    return wrapper
