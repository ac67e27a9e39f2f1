from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"success": True, "name": "opsdesk", "env": current_app.config.get("ENV")}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    store = current_app.extensions.get("verification_store")
    return {"ok": True, "verification": store.stats() if store else None}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200
