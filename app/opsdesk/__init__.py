import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from werkzeug.exceptions import HTTPException

from app.opsdesk.auth import assign_request_id, bp as auth_bp, enforce_platform_auth
from app.opsdesk.config import load_config
from app.opsdesk.db import init_db, teardown_db_session
from app.opsdesk.errors import ApiError
from app.opsdesk.modules.phone_numbers.admin import bp as phone_numbers_bp
from app.opsdesk.modules.phone_numbers.lookup import PhoneLookupService
from app.opsdesk.modules.project_progress.admin import bp as project_progress_bp
from app.opsdesk.modules.sms.admin import bp as sms_bp
from app.opsdesk.modules.sms.gateway_client import SmsGatewayClient
from app.opsdesk.modules.supplier_import.admin import bp as supplier_import_bp
from app.opsdesk.modules.system_config.admin import bp as system_config_bp
from app.opsdesk.modules.training.admin import bp as training_bp, questions_bp
from app.opsdesk.routes import bp as routes_bp
from app.opsdesk.utils import fail
from app.opsdesk.verification import VerificationStore


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    # Question banks and records are Chinese; keep JSON readable.
    app.json.ensure_ascii = False

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if str(app.config.get("PLATFORM_PASSWORD") or "") in ("", "admin123"):
            raise RuntimeError("PLATFORM_PASSWORD must be changed from the default in production.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    store = VerificationStore(sweep_interval=app.config["VERIFICATION_SWEEP_SECONDS"])
    app.extensions["verification_store"] = store
    if app.config.get("VERIFICATION_SWEEP_ENABLED"):
        store.start()

    app.extensions["phone_lookup"] = PhoneLookupService.from_config(app.config)
    app.extensions["sms_gateway"] = SmsGatewayClient(app.config.get("SMS_SEND_API_URL") or "")
    if not app.config.get("SMS_SEND_API_URL"):
        app.logger.warning("SMS_SEND_API_URL not set; /api/sms/send will answer 502.")

    app.before_request(assign_request_id)
    app.before_request(enforce_platform_auth)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(system_config_bp, url_prefix="/api")
    app.register_blueprint(training_bp, url_prefix="/api/training")
    app.register_blueprint(questions_bp, url_prefix="/api/admin/questions")
    app.register_blueprint(phone_numbers_bp, url_prefix="/api/phone-numbers")
    app.register_blueprint(project_progress_bp, url_prefix="/api/project-progress")
    app.register_blueprint(supplier_import_bp, url_prefix="/api")
    app.register_blueprint(sms_bp, url_prefix="/api")

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):  # type: ignore[no-redef]
        if e.status >= 500:
            app.logger.error("API error %s (request_id=%s): %s", e.status, getattr(g, "request_id", None), e.message)
        return fail(e.message, e.status, **e.extra)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return fail("接口不存在", 404)

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return fail(f"不支持的请求方法: {request.method}", 405)

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return fail("文件过大，最大支持10MB", 413)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return fail("服务器内部错误", 500)

    @app.errorhandler(Exception)
    def _err_unhandled(e):  # type: ignore[no-redef]
        if isinstance(e, HTTPException):
            return fail(e.description or e.name, e.code or 500)
        app.logger.exception("Unhandled error (request_id=%s): %s", getattr(g, "request_id", None), e)
        return fail("服务器内部错误", 500)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
