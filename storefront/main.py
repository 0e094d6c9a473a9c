# storefront/main.py
import logging
import time

from flask import Flask, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from storefront.config import Config
from storefront.database import Base, close_db, engine
from storefront import models  # noqa: F401  (registers tables on Base.metadata)
from storefront.blueprints.admin import admin_bp
from storefront.blueprints.auth import auth_bp
from storefront.blueprints.cart import cart_bp
from storefront.errors import StorefrontError
from storefront.observability import (
    check_database_health,
    configure_logging,
    ensure_request_id,
    increment_counter,
    observe_latency,
)

app = Flask(__name__, static_folder='../static')
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(auth_bp)
app.register_blueprint(cart_bp)
app.register_blueprint(admin_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Create any missing tables."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except SQLAlchemyError as e:
        logger.exception("Error initializing database: %s", e)


init_database()


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    labels = {
        "method": request.method,
        "endpoint": request.endpoint or request.path,
        "status": str(response.status_code),
    }
    if started is not None:
        observe_latency("http_request_latency_ms", (time.perf_counter() - started) * 1000, labels=labels)
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, 'request_id', '') or ''
    if response.status_code >= 500:
        increment_counter("http_errors_total", labels=labels)
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(StorefrontError)
def handle_storefront_error(error: StorefrontError):
    if error.status_code >= 500:
        logger.error("Store failure: %s", error.message)
    else:
        logger.info("Request rejected: %s", error.message, extra={"kind": error.kind})
    increment_counter("workflow_errors_total", labels={"kind": error.kind})
    return jsonify(error.to_dict()), error.status_code


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status
        }
    }), status_code
