"""
FastAPI application factory for the budget control API.

Usage:
    python -m api.app                    # Dev server on port 8000
    APP_DB_PATH=/data/budget.sqlite python -m api.app

OpenAPI docs available at http://localhost:8000/docs after starting.

Domain errors map to JSON error bodies ``{error, detail, status_code}``:
ValidationError -> 400, NotFoundError -> 404, PreconditionFailed -> 409;
anything unhandled -> 500.  Structured JSON logging is enabled with
APP_LOG_FORMAT=json.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.database import ensure_schema, get_db_path, set_db_path
from api.routes import budgets, catalog, imports, mapping, rollup
from planning.errors import PlanningError
from planning.schema import TABLES
from utils.cache import TTLCache
from utils.config import AppConfig
from utils.database import get_connection, get_table_count, table_exists

# ── Configuration ─────────────────────────────────────────────────────────────
_cfg = AppConfig.from_env()

# ── Structured JSON logging ───────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as newline-delimited JSON."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("method", "path", "status", "duration_ms", "client_ip",
                    "request_id"):
            if hasattr(record, key):
                data[key] = getattr(record, key)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data)


_logger = logging.getLogger("budget_control.api")
_handler = logging.StreamHandler()
if _cfg.log_format == "json":
    _handler.setFormatter(_JsonFormatter())
else:
    _handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
logging.basicConfig(handlers=[_handler], level=logging.INFO, force=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Apply pending schema migrations on startup."""
    ensure_schema(get_db_path())
    yield


def _error_body(error: str, detail: str, status_code: int) -> dict:
    return {"error": error, "detail": detail, "status_code": status_code}


def create_app(db_path: Path | None = None, config: AppConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_path: Override the database path (useful for testing).  The
            schema is created right away so the app works without running
            its lifespan.
        config: Override the environment configuration.

    Returns:
        Configured FastAPI application instance.
    """
    cfg = config or _cfg
    if db_path is not None:
        set_db_path(db_path)
        ensure_schema(Path(db_path))

    app = FastAPI(
        title="Budget Control API",
        summary="Construction budgets, catalog import and EAC rollup.",
        description=(
            "## Budget Control API\n\n"
            "Plans construction budgets against a department / major group / "
            "line item / sub-item catalog and forecasts their cost at completion "
            "from the purchase feed.\n\n"
            "### Key concepts\n"
            "- **Partida / Concepto**: budget grouping and its priced items.\n"
            "- **Percentages** (fee, waste, tax) are fractions: `0.17` = 17%.\n"
            "- **Variance %** is a fraction; **completion %** is on a 0-100 scale.\n"
            "- **EAC methods**: `weighted_avg`, `last_price`, `manual`.\n"
            "- Budgets move `draft` → `published` → `closed`; structure can only "
            "change in `draft`."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "catalog", "description": "Read-only catalog tree listings."},
            {"name": "budgets", "description": "Budgets, partidas, conceptos, trash, "
                                               "lifecycle and snapshots."},
            {"name": "mapping", "description": "Catalog mapping records and automatic matching."},
            {"name": "imports", "description": "Create budget structure from a catalog selection."},
            {"name": "rollup", "description": "EAC rollup, KPIs, alerts, purchases and export."},
            {"name": "meta", "description": "Health check."},
        ],
    )
    app.state.config = cfg
    app.state.catalog_cache = TTLCache(maxsize=256, ttl_seconds=cfg.catalog_cache_ttl)

    # ── CORS middleware ───────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # ── Request logging middleware ────────────────────────────────────────────

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log each request with a short request id."""
        request_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        if cfg.log_format == "json":
            _logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                    "client_ip": client_ip,
                    "request_id": request_id,
                },
            )
        else:
            _logger.info(
                "method=%s path=%s status=%d duration_ms=%.1f ip=%s rid=%s",
                request.method, path, response.status_code, duration_ms,
                client_ip, request_id,
            )
        if duration_ms > 500:
            _logger.warning(
                "slow_request method=%s path=%s duration_ms=%.1f",
                request.method, path, duration_ms,
            )
        return response

    # ── Error handling ────────────────────────────────────────────────────────

    @app.exception_handler(PlanningError)
    async def planning_error_handler(request: Request, exc: PlanningError):
        if exc.status_code >= 500:
            _logger.error("planning error on %s: %s", request.url.path, exc.reason)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content=_error_body("Bad request", str(exc), 400),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch unhandled exceptions and return JSON instead of HTML traceback."""
        _logger.exception("unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_body("Internal server error", str(exc), 500),
        )

    # ── Health check ──────────────────────────────────────────────────────────

    @app.get("/health", tags=["meta"], summary="Health check")
    def health():
        """Return 200 OK if the API can reach the database and its tables."""
        db_path = get_db_path()
        try:
            conn = get_connection(db_path)
            try:
                missing = [t for t in TABLES if not table_exists(conn, t)]
                if missing:
                    return JSONResponse(
                        status_code=503,
                        content={"status": "degraded", "missing_tables": missing},
                    )
                counts = {t: get_table_count(conn, t)
                          for t in ("catalog_nodes", "budgets", "purchase_records")}
            finally:
                conn.close()
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "degraded", "error": str(e)},
            )
        return {"status": "ok", "database": str(db_path), "counts": counts,
                "catalog_cache": app.state.catalog_cache.stats()}

    # ── Register routers ──────────────────────────────────────────────────────

    prefix = "/api/v1"
    app.include_router(catalog.router, prefix=prefix)
    app.include_router(budgets.router, prefix=prefix)
    app.include_router(mapping.router, prefix=prefix)
    app.include_router(imports.router, prefix=prefix)
    app.include_router(rollup.router,  prefix=prefix)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.app:app", host=_cfg.api_host, port=_cfg.api_port, reload=True)
