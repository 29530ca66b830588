from sqlalchemy import text

from stockledger.core.exceptions import LedgerError
from stockledger.core.observability import (
    http_exception_handler,
    ledger_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from stockledger.core.config import settings
from stockledger.db.session import engine
from stockledger.routers import corrections, reconciliation, stock

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Inventory stock ledger API.\n\n"
        "Every request is scoped by the `X-Business-ID` header; `X-Actor-ID` names the operator "
        "recorded on ledger entries and audit logs.\n"
        "1. Record movements with `POST /stock/movements`.\n"
        "2. Read live or historical quantities from `/stock/level` and `/stock/level/as-of`.\n"
        "3. Count, correct and reconcile with `/corrections` and `/reconciliation`."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "stock", "description": "Ledger movements, transfers, stock levels and history reports."},
        {"name": "corrections", "description": "Physical counts and their approval into the ledger."},
        {"name": "reconciliation", "description": "Ledger versus projection variance checks and auto-fix."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(LedgerError, ledger_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(stock.router)
app.include_router(corrections.router)
app.include_router(reconciliation.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
