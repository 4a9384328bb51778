from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import LOG_LEVEL
from app.core.errors import QuoteEngineError
from app.db.base import Base
from app.db.session import engine

# Register models
from app.db import models  # noqa: F401

from services.quotes.api import router as quotes_router
from services.inventory.api import router as inventory_router
from services.sales.api import router as sales_router
from services.purchasing.api import router as purchasing_router

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Quote Lifecycle & Document Conversion")


@app.exception_handler(QuoteEngineError)
async def _engine_error(request: Request, exc: QuoteEngineError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def _startup():
    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)


app.include_router(quotes_router)
app.include_router(inventory_router)
app.include_router(sales_router)
app.include_router(purchasing_router)


@app.get("/health")
def health():
    return {"ok": True}
