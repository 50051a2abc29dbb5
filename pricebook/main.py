# pricebook/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pricebook.middleware import RequestIdMiddleware
from pricebook.db import Base, engine
from pricebook.config import settings
from pricebook.errors import (
    ConflictError, InsufficientStockError, NotFoundError, PersistenceError, ValidationError,
)
import pricebook.models  # noqa: F401  (registers tables)

from pricebook.routers import auth, purchases, materials, products

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info(f"pricebook started (env={settings.APP_ENV}, margins={settings.MARGIN1_RATE}/{settings.MARGIN2_RATE})")
    yield

app = FastAPI(title="Pricebook API", version="0.1.0", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Domain errors -> HTTP
@app.exception_handler(ValidationError)
async def _validation(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})

@app.exception_handler(InsufficientStockError)
async def _insufficient(request: Request, exc: InsufficientStockError):
    return JSONResponse(status_code=409, content=exc.as_dict())

@app.exception_handler(ConflictError)
async def _conflict(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(PersistenceError)
async def _persistence(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})

app.include_router(auth.router)
app.include_router(purchases.router)
app.include_router(materials.router)
app.include_router(products.router)

@app.get("/healthz")
def healthz():
    return {"ok": True}
