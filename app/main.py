"""Returns-Portal-Core: FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import auth_routes, dashboard, public, requests, sync
from app.config import get_settings
from app.database import Base, engine
from app.errors import PortalError
from app.middleware.rate_limit import RateLimitMiddleware
from app.services.notification import notification_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables on startup (use Alembic in production)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await notification_service.flush()
    await engine.dispose()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Returns, exchanges and refunds portal core: public intake, "
                "request lifecycle, dashboard sync jobs and KPI reads",
    lifespan=lifespan,
)

# Rate limiting (public portal and sync callback only)
app.add_middleware(RateLimitMiddleware, requests_per_minute=30, burst=10)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


# Register routers
app.include_router(auth_routes.router, prefix="/api/v1")
app.include_router(public.router, prefix="/api/v1")
app.include_router(requests.router, prefix="/api/v1")
app.include_router(sync.router, prefix="/api/v1")
app.include_router(dashboard.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "service": settings.app_name, "version": "1.0.0"}
