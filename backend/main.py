# backend/main.py
"""
FastAPI application for the A/B experiment engine
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from database import close_async_client, ensure_indexes, initialize_async_client, ping_database
from routes import ab_testing

# ===== LOGGING SETUP =====
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting {settings.APP_NAME}...")
    initialize_async_client()
    await ensure_indexes()
    logger.info(f"✅ {settings.APP_NAME} ready!")
    yield
    close_async_client()
    logger.info(f"🛑 {settings.APP_NAME} stopped")


# ===== CREATE APP =====
app = FastAPI(
    debug=settings.DEBUG_MODE,
    title=settings.APP_NAME,
    description="Multi-variant email experiments with significance testing and winner rollout",
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)
    process_time = time.time() - start_time

    if process_time > 2.0:
        logger.warning(f"Slow request: {request.method} {request.url.path} - {process_time:.3f}s")

    response.headers["X-Process-Time"] = str(round(process_time, 3))
    return response


@app.get("/health")
async def health_check():
    """System health check"""
    database_ok = await ping_database()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "timestamp": datetime.utcnow().isoformat(),
        "version": settings.APP_VERSION,
    }


@app.get("/system/info")
async def system_info():
    return {
        "version": settings.APP_VERSION,
        "timestamp": datetime.utcnow().isoformat(),
        "environment": settings.ENVIRONMENT,
        "ab_testing": settings.get_ab_testing_config(),
        "routes_registered": len(app.routes),
    }


@app.get("/")
async def root():
    """API root"""
    return {
        "message": f"{settings.APP_NAME} v{settings.APP_VERSION}",
        "status": "operational",
        "health_check": "/health",
        "ab_tests": "/api/ab-tests",
    }


app.include_router(ab_testing.router, prefix="/api", tags=["ab-testing"])
