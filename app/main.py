from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import middleware
from app.common.middleware import ActorMiddleware, SecurityHeadersMiddleware

# Import routers
from app.modules.exports.errors import ExportError
from app.modules.exports.router import exports_router, export_error_handler

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Koperasi Export API",
    description="Financial report aggregation and PDF/XLSX export for savings-and-loan cooperatives",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ActorMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ExportError, export_error_handler)

# Include routers
app.include_router(exports_router, prefix="/api/v1")


@app.get("/")
async def read_root():
    return {
        "message": "Koperasi Export API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Koperasi Export API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Export workers: {settings.EXPORT_MAX_WORKERS}, retention: {settings.EXPORT_RETENTION_DAYS} days")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Koperasi Export API shutting down...")
