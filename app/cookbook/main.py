"""
FastAPI application for the cookbook extraction service.

Provides endpoints for:
- Starting and controlling extraction jobs over cookbook PDFs
- Streaming live job progress
- Re-extracting cookbooks or page ranges
- Recovering missing recipe images
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import get_settings
from .database import init_db
from .models import HealthResponse
from .routers import processing
from .services.ai import AIServiceError
from .services.extraction import get_extraction_engine
from .services.jobs import CookbookNotFoundError, JobNotFoundError, PreconditionError
from .services.pdf_service import PDFConversionError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()
    logger.info("Starting Cookbook Extraction Service...")
    if settings.init_db_on_startup:
        # In production, use Alembic migrations instead
        init_db()

    engine = get_extraction_engine()
    if settings.resume_interrupted_jobs:
        resumed = await engine.resume_interrupted_jobs()
        if resumed:
            logger.info("Resumed %d interrupted job(s)", len(resumed))
    logger.info("Services initialized successfully")
    yield
    logger.info("Shutting down Cookbook Extraction Service...")
    await engine.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Cookbook Extraction API",
    description="Page-by-page recipe extraction from cookbook PDFs using AI",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",  # React production (Docker)
        "http://127.0.0.1:3000",
        "http://localhost:5173",  # Vite development server
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get("/", response_model=HealthResponse)
async def root() -> HealthResponse:
    """Root endpoint - health check."""
    return HealthResponse(
        status="healthy", version=__version__, message="Cookbook Extraction API is running"
    )


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__, message="Service is healthy")


# =============================================================================
# Include Routers
# =============================================================================

app.include_router(processing.router)


# =============================================================================
# Exception Handlers
# =============================================================================


@app.exception_handler(CookbookNotFoundError)
async def cookbook_not_found_handler(request: Request, exc: CookbookNotFoundError):
    """Handle references to unknown cookbooks."""
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError):
    """Handle references to unknown processing jobs."""
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(PreconditionError)
async def precondition_error_handler(request: Request, exc: PreconditionError):
    """Handle operations not allowed in the current job or cookbook state."""
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(PDFConversionError)
async def pdf_conversion_error_handler(request: Request, exc: PDFConversionError):
    """Handle PDF conversion errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


@app.exception_handler(AIServiceError)
async def ai_service_error_handler(request: Request, exc: AIServiceError):
    """Handle AI service errors."""
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
    )
