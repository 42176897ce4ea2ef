import time
import logging
from contextlib import asynccontextmanager # Import for lifespan management
from fastapi import FastAPI, Request
from site_ingest.api.routers import documents, health, import_url
from site_ingest.config import settings
from site_ingest.dependencies import get_document_store, get_rate_limiter
from site_ingest.utils.logger import setup_logging

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Context manager for managing the lifespan of the FastAPI application.
    Connects the document store on startup and releases it on shutdown.
    """
    logger.info("Application startup...")
    store = get_document_store()
    await store.connect()
    yield # Application runs
    logger.info("Application shutdown...")
    await store.disconnect()
    await get_rate_limiter().close()

# Create FastAPI app instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Crawls a website, chunks and embeds its pages, and streams import progress.",
    lifespan=lifespan # Assign the lifespan manager
)

# Add a middleware to log requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log incoming requests and their processing time.
    Streaming responses are timed until their headers are sent.
    """
    start_time = time.time()
    logger.info(f"Incoming request: {request.method} {request.url.path}")
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"Request finished: {request.method} {request.url.path} with status {response.status_code} in {process_time:.4f}s")
    return response

# Include API routers
app.include_router(health.router, prefix=settings.API_PREFIX, tags=["Health"])
app.include_router(import_url.router, prefix=settings.API_PREFIX, tags=["Import"])
app.include_router(documents.router, prefix=settings.API_PREFIX, tags=["Documents"])

@app.get("/", tags=["Root"])
async def read_root():
    """
    Root endpoint providing a welcome message.
    """
    return {"message": f"Welcome to {settings.APP_NAME}!"}


def run():
    """Console entry point: serve the API with uvicorn."""
    import uvicorn
    uvicorn.run("site_ingest.main:app", host="0.0.0.0", port=8000)
