import time
import asyncio
import logging
from contextlib import asynccontextmanager # Import for lifespan management
from fastapi import FastAPI, Request
from kb_indexer.api.routers import health, jobs
from kb_indexer.config import settings
from kb_indexer.dependencies import build_indexing_worker
from kb_indexer.utils.logger import setup_logging

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Context manager for managing the lifespan of the FastAPI application.
    Optionally runs the indexing worker loop inside the API process.
    """
    logger.info("Application startup...")
    worker = None
    worker_task = None
    if settings.RUN_EMBEDDED_WORKER:
        worker = build_indexing_worker()
        worker_task = asyncio.create_task(worker.run_forever())
        logger.info("Embedded indexing worker started.")
    yield # Application runs
    logger.info("Application shutdown...")
    if worker is not None:
        worker.stop()
        await worker_task

# Create FastAPI app instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Indexing pipeline that turns web pages and documents into embedded knowledge base chunks.",
    lifespan=lifespan # Assign the lifespan manager
)

# Add a middleware to log requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log incoming requests and their processing time.
    """
    start_time = time.time()
    logger.info(f"Incoming request: {request.method} {request.url.path}")
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"Request finished: {request.method} {request.url.path} with status {response.status_code} in {process_time:.4f}s")
    return response

# Include API routers
app.include_router(health.router, prefix=settings.API_PREFIX, tags=["Health"])
app.include_router(jobs.router, prefix=settings.API_PREFIX, tags=["Indexing"])

@app.get("/", tags=["Root"])
async def read_root():
    """
    Root endpoint providing a welcome message.
    """
    return {"message": f"Welcome to {settings.APP_NAME}!"}
