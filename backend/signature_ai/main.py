from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from signature_ai.core.config import settings
from signature_ai.core.database import init_db
from signature_ai.core.logging import setup_logging, get_logger
from signature_ai.api.dependencies import get_repository
from signature_ai.api.routers import training, verification
from signature_ai.services.embedding_engine import EmbeddingEngine
from signature_ai.services.repository import SignatureRepository


logger = get_logger(__name__)

# --- Application Lifecycle (Lifespan) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager for the FastAPI application.
    Enables pgvector, loads the signature embedding model once on startup
    and releases it on shutdown.
    """
    setup_logging()
    logger.info("Initializing pgvector extension in PostgreSQL...")
    init_db()

    engine = EmbeddingEngine(
        model_path=settings.MODEL_PATH,
        embed_dim=settings.EMBED_DIM,
        input_width=settings.SIGNATURE_WIDTH,
        input_height=settings.SIGNATURE_HEIGHT
    )
    engine.load_model()
    app.state.embedding_engine = engine

    logger.info(f"Model path: {settings.MODEL_PATH} (mode={engine.mode})")
    logger.info(f"Embedding dimension: {settings.EMBED_DIM}")
    logger.info(f"Default threshold: {settings.DEFAULT_THRESHOLD}")
    logger.info(f"Signature AI service ready on {settings.HOST}:{settings.PORT}")
    yield
    logger.info("Releasing embedding model...")
    engine.clear_model()
    logger.info("Shutting down.")

# --- FastAPI Instance ---
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Signature verification service for student attendance",
    version=settings.VERSION,
    lifespan=lifespan
)

# --- CORS Configuration ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict to the admin panel domain in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- REST API Routers ---
app.include_router(training.router, prefix="/api/v1", tags=["Training"])
app.include_router(verification.router, prefix="/api/v1", tags=["Verification"])

# --- Root Endpoint ---
@app.get("/", tags=["System"])
async def root():
    """Basic root endpoint for service discovery."""
    return {
        "message": f"Welcome to {settings.PROJECT_NAME} API",
        "status": "active",
        "docs": "/docs"
    }

# --- Health Check Endpoint ---
@app.get("/api/v1/health", tags=["System"])
def health_check(
    request: Request,
    repository: SignatureRepository = Depends(get_repository)
):
    """
    Reports database reachability and the embedding model mode.

    'degraded' means the database is up but the service runs on fallback
    embeddings, which are not suitable for real verification.
    """
    try:
        repository.ping()
        database_status = "connected"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        database_status = "error"

    engine = getattr(request.app.state, "embedding_engine", None)
    model_status = engine.status() if engine is not None else {"mode": "unavailable", "loaded": False}

    if database_status != "connected":
        overall = "unhealthy"
    elif model_status.get("loaded"):
        overall = "healthy"
    else:
        overall = "degraded"

    body = {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "database": database_status,
            "ai_model": model_status,
        },
        "environment": settings.ENVIRONMENT,
        "version": settings.VERSION,
    }

    if overall == "unhealthy":
        return JSONResponse(status_code=503, content=body)

    return body
