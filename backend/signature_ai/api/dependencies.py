from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from signature_ai.core.config import settings
from signature_ai.core.database import get_db
from signature_ai.services.embedding_engine import EmbeddingEngine
from signature_ai.services.enrollment import EnrollmentPipeline
from signature_ai.services.repository import SignatureRepository
from signature_ai.services.verification import VerificationPipeline


def get_repository(db: Session = Depends(get_db)) -> SignatureRepository:
    """
    Request-scoped storage collaborator bound to the request's DB session.
    """
    return SignatureRepository(db)


def get_embedding_engine(request: Request) -> EmbeddingEngine:
    """
    Returns the process-wide embedding engine created in the lifespan.

    Raises:
        HTTPException: 503 if the application started without an engine.
    """
    engine = getattr(request.app.state, "embedding_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Embedding engine is not initialized"
        )
    return engine


def get_enrollment_pipeline(
    repository: SignatureRepository = Depends(get_repository),
    engine: EmbeddingEngine = Depends(get_embedding_engine),
) -> EnrollmentPipeline:
    return EnrollmentPipeline(repository, engine, settings)


def get_verification_pipeline(
    repository: SignatureRepository = Depends(get_repository),
    engine: EmbeddingEngine = Depends(get_embedding_engine),
) -> VerificationPipeline:
    return VerificationPipeline(repository, engine, settings)
