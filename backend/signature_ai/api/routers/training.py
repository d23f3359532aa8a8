from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from signature_ai.api.dependencies import get_enrollment_pipeline, get_repository
from signature_ai.core.exceptions import (
    InsufficientSamples,
    NoSignatureImages,
    StudentNotFound,
)
from signature_ai.core.logging import get_logger
from signature_ai.schemas.signature_schema import (
    ErrorResponse,
    SignatureProfileResponse,
    TrainingResponse,
)
from signature_ai.services.enrollment import EnrollmentPipeline
from signature_ai.services.repository import SignatureRepository

router = APIRouter()

logger = get_logger(__name__)

TRAIN_ERRORS = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
}


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message).model_dump()
    )


def _parse_student_id(raw_id: str):
    try:
        return int(raw_id)
    except ValueError:
        return None


# POST /api/v1/train/{student_id}

@router.post("/train/{student_id}", response_model=TrainingResponse, responses=TRAIN_ERRORS)
def train_student(
    student_id: str,
    pipeline: EnrollmentPipeline = Depends(get_enrollment_pipeline)
):
    """
    (Re)builds the signature profile of a student from their sample images.

    Returns the profile status, threshold and sample count on success, or a
    typed error: invalid id (400), not found (404), no images (400),
    insufficient samples (400), training failed (500).
    """
    student_id_num = _parse_student_id(student_id)

    if student_id_num is None:
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "Invalid student ID",
            "Student ID must be a valid number"
        )

    logger.info("Training requested.", extra={"student_id": student_id_num, "endpoint": "train"})

    try:
        result = pipeline.train(student_id_num)

    except StudentNotFound as e:
        return _error(status.HTTP_404_NOT_FOUND, "Student not found", e.message)

    except NoSignatureImages as e:
        return _error(status.HTTP_400_BAD_REQUEST, "No signature images found", e.message)

    except InsufficientSamples as e:
        return _error(status.HTTP_400_BAD_REQUEST, "Insufficient training data", e.message)

    except Exception as e:
        # The pipeline already moved the profile to 'error' and logged the cause
        message = getattr(e, "message", None) or "Unknown error occurred during training"
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Training failed", message)

    return TrainingResponse(
        success=True,
        message=result.message,
        profile=SignatureProfileResponse.model_validate(result.profile),
        images_processed=result.images_processed,
        embeddings_generated=result.embeddings_generated,
    )


# GET /api/v1/profiles/{student_id}

@router.get(
    "/profiles/{student_id}",
    response_model=SignatureProfileResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}}
)
def get_signature_profile(
    student_id: int,
    repository: SignatureRepository = Depends(get_repository)
):
    """
    Current enrollment state of a student, for the admin panel.
    """
    profile = repository.get_signature_profile(student_id)

    if profile is None:
        return _error(
            status.HTTP_404_NOT_FOUND,
            "Profile not found",
            f"Student {student_id} has no signature profile yet"
        )

    return SignatureProfileResponse.model_validate(profile)
