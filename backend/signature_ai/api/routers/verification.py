from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import JSONResponse

from signature_ai.api.dependencies import get_verification_pipeline
from signature_ai.core.logging import get_logger
from signature_ai.schemas.signature_schema import VerificationResponse
from signature_ai.services.verification import (
    ERROR_INVALID_IMAGE,
    VerificationPipeline,
    VerificationResult,
)

router = APIRouter()

logger = get_logger(__name__)


def _to_response(result: VerificationResult) -> VerificationResponse:
    return VerificationResponse(
        success=result.success,
        match=result.match,
        predicted_student_id=result.predicted_student_id,
        predicted_student=result.predicted_student,
        score=result.score,
        decision=result.decision.value,
        message=result.message,
        error=result.error,
    )


# POST /api/v1/verify

@router.post("/verify", response_model=VerificationResponse)
def verify_signature(
    file: Optional[UploadFile] = File(default=None, description="Signature image (JPEG/PNG/WebP)"),
    session_id: Optional[int] = Form(default=None, description="Attendance session to mark on match"),
    pipeline: VerificationPipeline = Depends(get_verification_pipeline)
):
    """
    Identifies the student who signed the uploaded image.

    On a match with a session_id, the student is also marked present in that
    session (best effort). Missing or invalid files return 400 without an
    audit event; processing failures return 500 and are logged as 'error'
    events.
    """
    if file is None:
        response = VerificationResult.failure(
            "No image file provided",
            "Please provide a signature image for verification"
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_to_response(response).model_dump()
        )

    image_bytes = file.file.read()

    logger.info(
        f"Received signature image for verification: {file.filename}, size: {len(image_bytes)} bytes",
        extra={"session_id": session_id, "endpoint": "verify"}
    )

    result = pipeline.verify(image_bytes, session_id=session_id)
    body = _to_response(result)

    if result.success:
        return body

    status_code = (
        status.HTTP_400_BAD_REQUEST
        if result.error == ERROR_INVALID_IMAGE
        else status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())
