from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional
from datetime import datetime


class SignatureProfileResponse(BaseModel):
    """
    Enrollment summary of one student. The centroid itself is not exposed.
    """
    model_config = ConfigDict(from_attributes=True)

    student_id: int
    status: Literal["untrained", "training", "ready", "error"]
    num_samples: int = Field(default=0, ge=0)
    threshold: Optional[float] = Field(
        default=None,
        description="Cosine-distance upper bound for a match"
    )
    last_trained_at: Optional[datetime] = None
    error_message: Optional[str] = None


class TrainingResponse(BaseModel):
    success: bool
    message: str
    profile: Optional[SignatureProfileResponse] = None
    images_processed: int = 0
    embeddings_generated: int = 0


class PredictedStudent(BaseModel):
    id: int
    student_id: str
    firstname: str
    surname: str


class VerificationResponse(BaseModel):
    success: bool
    match: bool
    predicted_student_id: Optional[int] = None
    predicted_student: Optional[PredictedStudent] = None
    score: float = Field(..., ge=0.0, le=1.0)
    decision: Literal["match", "no_match", "error"]
    message: str
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
