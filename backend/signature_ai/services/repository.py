from datetime import datetime, timezone
from typing import List, NamedTuple, Optional, Sequence

import numpy as np
from sqlalchemy import text
from sqlalchemy.orm import Session

from signature_ai.core.logging import get_logger
from signature_ai.models.signatures import (
    SignatureEmbedding,
    SignatureImage,
    SignatureProfile,
    SignatureVerificationEvent,
)
from signature_ai.models.students import ATTENDANCE_STATUSES, AttendanceRecord, Student


logger = get_logger(__name__)


class NeighborResult(NamedTuple):
    """One KNN hit: the owning student and its cosine distance to the query."""
    student_id: int
    distance: float


def _as_list(vector: Sequence[float]) -> list:
    # pgvector accepts plain Python lists; numpy float64 is not JSON/DB friendly
    return [float(v) for v in np.asarray(vector, dtype=np.float64).reshape(-1)]


class SignatureRepository:
    """
    Storage collaborator for the signature pipelines.

    Wraps one SQLAlchemy session. Every write commits on its own, so the
    profile status and the profile centroid/threshold are independent
    writes: a failed retrain cannot wipe the last good model.
    """
    def __init__(self, db: Session):
        self.db = db

    # Students

    def get_student(self, student_id: int) -> Optional[Student]:
        return self.db.query(Student).filter(Student.id == student_id).first()

    # Signature images

    def get_signature_images(self, student_id: int) -> List[SignatureImage]:
        """Sample images of a student, most recent upload first."""
        return (
            self.db.query(SignatureImage)
            .filter(SignatureImage.student_id == student_id)
            .order_by(SignatureImage.uploaded_at.desc(), SignatureImage.id.desc())
            .all()
        )

    def create_signature_image(
        self,
        student_id: int,
        storage_path: str,
        public_url: str
    ) -> SignatureImage:
        image = SignatureImage(
            student_id=student_id,
            storage_path=storage_path,
            public_url=public_url,
            processed=False,
        )
        self.db.add(image)
        self.db.commit()
        self.db.refresh(image)
        return image

    def mark_image_processed(self, image_id: int) -> None:
        self.db.query(SignatureImage).filter(SignatureImage.id == image_id).update(
            {SignatureImage.processed: True}
        )
        self.db.commit()

    # Embeddings

    def add_signature_embedding(
        self,
        student_id: int,
        image_id: Optional[int],
        embedding: Sequence[float]
    ) -> SignatureEmbedding:
        row = SignatureEmbedding(
            student_id=student_id,
            image_id=image_id,
            embedding=_as_list(embedding),
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def get_signature_embeddings(self, student_id: int) -> List[SignatureEmbedding]:
        return (
            self.db.query(SignatureEmbedding)
            .filter(SignatureEmbedding.student_id == student_id)
            .order_by(SignatureEmbedding.created_at.desc())
            .all()
        )

    def search_similar_embeddings(
        self,
        embedding: Sequence[float],
        limit: int
    ) -> List[NeighborResult]:
        """
        K nearest stored embeddings across all students, ordered by ascending
        cosine distance (pgvector `<=>` operator, served by the HNSW index).
        """
        distance = SignatureEmbedding.embedding.cosine_distance(_as_list(embedding))

        rows = (
            self.db.query(SignatureEmbedding.student_id, distance.label("distance"))
            .order_by(distance)
            .limit(limit)
            .all()
        )

        return [NeighborResult(row.student_id, float(row.distance)) for row in rows]

    # Profiles

    def get_signature_profile(self, student_id: int) -> Optional[SignatureProfile]:
        return (
            self.db.query(SignatureProfile)
            .filter(SignatureProfile.student_id == student_id)
            .first()
        )

    def _get_or_create_profile(self, student_id: int) -> SignatureProfile:
        profile = self.get_signature_profile(student_id)
        if profile is None:
            profile = SignatureProfile(student_id=student_id)
            self.db.add(profile)
        return profile

    def set_profile_status(
        self,
        student_id: int,
        status: str,
        error_message: Optional[str] = None
    ) -> SignatureProfile:
        """Writes only status and error_message, creating the row on first use."""
        profile = self._get_or_create_profile(student_id)
        profile.status = status
        profile.error_message = error_message
        self.db.commit()
        self.db.refresh(profile)
        return profile

    def save_profile_training(
        self,
        student_id: int,
        centroid: Sequence[float],
        num_samples: int,
        threshold: float,
        trained_at: datetime
    ) -> SignatureProfile:
        """Writes only the trained model fields of the profile."""
        profile = self._get_or_create_profile(student_id)
        profile.embedding_centroid = _as_list(centroid)
        profile.num_samples = num_samples
        profile.threshold = float(threshold)
        profile.last_trained_at = trained_at
        self.db.commit()
        self.db.refresh(profile)
        return profile

    # Verification events / attendance

    def create_verification_event(
        self,
        decision: str,
        score: float,
        session_id: Optional[int] = None,
        predicted_student_id: Optional[int] = None,
        candidate_student_id: Optional[int] = None,
        image_public_url: Optional[str] = None
    ) -> SignatureVerificationEvent:
        event = SignatureVerificationEvent(
            session_id=session_id,
            candidate_student_id=candidate_student_id,
            predicted_student_id=predicted_student_id,
            score=float(score),
            decision=decision,
            image_public_url=image_public_url,
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)
        return event

    def upsert_attendance(
        self,
        session_id: int,
        student_id: int,
        status: str = "present"
    ) -> AttendanceRecord:
        if status not in ATTENDANCE_STATUSES:
            raise ValueError(
                f"Invalid attendance status '{status}'. Valid values: {ATTENDANCE_STATUSES}"
            )

        record = (
            self.db.query(AttendanceRecord)
            .filter(
                AttendanceRecord.session_id == session_id,
                AttendanceRecord.student_id == student_id
            )
            .first()
        )
        if record is None:
            record = AttendanceRecord(session_id=session_id, student_id=student_id)
            self.db.add(record)

        record.status = status
        record.time_in = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(record)
        return record

    def rollback(self) -> None:
        self.db.rollback()

    def ping(self) -> None:
        """Minimal round-trip used by the health check. Raises on failure."""
        self.db.execute(text("SELECT 1"))
