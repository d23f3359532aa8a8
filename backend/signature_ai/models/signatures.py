import enum

from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pgvector.sqlalchemy import Vector

from signature_ai.core.config import settings
from signature_ai.core.database import Base


class ProfileStatus(str, enum.Enum):
    UNTRAINED = "untrained"
    TRAINING = "training"
    READY = "ready"
    ERROR = "error"


class Decision(str, enum.Enum):
    MATCH = "match"
    NO_MATCH = "no_match"
    ERROR = "error"


class SignatureImage(Base):
    """
    One uploaded (or legacy-migrated) signature sample.
    Only the processed flag is ever updated by this service.
    """
    __tablename__ = "signature_images"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(
        Integer,
        ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    storage_path = Column(String, nullable=False)
    public_url = Column(String, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    # True once an embedding has been computed from this image
    processed = Column(Boolean, nullable=False, default=False)

    student = relationship("Student", back_populates="signature_images")

    def __repr__(self) -> str:
        return (
            f"<SignatureImage(id={self.id}, student_id={self.student_id}, "
            f"processed={self.processed})>"
        )


class SignatureEmbedding(Base):
    """
    L2-normalized embedding of one sample image, or of a synthetic
    augmentation of it (image_id is NULL in that case).

    Stored as a pgvector Vector so the KNN search runs in PostgreSQL
    with the cosine distance operator.
    """
    __tablename__ = "signature_embeddings"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(
        Integer,
        ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    image_id = Column(
        Integer,
        ForeignKey("signature_images.id", ondelete="SET NULL"),
        nullable=True
    )
    embedding = Column(Vector(settings.EMBED_DIM), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return (
            f"<SignatureEmbedding(id={self.id}, student_id={self.student_id}, "
            f"image_id={self.image_id})>"
        )


class SignatureProfile(Base):
    """
    Per-student enrollment summary: status, centroid and the personalised
    cosine-distance threshold.

    Status and model fields are written independently, so a failed retrain
    leaves the last good centroid/threshold in place.
    """
    __tablename__ = "signature_profiles"

    student_id = Column(
        Integer,
        ForeignKey("students.id", ondelete="CASCADE"),
        primary_key=True
    )
    status = Column(String(16), nullable=False, default=ProfileStatus.UNTRAINED.value)
    embedding_centroid = Column(Vector(settings.EMBED_DIM), nullable=True)
    num_samples = Column(Integer, nullable=False, default=0)
    threshold = Column(Float, nullable=True, default=settings.DEFAULT_THRESHOLD)
    last_trained_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<SignatureProfile(student_id={self.student_id}, status={self.status}, "
            f"threshold={self.threshold})>"
        )


class SignatureVerificationEvent(Base):
    """
    Append-only audit row for every verification attempt that reached the
    embedding stage.
    """
    __tablename__ = "signature_verification_events"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, nullable=True, index=True)

    # Claimed identity, not used by the decision logic
    candidate_student_id = Column(Integer, nullable=True)
    predicted_student_id = Column(Integer, nullable=True, index=True)

    # Similarity in [0, 1] (1 - cosine distance of the winning sample)
    score = Column(Float, nullable=False, default=0.0)
    decision = Column(String(16), nullable=False)
    image_public_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self) -> str:
        return (
            f"<SignatureVerificationEvent(id={self.id}, decision={self.decision}, "
            f"predicted_student_id={self.predicted_student_id})>"
        )
