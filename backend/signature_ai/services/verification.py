from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from signature_ai.core.config import Settings
from signature_ai.core.exceptions import SignatureAIError
from signature_ai.core.logging import get_logger
from signature_ai.models.signatures import Decision
from signature_ai.services.embedding_engine import EmbeddingEngine
from signature_ai.services.profile_manager import ProfileManager
from signature_ai.services.repository import NeighborResult
from signature_ai.utils.image_processing import extract_roi, validate_image


logger = get_logger(__name__)

ERROR_INVALID_IMAGE = "Invalid image"
ERROR_PROCESSING = "Verification processing failed"


@dataclass
class CandidateMatch:
    """Neighbors of one student within a KNN result."""
    student_id: int
    distances: List[float] = field(default_factory=list)
    min_distance: float = float("inf")
    # Tracked for reporting, not used by the decision
    avg_distance: float = 0.0

    def add(self, distance: float) -> None:
        self.distances.append(distance)
        self.min_distance = min(self.min_distance, distance)
        self.avg_distance = sum(self.distances) / len(self.distances)


@dataclass
class VerificationResult:
    success: bool
    match: bool
    predicted_student_id: Optional[int]
    score: float
    decision: Decision
    message: str
    predicted_student: Optional[dict] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, message: str) -> "VerificationResult":
        return cls(
            success=False,
            match=False,
            predicted_student_id=None,
            score=0.0,
            decision=Decision.ERROR,
            message=message,
            error=error,
        )


def group_neighbors(neighbors: Sequence[NeighborResult]) -> Dict[int, CandidateMatch]:
    """
    Groups KNN hits by student. Dict insertion order is the order in which
    each student first appears in the (distance-sorted) neighbors.
    """
    candidates: Dict[int, CandidateMatch] = {}

    for neighbor in neighbors:
        if neighbor.student_id not in candidates:
            candidates[neighbor.student_id] = CandidateMatch(neighbor.student_id)
        candidates[neighbor.student_id].add(float(neighbor.distance))

    return candidates


def select_best_match(
    candidates: Dict[int, CandidateMatch],
    threshold_for: Callable[[int], float]
) -> Tuple[Optional[int], float]:
    """
    Single pass over the candidates keeping a running best.

    A student wins if their closest sample is under their own threshold and
    strictly closer than the current best, so ties go to the student seen
    first.

    Returns:
        (student_id, min_distance) of the winner, or (None, inf).
    """
    best_student_id: Optional[int] = None
    best_distance = float("inf")

    for student_id, candidate in candidates.items():
        threshold = threshold_for(student_id)

        logger.debug(
            f"Student {student_id}: min_distance={candidate.min_distance:.4f}, "
            f"threshold={threshold:.4f}, samples={len(candidate.distances)}"
        )

        if candidate.min_distance < threshold and candidate.min_distance < best_distance:
            best_student_id = student_id
            best_distance = candidate.min_distance

    return best_student_id, best_distance


def distance_to_score(distance: float) -> float:
    """Cosine distance -> similarity score in [0, 1]. No winner (inf) -> 0."""
    if distance == float("inf"):
        return 0.0
    return min(1.0, max(0.0, 1.0 - distance))


class VerificationPipeline:
    """
    1:N identification of one probe signature against every enrolled sample.
    """
    def __init__(self, repository, engine: EmbeddingEngine, config: Settings):
        self.repository = repository
        self.engine = engine
        self.config = config
        self.profiles = ProfileManager(repository, config.DEFAULT_THRESHOLD)

    def verify(self, image_bytes: bytes, session_id: Optional[int] = None) -> VerificationResult:

        validation = validate_image(
            image_bytes,
            allowed_mime_types=self.config.ALLOWED_MIME_TYPES,
            max_file_size=self.config.MAX_FILE_SIZE,
            min_width=self.config.MIN_IMAGE_WIDTH,
            min_height=self.config.MIN_IMAGE_HEIGHT
        )

        # Input errors short-circuit without an audit event
        if not validation.valid:
            return VerificationResult.failure(
                ERROR_INVALID_IMAGE,
                validation.error or "Invalid image format or size"
            )

        try:
            return self._identify(image_bytes, session_id)

        except Exception as e:
            logger.error("Verification processing error", exc_info=True, extra={"session_id": session_id})

            self.repository.rollback()
            self._log_error_event(session_id)

            message = e.message if isinstance(e, SignatureAIError) else "Unknown error during verification"
            return VerificationResult.failure(ERROR_PROCESSING, message)

    def _identify(self, image_bytes: bytes, session_id: Optional[int]) -> VerificationResult:

        roi = extract_roi(image_bytes, threshold=self.config.ROI_TRIM_THRESHOLD)
        probe_embedding = self.engine.embed_image(roi.data)

        neighbors = self.repository.search_similar_embeddings(
            probe_embedding, self.config.KNN_SEARCH_LIMIT
        )

        if not neighbors:
            logger.info("No similar embeddings found in database", extra={"session_id": session_id})

            self.repository.create_verification_event(
                decision=Decision.NO_MATCH.value,
                score=0.0,
                session_id=session_id,
            )

            return VerificationResult(
                success=True,
                match=False,
                predicted_student_id=None,
                score=0.0,
                decision=Decision.NO_MATCH,
                message="No matching signatures found in the database",
            )

        logger.info(f"Found {len(neighbors)} similar embeddings", extra={"session_id": session_id})

        candidates = group_neighbors(neighbors)
        best_student_id, best_distance = select_best_match(candidates, self.profiles.threshold_for)

        decision = Decision.MATCH if best_student_id is not None else Decision.NO_MATCH
        score = distance_to_score(best_distance)

        predicted_student = None
        if best_student_id is not None:
            student = self.repository.get_student(best_student_id)
            if student is not None:
                predicted_student = {
                    "id"        : student.id,
                    "student_id": student.student_id,
                    "firstname" : student.firstname,
                    "surname"   : student.surname,
                }

        logger.info(
            f"Verification result: {decision.value}, student: {best_student_id}, score: {score:.4f}",
            extra={"session_id": session_id}
        )

        self.repository.create_verification_event(
            decision=decision.value,
            score=score,
            session_id=session_id,
            predicted_student_id=best_student_id,
        )

        if decision == Decision.MATCH and session_id is not None:
            self._mark_present(session_id, best_student_id)

        if decision == Decision.MATCH:
            if predicted_student is not None:
                message = (
                    f"Signature matched: {predicted_student['firstname']} "
                    f"{predicted_student['surname']} ({predicted_student['student_id']})"
                )
            else:
                message = f"Signature matched: student {best_student_id}"
        else:
            message = "No matching signature found"

        return VerificationResult(
            success=True,
            match=decision == Decision.MATCH,
            predicted_student_id=best_student_id,
            score=score,
            decision=decision,
            message=message,
            predicted_student=predicted_student,
        )

    def _mark_present(self, session_id: int, student_id: int) -> bool:
        """
        Best-effort attendance update after a match. A failure is logged and
        does not change the verification response.
        """
        try:
            self.repository.upsert_attendance(session_id, student_id, "present")

        except SQLAlchemyError as e:
            self.repository.rollback()
            logger.warning(
                f"Failed to update attendance for student {student_id} in session {session_id}: {e}",
                extra={"session_id": session_id, "student_id": student_id}
            )
            return False

        logger.info(
            f"Updated attendance for student {student_id} in session {session_id}",
            extra={"session_id": session_id, "student_id": student_id}
        )
        return True

    def _log_error_event(self, session_id: Optional[int]) -> None:
        try:
            self.repository.create_verification_event(
                decision=Decision.ERROR.value,
                score=0.0,
                session_id=session_id,
            )

        except SQLAlchemyError:
            self.repository.rollback()
            logger.error("Failed to record verification error event", exc_info=True)
