from datetime import datetime, timezone
from typing import Optional, Sequence

from signature_ai.core.exceptions import InvalidProfileTransition
from signature_ai.core.logging import get_logger
from signature_ai.models.signatures import ProfileStatus, SignatureProfile


logger = get_logger(__name__)

# Legal status transitions. A profile can always be retrained; training ->
# training restarts a run that was interrupted before reaching ready/error.
# Runs for the same student may overlap, so a run that finishes after another
# one already settled the profile can still record its own outcome.
ALLOWED_TRANSITIONS = {
    ProfileStatus.UNTRAINED: {ProfileStatus.TRAINING},
    ProfileStatus.TRAINING : {ProfileStatus.TRAINING, ProfileStatus.READY, ProfileStatus.ERROR},
    ProfileStatus.READY    : {ProfileStatus.TRAINING, ProfileStatus.READY, ProfileStatus.ERROR},
    ProfileStatus.ERROR    : {ProfileStatus.TRAINING, ProfileStatus.READY, ProfileStatus.ERROR},
}


class ProfileManager:
    """
    Owns the lifecycle of each student's signature profile.

    Transitions are driven by the enrollment pipeline only. The verification
    pipeline reads thresholds through threshold_for() and never writes.
    """
    def __init__(self, repository, default_threshold: float):
        self.repository = repository
        self.default_threshold = default_threshold

    def get_profile(self, student_id: int) -> Optional[SignatureProfile]:
        return self.repository.get_signature_profile(student_id)

    def current_status(self, student_id: int) -> ProfileStatus:
        profile = self.get_profile(student_id)
        if profile is None:
            return ProfileStatus.UNTRAINED
        return ProfileStatus(profile.status)

    def _check_transition(self, student_id: int, target: ProfileStatus) -> None:
        current = self.current_status(student_id)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidProfileTransition(current.value, target.value)

    def begin_training(self, student_id: int) -> SignatureProfile:
        """Enters 'training' and clears any previous error message."""
        self._check_transition(student_id, ProfileStatus.TRAINING)

        logger.info(f"Signature profile {student_id} -> training", extra={"student_id": student_id})

        return self.repository.set_profile_status(
            student_id, ProfileStatus.TRAINING.value, error_message=None
        )

    def mark_ready(
        self,
        student_id: int,
        centroid: Sequence[float],
        num_samples: int,
        threshold: float
    ) -> SignatureProfile:
        """
        Stores the trained centroid/threshold, then flips status to 'ready'.
        The model write happens first so 'ready' never points at a missing
        centroid.
        """
        self._check_transition(student_id, ProfileStatus.READY)

        self.repository.save_profile_training(
            student_id,
            centroid=centroid,
            num_samples=num_samples,
            threshold=threshold,
            trained_at=datetime.now(timezone.utc),
        )

        logger.info(
            f"Signature profile {student_id} -> ready "
            f"(threshold={threshold:.4f}, samples={num_samples})",
            extra={"student_id": student_id}
        )

        return self.repository.set_profile_status(
            student_id, ProfileStatus.READY.value, error_message=None
        )

    def mark_error(self, student_id: int, message: str) -> SignatureProfile:
        """
        Records a failed run. Centroid and threshold of a previous successful
        training are left in place so verification keeps working.
        """
        self._check_transition(student_id, ProfileStatus.ERROR)

        logger.warning(
            f"Signature profile {student_id} -> error: {message}",
            extra={"student_id": student_id}
        )

        return self.repository.set_profile_status(
            student_id, ProfileStatus.ERROR.value, error_message=message
        )

    def threshold_for(self, student_id: int) -> float:
        """Personalised threshold, or the global default if none is stored."""
        profile = self.get_profile(student_id)

        if profile is None or profile.threshold is None:
            return self.default_threshold

        return float(profile.threshold)
