"""
Exception hierarchy for the signature verification service.

Every error raised on purpose by the pipelines derives from SignatureAIError,
so callers can tell an expected per-sample or input failure apart from a
genuine bug (which surfaces as any other exception type).
"""

from typing import Any, Dict, Optional


class SignatureAIError(Exception):
    """
    Base exception for all signature verification errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context about the error (ids, urls, sizes).
    error_code : str, optional
        Machine-readable tag used in HTTP responses.
    """

    error_code: str = "SIGNATURE_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Dictionary representation for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


# Image / model processing (per-sample, recoverable during enrollment)

class PreprocessingFailed(SignatureAIError):
    """Raised when an image cannot be decoded, resized or binarized."""

    error_code = "PREPROCESSING_FAILED"


class AugmentationFailed(SignatureAIError):
    """Raised when a synthetic training variant cannot be produced."""

    error_code = "AUGMENTATION_FAILED"


class EmbeddingFailed(SignatureAIError):
    """Raised when the ONNX session fails to produce an embedding."""

    error_code = "EMBEDDING_FAILED"


class DimensionMismatch(SignatureAIError):
    """Raised when two vectors that must share a length do not."""

    error_code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            context={"expected": expected, "actual": actual},
        )


class ImageDownloadError(SignatureAIError):
    """Raised when a stored sample image cannot be fetched."""

    error_code = "DOWNLOAD_FAILED"

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(
            f"Failed to download image {url}: {reason}",
            context={"url": url},
        )


# Enrollment

class StudentNotFound(SignatureAIError):
    error_code = "STUDENT_NOT_FOUND"

    def __init__(self, student_id: int) -> None:
        super().__init__(
            f"Student with ID {student_id} not found",
            context={"student_id": student_id},
        )


class InsufficientSamples(SignatureAIError):
    """Raised before any processing when a student has too few sample images."""

    error_code = "INSUFFICIENT_SAMPLES"

    def __init__(self, found: int, required: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or (
                f"At least {required} signature images are required for training. "
                f"Found {found}."
            ),
            context={"found": found, "required": required},
        )
        self.found = found
        self.required = required


class NoSignatureImages(InsufficientSamples):
    error_code = "NO_SIGNATURE_IMAGES"

    def __init__(self, required: int) -> None:
        super().__init__(
            0,
            required,
            message=(
                "No signature images available for training. "
                "Please upload signature images first."
            ),
        )


class NoValidSamples(SignatureAIError):
    """Raised when processing the samples did not yield enough embeddings."""

    error_code = "NO_VALID_SAMPLES"


class InvalidProfileTransition(SignatureAIError):
    error_code = "INVALID_PROFILE_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move signature profile from '{current}' to '{target}'",
            context={"current": current, "target": target},
        )
