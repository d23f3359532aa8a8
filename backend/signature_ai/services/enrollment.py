from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Callable, List, Optional

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from signature_ai.core.config import Settings
from signature_ai.core.exceptions import (
    ImageDownloadError,
    InsufficientSamples,
    NoSignatureImages,
    NoValidSamples,
    SignatureAIError,
    StudentNotFound,
)
from signature_ai.core.logging import get_logger
from signature_ai.models.signatures import SignatureImage, SignatureProfile
from signature_ai.models.students import Student
from signature_ai.services.embedding_engine import EmbeddingEngine
from signature_ai.services.profile_manager import ProfileManager
from signature_ai.services.signature_math import compute_adaptive_threshold, compute_centroid
from signature_ai.utils.downloads import fetch_image_bytes
from signature_ai.utils.image_processing import augment_image, extract_roi, validate_image


logger = get_logger(__name__)


@dataclass
class TrainingResult:
    profile: SignatureProfile
    images_found: int
    images_processed: int
    embeddings_generated: int
    augmented_samples: int

    @property
    def message(self) -> str:
        return (
            f"Training completed successfully. Processed {self.images_processed} images, "
            f"generated {self.embeddings_generated} embeddings."
        )


class EnrollmentPipeline:
    """
    Builds (or rebuilds) a student's signature profile from their sample
    images: embeddings for every usable sample plus a few rotated variants,
    a centroid, and a threshold derived from the samples' own spread.

    Per-sample failures (download, validation, embedding) only skip that
    sample. Anything else that goes wrong after the profile entered
    'training' moves it to 'error' and is re-raised.
    """
    def __init__(
        self,
        repository,
        engine: EmbeddingEngine,
        config: Settings,
        downloader: Optional[Callable[[str], bytes]] = None
    ):
        self.repository = repository
        self.engine = engine
        self.config = config
        self.profiles = ProfileManager(repository, config.DEFAULT_THRESHOLD)
        self.downloader = downloader or partial(
            fetch_image_bytes,
            timeout=config.DOWNLOAD_TIMEOUT_SECONDS,
            max_bytes=config.MAX_FILE_SIZE
        )

    def train(self, student_id: int) -> TrainingResult:

        student = self.repository.get_student(student_id)
        if student is None:
            raise StudentNotFound(student_id)

        log_extra = {"student_id": student_id}

        logger.info(
            f"Starting training for student {student.student_id} "
            f"({student.firstname} {student.surname})",
            extra=log_extra
        )

        self.profiles.begin_training(student_id)

        try:
            return self._run(student)

        except Exception as e:
            message = e.message if isinstance(e, SignatureAIError) else (str(e) or e.__class__.__name__)

            logger.error(f"Training failed for student {student_id}: {message}", extra=log_extra)

            # A failed DB statement leaves the session unusable until rolled back
            self.repository.rollback()
            self._record_failure(student_id, message)

            raise

    def _record_failure(self, student_id: int, message: str) -> None:
        """
        Moves the profile to 'error'. A failure here is logged and never
        replaces the exception that ended the run.
        """
        try:
            self.profiles.mark_error(student_id, message)

        except (SignatureAIError, SQLAlchemyError):
            self.repository.rollback()
            logger.error(
                f"Failed to record training error for student {student_id}",
                exc_info=True,
                extra={"student_id": student_id}
            )

    def _run(self, student: Student) -> TrainingResult:

        min_samples = self.config.MIN_SAMPLES_FOR_TRAINING
        log_extra = {"student_id": student.id}

        images = self._gather_images(student)

        if not images:
            raise NoSignatureImages(min_samples)

        if len(images) < min_samples:
            raise InsufficientSamples(len(images), min_samples)

        logger.info(f"Processing {len(images)} signature images for training", extra=log_extra)

        # Plain URLs only: worker threads must not touch ORM rows of this session
        urls = [image.public_url for image in images]
        payloads = self._download_all(student.id, urls)

        embeddings: List[np.ndarray] = []
        processed_count = 0
        augmented_count = 0

        for index, (image, payload) in enumerate(zip(images, payloads), start=1):

            if payload is None:
                continue

            logger.debug(f"Processing image {index}/{len(images)}: {image.public_url}", extra=log_extra)

            sample = self._process_sample(student.id, image, payload)
            if sample is None:
                continue

            roi_bytes, embedding = sample
            embeddings.append(embedding)
            processed_count += 1

            # Rotated variants until there are twice the minimum samples
            if len(embeddings) < min_samples * 2:
                augmented = self._augmented_embedding(roi_bytes)
                if augmented is not None:
                    embeddings.append(augmented)
                    self.repository.add_signature_embedding(student.id, None, augmented)
                    augmented_count += 1

        if not embeddings:
            raise NoValidSamples("No valid signature images could be processed")

        if len(embeddings) < min_samples:
            raise NoValidSamples(
                f"Only {len(embeddings)} usable signature embeddings could be produced. "
                f"At least {min_samples} are required."
            )

        logger.info(
            f"Successfully processed {processed_count} images, "
            f"generated {len(embeddings)} embeddings",
            extra=log_extra
        )

        centroid = compute_centroid(embeddings, self.engine.embed_dim)
        threshold = compute_adaptive_threshold(
            embeddings,
            centroid,
            default_threshold=self.config.DEFAULT_THRESHOLD,
            min_threshold=self.config.MIN_THRESHOLD
        )

        profile = self.profiles.mark_ready(
            student.id,
            centroid=centroid,
            num_samples=len(embeddings),
            threshold=threshold
        )

        logger.info(
            f"Training completed for student {student.student_id}. "
            f"Threshold: {threshold:.4f}, Samples: {len(embeddings)}",
            extra=log_extra
        )

        return TrainingResult(
            profile=profile,
            images_found=len(images),
            images_processed=processed_count,
            embeddings_generated=len(embeddings),
            augmented_samples=augmented_count,
        )

    def _gather_images(self, student: Student) -> List[SignatureImage]:
        """
        Sample image rows of the student. Students enrolled before the
        signature_images table existed only have URLs on the student row;
        those are migrated into image rows once.
        """
        images = self.repository.get_signature_images(student.id)
        if images:
            return images

        if student.signature_urls:
            urls = [url for url in student.signature_urls if url]
        elif student.signature_url:
            urls = [student.signature_url]
        else:
            urls = []

        if urls:
            logger.info(
                f"No signature images found, migrating {len(urls)} legacy signature URLs",
                extra={"student_id": student.id}
            )

        return [self.repository.create_signature_image(student.id, url, url) for url in urls]

    def _download_one(self, student_id: int, url: str) -> Optional[bytes]:
        try:
            return self.downloader(url)

        except ImageDownloadError as e:
            logger.warning(e.message, extra={"student_id": student_id})
            return None

    def _download_all(self, student_id: int, urls: List[str]) -> List[Optional[bytes]]:
        """
        Fetches all samples with bounded parallelism. Results keep the order
        of `urls`; a failed download yields None for that slot only.
        """
        workers = max(1, min(self.config.DOWNLOAD_WORKERS, len(urls)))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(partial(self._download_one, student_id), urls))

    def _process_sample(self, student_id: int, image: SignatureImage, payload: bytes):
        """
        Validates, crops and embeds one sample, then persists the embedding
        and marks the image processed. Returns (roi_bytes, embedding), or
        None if the sample has to be skipped.
        """
        log_extra = {"student_id": student_id}

        validation = validate_image(
            payload,
            allowed_mime_types=self.config.ALLOWED_MIME_TYPES,
            max_file_size=self.config.MAX_FILE_SIZE,
            min_width=self.config.MIN_IMAGE_WIDTH,
            min_height=self.config.MIN_IMAGE_HEIGHT
        )
        if not validation.valid:
            logger.warning(f"Invalid image {image.public_url}: {validation.error}", extra=log_extra)
            return None

        roi = extract_roi(payload, threshold=self.config.ROI_TRIM_THRESHOLD)

        try:
            embedding = self.engine.embed_image(roi.data)

        except SignatureAIError as e:
            logger.warning(f"Error processing image {image.public_url}: {e.message}", extra=log_extra)
            return None

        self.repository.add_signature_embedding(student_id, image.id, embedding)
        self.repository.mark_image_processed(image.id)

        return roi.data, embedding

    def _augmented_embedding(self, roi_bytes: bytes) -> Optional[np.ndarray]:
        try:
            augmented_bytes = augment_image(roi_bytes, "rotation")
            return self.engine.embed_image(augmented_bytes)

        except SignatureAIError as e:
            logger.warning(f"Failed to generate augmented sample: {e.message}")
            return None
