import pytest
import numpy as np
from unittest.mock import patch
from sqlalchemy.exc import OperationalError

from signature_ai.core.config import Settings
from signature_ai.core.exceptions import (
    AugmentationFailed,
    EmbeddingFailed,
    ImageDownloadError,
    InsufficientSamples,
    NoSignatureImages,
    NoValidSamples,
    StudentNotFound,
)
from signature_ai.services.enrollment import EnrollmentPipeline
from tests.mocks import (
    InMemorySignatureRepository,
    make_dict_downloader,
    make_signature_png,
    mock_student,
)

# The pipeline runs against the in-memory repository and the fallback
# embedding engine. Downloads are served from a dict, no network.

URLS = [f"https://storage.example.com/signatures/1/{n}.png" for n in range(1, 5)]


def _payloads(count: int = 3) -> dict:
    """Same stroke on different canvases: every sample crops identically."""
    return {
        url: make_signature_png(canvas_size=(300 + 20 * i, 150 + 10 * i), offset=(5 * i, 3 * i))
        for i, url in enumerate(URLS[:count])
    }


def _pipeline(repository, engine, downloader, **overrides) -> EnrollmentPipeline:
    overrides.setdefault("DOWNLOAD_WORKERS", 2)
    config = Settings(_env_file=None, **overrides)
    return EnrollmentPipeline(repository, engine, config, downloader=downloader)


def _add_images(repository, count: int = 3):
    for url in URLS[:count]:
        repository.add_image(1, url)


class TestTrainSuccess:
    """Happy path of EnrollmentPipeline.train()."""

    def test_profile_becomes_ready(self, repository, fallback_engine):
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        result = pipeline.train(1)

        assert result.profile.status == "ready"
        assert result.profile.error_message is None
        assert result.images_found == 3
        assert result.images_processed == 3

    def test_one_augmentation_per_sample_below_double_minimum(self, repository, fallback_engine):
        """
        With min=3: sample, aug, sample, aug, sample, aug -> 6 embeddings.
        """
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        result = pipeline.train(1)

        assert result.embeddings_generated == 6
        assert result.augmented_samples == 3
        assert result.profile.num_samples == 6

        stored = repository.get_signature_embeddings(1)
        assert len(stored) == 6
        assert sum(1 for row in stored if row.image_id is None) == 3

    def test_augmentation_stops_at_double_minimum(self, repository, fallback_engine):
        """
        With min=1 only the first sample gets an augmentation (count 1 < 2);
        after that the running count is already >= 2.
        """
        _add_images(repository, 3)
        pipeline = _pipeline(
            repository, fallback_engine, make_dict_downloader(_payloads(3)),
            MIN_SAMPLES_FOR_TRAINING=1
        )

        result = pipeline.train(1)

        assert result.augmented_samples == 1
        assert result.embeddings_generated == 4

    def test_images_marked_processed(self, repository, fallback_engine):
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        pipeline.train(1)

        assert all(image.processed for image in repository.images)

    def test_identical_samples_get_floor_threshold(self, repository, fallback_engine):
        """
        Identical crops give identical fallback embeddings: zero spread,
        so the threshold is clamped to the 0.1 floor.
        """
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        result = pipeline.train(1)

        assert result.profile.threshold == pytest.approx(0.1)
        assert np.linalg.norm(result.profile.embedding_centroid) == pytest.approx(1.0)

    def test_single_embedding_gets_default_threshold(self, repository, fallback_engine):
        _add_images(repository, 1)
        pipeline = _pipeline(
            repository, fallback_engine, make_dict_downloader(_payloads(1)),
            MIN_SAMPLES_FOR_TRAINING=1
        )

        with patch(
            "signature_ai.services.enrollment.augment_image",
            side_effect=AugmentationFailed("Failed to augment signature image")
        ):
            result = pipeline.train(1)

        assert result.embeddings_generated == 1
        assert result.augmented_samples == 0
        assert result.profile.threshold == 0.35

    def test_message_reports_counts(self, repository, fallback_engine):
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        result = pipeline.train(1)

        assert result.message == (
            "Training completed successfully. Processed 3 images, generated 6 embeddings."
        )

    def test_retrain_replaces_model(self, repository, fallback_engine):
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        pipeline.train(1)
        result = pipeline.train(1)

        assert result.profile.status == "ready"


class TestSkippedSamples:
    """Per-sample failures skip the sample without failing the run."""

    def test_failed_download_is_skipped(self, repository, fallback_engine):
        _add_images(repository, 4)
        downloader = make_dict_downloader(_payloads(3))  # URLS[3] -> 404
        pipeline = _pipeline(repository, fallback_engine, downloader)

        result = pipeline.train(1)

        assert result.images_found == 4
        assert result.images_processed == 3
        assert sorted(downloader.calls) == sorted(URLS)
        assert repository.images[3].processed is False

    def test_invalid_image_is_skipped(self, repository, fallback_engine):
        _add_images(repository, 4)
        payloads = _payloads(3)
        payloads[URLS[3]] = b"<html>not an image</html>"
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(payloads))

        result = pipeline.train(1)

        assert result.images_processed == 3
        assert repository.images[3].processed is False

    def test_embedding_failure_is_skipped(self, repository, fallback_engine):
        _add_images(repository, 4)
        payloads = _payloads(4)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(payloads))

        real_embed = fallback_engine.embed_image
        calls = {"count": 0}

        def flaky_embed(image_bytes):
            calls["count"] += 1
            if calls["count"] == 1:
                raise EmbeddingFailed("ONNX inference failed")
            return real_embed(image_bytes)

        with patch.object(fallback_engine, "embed_image", side_effect=flaky_embed):
            result = pipeline.train(1)

        assert result.images_processed == 3
        assert repository.images[0].processed is False


class TestTrainFailures:
    """Data-sufficiency and pipeline-fatal errors."""

    def test_unknown_student(self, repository, fallback_engine):
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader({}))

        with pytest.raises(StudentNotFound):
            pipeline.train(404)

        assert repository.get_signature_profile(404) is None

    def test_no_images(self, repository, fallback_engine):
        downloader = make_dict_downloader({})
        pipeline = _pipeline(repository, fallback_engine, downloader)

        with pytest.raises(NoSignatureImages) as exc_info:
            pipeline.train(1)

        profile = repository.get_signature_profile(1)
        assert profile.status == "error"
        assert profile.error_message == exc_info.value.message
        assert downloader.calls == []

    def test_no_images_is_an_insufficient_samples_error(self, repository, fallback_engine):
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader({}))

        with pytest.raises(InsufficientSamples):
            pipeline.train(1)

    def test_below_minimum_fails_before_downloading(self, repository, fallback_engine):
        _add_images(repository, 2)
        downloader = make_dict_downloader(_payloads())
        pipeline = _pipeline(repository, fallback_engine, downloader)

        with pytest.raises(InsufficientSamples) as exc_info:
            pipeline.train(1)

        assert not isinstance(exc_info.value, NoSignatureImages)
        assert exc_info.value.found == 2
        assert exc_info.value.required == 3
        assert downloader.calls == []
        assert repository.get_signature_profile(1).status == "error"

    def test_all_downloads_fail(self, repository, fallback_engine):
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader({}))

        with pytest.raises(NoValidSamples):
            pipeline.train(1)

        profile = repository.get_signature_profile(1)
        assert profile.status == "error"
        assert profile.error_message == "No valid signature images could be processed"
        assert repository.get_signature_embeddings(1) == []

    def test_too_few_embeddings_is_fatal(self, repository, fallback_engine):
        """
        One usable sample and a failed augmentation leave 1 embedding,
        below the minimum of 3: the profile must not become ready.
        """
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads(1)))

        with patch(
            "signature_ai.services.enrollment.augment_image",
            side_effect=AugmentationFailed("Failed to augment signature image")
        ):
            with pytest.raises(NoValidSamples):
                pipeline.train(1)

        assert repository.get_signature_profile(1).status == "error"

    def test_unexpected_error_marks_profile_and_propagates(self, repository, fallback_engine):
        _add_images(repository)

        def broken_downloader(url):
            raise RuntimeError("connection pool exhausted")

        pipeline = _pipeline(repository, fallback_engine, broken_downloader)

        with pytest.raises(RuntimeError):
            pipeline.train(1)

        profile = repository.get_signature_profile(1)
        assert profile.status == "error"
        assert profile.error_message == "connection pool exhausted"
        assert repository.rollback_count == 1

    def test_failed_retrain_keeps_previous_model(self, repository, fallback_engine):
        _add_images(repository)
        payloads = _payloads()
        downloader = make_dict_downloader(payloads)
        pipeline = _pipeline(repository, fallback_engine, downloader)

        first = pipeline.train(1)
        centroid = list(first.profile.embedding_centroid)
        threshold = first.profile.threshold

        payloads.clear()
        with pytest.raises(NoValidSamples):
            pipeline.train(1)

        profile = repository.get_signature_profile(1)
        assert profile.status == "error"
        assert profile.embedding_centroid == centroid
        assert profile.threshold == threshold


def _nesting_downloader(payloads: dict, run_nested, fail_after_nested: bool = False):
    """
    Serves `payloads`. The first call runs a complete nested training of the
    same student before answering; with `fail_after_nested` every later call
    fails like an unreachable storage.
    """
    calls = []

    def download(url: str) -> bytes:
        calls.append(url)
        if len(calls) == 1:
            run_nested()
        elif fail_after_nested:
            raise ImageDownloadError(url, "503 Server Error: Service Unavailable")
        return payloads[url]

    return download


class TestOverlappingRuns:
    """A second run for the same student finishing while the first is still working."""

    def test_later_success_is_recorded(self, repository, fallback_engine):
        _add_images(repository)
        payloads = _payloads()
        nested = _pipeline(repository, fallback_engine, make_dict_downloader(payloads))
        nested_results = []

        outer = _pipeline(
            repository,
            fallback_engine,
            _nesting_downloader(payloads, lambda: nested_results.append(nested.train(1))),
            DOWNLOAD_WORKERS=1
        )

        result = outer.train(1)

        assert nested_results[0].profile.status == "ready"
        assert result.profile.status == "ready"
        assert repository.get_signature_profile(1).status == "ready"

    def test_later_failure_surfaces_its_own_error(self, repository, fallback_engine):
        _add_images(repository)
        payloads = _payloads()
        nested = _pipeline(repository, fallback_engine, make_dict_downloader(payloads))
        nested_results = []

        outer = _pipeline(
            repository,
            fallback_engine,
            _nesting_downloader(
                payloads, lambda: nested_results.append(nested.train(1)), fail_after_nested=True
            ),
            DOWNLOAD_WORKERS=1
        )

        with pytest.raises(NoValidSamples):
            outer.train(1)

        profile = repository.get_signature_profile(1)
        assert nested_results[0].profile.status == "ready"
        assert profile.status == "error"
        assert profile.error_message.startswith("Only 2 usable")
        assert profile.threshold == pytest.approx(0.1)

    def test_failure_to_record_error_keeps_original_exception(self, repository, fallback_engine):
        _add_images(repository, count=1)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader({}))

        with patch.object(
            pipeline.profiles,
            "mark_error",
            side_effect=OperationalError("UPDATE signature_profiles", {}, Exception("connection lost"))
        ):
            with pytest.raises(InsufficientSamples):
                pipeline.train(1)

        assert repository.rollback_count == 2


class TestLegacyMigration:
    """Students enrolled before the signature_images table existed."""

    def test_signature_urls_are_migrated(self, fallback_engine):
        repository = InMemorySignatureRepository()
        repository.add_student(mock_student(signature_urls=URLS[:3]))
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        result = pipeline.train(1)

        assert result.profile.status == "ready"
        assert [image.public_url for image in repository.images] == URLS[:3]
        assert [image.storage_path for image in repository.images] == URLS[:3]

    def test_empty_entries_are_ignored(self, fallback_engine):
        repository = InMemorySignatureRepository()
        repository.add_student(mock_student(signature_urls=[URLS[0], "", None, URLS[1], URLS[2]]))
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        pipeline.train(1)

        assert len(repository.images) == 3

    def test_single_signature_url_is_migrated(self, fallback_engine):
        repository = InMemorySignatureRepository()
        repository.add_student(mock_student(signature_url=URLS[0]))
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        with pytest.raises(InsufficientSamples) as exc_info:
            pipeline.train(1)

        assert exc_info.value.found == 1
        assert len(repository.images) == 1

    def test_existing_images_take_precedence(self, repository, fallback_engine):
        repository.students[1].signature_urls = ["https://legacy.example.com/old.png"]
        _add_images(repository)
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        pipeline.train(1)

        assert len(repository.images) == 3
        assert all("legacy" not in image.public_url for image in repository.images)

    def test_migration_happens_once(self, fallback_engine):
        repository = InMemorySignatureRepository()
        repository.add_student(mock_student(signature_urls=URLS[:3]))
        pipeline = _pipeline(repository, fallback_engine, make_dict_downloader(_payloads()))

        pipeline.train(1)
        pipeline.train(1)

        assert len(repository.images) == 3
