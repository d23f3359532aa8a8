import os
import time
from typing import Optional

import numpy as np
import onnxruntime as ort

from signature_ai.core.exceptions import DimensionMismatch, EmbeddingFailed
from signature_ai.core.logging import get_logger
from signature_ai.services.signature_math import l2_normalize
from signature_ai.utils.image_processing import preprocess_signature


logger = get_logger(__name__)

# Only the first HASH_WINDOW tensor elements feed the fallback hash
HASH_WINDOW = 1000

# Linear congruential generator constants for the fallback embedding
LCG_MULTIPLIER = 9301
LCG_INCREMENT = 49297
LCG_MODULUS = 233280

MODE_ONNX = "onnx"
MODE_FALLBACK = "fallback"


def _to_int32(value: int) -> int:
    """Wraps an integer to the signed 32-bit range (two's complement)."""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def content_hash(tensor: np.ndarray, window: int = HASH_WINDOW) -> int:
    """
    Rolling 32-bit hash over the first `window` elements of a preprocessed
    tensor: hash = hash * 31 + value * 255, with int32 wraparound.
    """
    hash_value = 0

    for value in np.asarray(tensor, dtype=np.float32).reshape(-1)[:window]:
        shifted = _to_int32(hash_value << 5)
        hash_value = _to_int32(int(shifted - hash_value + float(value) * 255.0))

    return hash_value


def seeded_uniform(seed: int, count: int) -> np.ndarray:
    """
    Draws `count` values in [0, 1) from a linear congruential generator.
    The same seed always produces the same sequence.
    """
    state = seed
    values = np.empty(count, dtype=np.float64)

    for i in range(count):
        state = (state * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
        values[i] = state / LCG_MODULUS

    return values


class EmbeddingEngine:
    """
    Owns the ONNX signature embedding model.

    Constructed once per process (FastAPI lifespan) and shared read-only
    across requests. When the model file is missing or fails to load the
    engine stays in a permanent fallback mode that derives deterministic
    pseudo-embeddings from the image content.
    """
    def __init__(
        self,
        model_path: str,
        embed_dim: int = 512,
        input_width: int = 256,
        input_height: int = 128
    ):
        self.model_path = model_path
        self.embed_dim = embed_dim
        self.input_width = input_width
        self.input_height = input_height
        self.session: Optional[ort.InferenceSession] = None
        self.load_error: Optional[str] = None

    @property
    def is_model_loaded(self) -> bool:
        return self.session is not None

    @property
    def mode(self) -> str:
        return MODE_ONNX if self.is_model_loaded else MODE_FALLBACK

    def load_model(self) -> bool:
        """
        Initializes the ONNX Runtime session on CPU.

        Never raises: a missing or broken model file is logged and the engine
        keeps serving fallback embeddings.

        Returns:
            bool: True if the real model is loaded.
        """
        providers = ['CPUExecutionProvider']

        if not os.path.exists(self.model_path):
            self.load_error = f"Model file not found at {self.model_path}"
            logger.warning(f"{self.load_error}. Using fallback embeddings.")
            return False

        try:
            self.session = ort.InferenceSession(self.model_path, providers=providers)
            self.load_error = None
            logger.info(f"Signature model loaded from {self.model_path}. Providers: {providers}")
            return True

        except Exception as e:
            # onnxruntime raises its own exception types for corrupt files / bad opsets
            self.session = None
            self.load_error = str(e)
            logger.error(
                f"Could not load ONNX model, using fallback embeddings: {e}",
                exc_info=True
            )
            return False

    def clear_model(self):
        """
        Releases the session during shutdown.
        """
        self.session = None

    def status(self) -> dict:
        """
        Model status for the health endpoint. Fallback embeddings are not
        production quality, so the mode is always reported explicitly.
        """
        return {
            "mode"       : self.mode,
            "loaded"     : self.is_model_loaded,
            "model_path" : self.model_path,
            "embed_dim"  : self.embed_dim,
            "error"      : self.load_error,
        }

    def generate_embedding(self, tensor: np.ndarray) -> np.ndarray:
        """
        Maps a preprocessed signature tensor to a unit embedding.

        Args:
            tensor (np.ndarray): Flat (height * width) binarized tensor from
                                 preprocess_signature().

        Returns:
            np.ndarray: 1D float64 array of shape (embed_dim,), L2-normalized
                        (or all zeros if the raw output had zero magnitude).
        """
        if self.session is None:
            return self.generate_fallback_embedding(tensor)

        return self._run_onnx_inference(tensor)

    def embed_image(self, image_bytes: bytes) -> np.ndarray:
        """
        Preprocesses raw image bytes and returns their embedding.
        """
        tensor = preprocess_signature(
            image_bytes,
            width=self.input_width,
            height=self.input_height
        )
        return self.generate_embedding(tensor)

    def _run_onnx_inference(self, tensor: np.ndarray) -> np.ndarray:

        start = time.time()

        try:
            input_tensor = np.asarray(tensor, dtype=np.float32).reshape(
                1, 1, self.input_height, self.input_width
            )
            input_name = self.session.get_inputs()[0].name
            raw_outputs = self.session.run(None, {input_name: input_tensor})

        except Exception as e:
            logger.error("ONNX inference failed", exc_info=True)
            raise EmbeddingFailed("ONNX inference failed") from e

        # First declared output is the embedding, shape (1, embed_dim)
        embedding = np.asarray(raw_outputs[0], dtype=np.float64).flatten()

        if embedding.shape[0] != self.embed_dim:
            raise DimensionMismatch(self.embed_dim, embedding.shape[0])

        embedding = l2_normalize(embedding)

        logger.debug(f"Embedding generated in {time.time() - start:.4f}s")

        return embedding

    def generate_fallback_embedding(self, tensor: np.ndarray) -> np.ndarray:
        """
        Deterministic pseudo-embedding used when no model is loaded.

        Hashes the first pixels of the tensor, seeds an LCG with the absolute
        hash and draws embed_dim values in [-1, 1]. Identical images always
        map to the same vector; the vectors carry no semantic meaning.
        """
        seed = abs(content_hash(tensor))
        values = (seeded_uniform(seed, self.embed_dim) - 0.5) * 2

        logger.debug("Generated fallback embedding (no model loaded).")

        return l2_normalize(values)
