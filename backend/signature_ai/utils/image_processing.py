import io
import random
from typing import NamedTuple, Optional, Sequence

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from signature_ai.core.exceptions import AugmentationFailed, PreprocessingFailed
from signature_ai.core.logging import get_logger


logger = get_logger(__name__)

WHITE = 255

# Normalized intensity above which a pixel counts as background (1.0)
BINARIZATION_THRESHOLD = 0.5

# Percentiles used to stretch the grayscale histogram
NORMALIZE_LOW_PERCENTILE = 1.0
NORMALIZE_HIGH_PERCENTILE = 99.0

MAX_ROTATION_DEGREES = 5.0

AUGMENTATION_KINDS = ("rotation", "blur", "contrast")

# Pillow format name -> MIME type
PIL_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG" : "image/png",
    "WEBP": "image/webp",
}


class ValidationResult(NamedTuple):
    valid: bool
    error: Optional[str] = None


class RoiResult(NamedTuple):
    """
    Outcome of ROI extraction. trimmed=False means the original bytes were
    returned unchanged because cropping was not possible.
    """
    data: bytes
    trimmed: bool


def decode_image(image_bytes: bytes, flags: int = cv2.IMREAD_COLOR) -> np.ndarray:
    """
    Decodes encoded image bytes (JPEG/PNG/WebP) into an OpenCV array.

    Raises:
        PreprocessingFailed: If the bytes are empty or not a decodable image.
    """
    if not image_bytes:
        raise PreprocessingFailed("Empty image payload")

    np_arr = np.frombuffer(image_bytes, np.uint8)
    image = cv2.imdecode(np_arr, flags)

    if image is None:
        raise PreprocessingFailed("Failed to decode signature image")

    return image


def encode_png(image: np.ndarray) -> bytes:
    """Encodes an OpenCV array as PNG bytes (lossless, keeps strokes intact)."""
    ok, buffer = cv2.imencode(".png", image)
    if not ok:
        raise PreprocessingFailed("Failed to encode image as PNG")
    return buffer.tobytes()


def resize_contain(
    image: np.ndarray,
    target_size: tuple,
    background: int = WHITE
) -> np.ndarray:
    """
    Resizes a grayscale image to fit inside (width, height) while keeping its
    aspect ratio, then centers it on a background-filled canvas.
    Nothing is cropped, but the content may not fill the frame.
    """
    target_w, target_h = target_size
    h, w = image.shape[:2]

    scale = min(target_w / w, target_h / h)
    new_w = max(1, min(target_w, int(round(w * scale))))
    new_h = max(1, min(target_h, int(round(h * scale))))

    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)

    canvas = np.full((target_h, target_w), background, dtype=np.uint8)
    x0 = (target_w - new_w) // 2
    y0 = (target_h - new_h) // 2
    canvas[y0:y0 + new_h, x0:x0 + new_w] = resized

    return canvas


def normalize_histogram(gray: np.ndarray) -> np.ndarray:
    """
    Stretches the grayscale histogram so the 1st/99th percentiles map to
    0/255. A flat image (no contrast to stretch) is returned unchanged.
    """
    low, high = np.percentile(gray, (NORMALIZE_LOW_PERCENTILE, NORMALIZE_HIGH_PERCENTILE))

    if high <= low:
        return gray

    stretched = (gray.astype(np.float32) - low) * (255.0 / (high - low))
    return np.clip(stretched, 0, 255).astype(np.uint8)


def preprocess_signature(
    image_bytes: bytes,
    width: int = 256,
    height: int = 128
) -> np.ndarray:
    """
    Converts a raw signature image into the model's input tensor.

    Steps: decode as grayscale, "contain" resize onto a white width x height
    canvas, histogram normalization, scale to [0, 1], then a hard global
    binarization (> 0.5 -> 1.0, else 0.0).

    Args:
        image_bytes (bytes): Encoded image (JPEG/PNG/WebP).
        width (int): Target tensor width.
        height (int): Target tensor height.

    Returns:
        np.ndarray: 1D float32 array of width * height values in {0.0, 1.0},
                    row-major (height rows of width pixels).

    Raises:
        PreprocessingFailed: On any decode/resize error.
    """
    try:
        gray = decode_image(image_bytes, cv2.IMREAD_GRAYSCALE)
        canvas = resize_contain(gray, (width, height))
        normalized = normalize_histogram(canvas)

        pixels = normalized.astype(np.float32) / 255.0
        binary = np.where(pixels > BINARIZATION_THRESHOLD, 1.0, 0.0).astype(np.float32)

        return binary.reshape(-1)

    except PreprocessingFailed:
        raise

    except (cv2.error, ValueError) as e:
        logger.error("Error preprocessing signature image", exc_info=True)
        raise PreprocessingFailed("Failed to preprocess signature image") from e


def validate_image(
    image_bytes: bytes,
    allowed_mime_types: Sequence[str] = ("image/jpeg", "image/png", "image/webp"),
    max_file_size: int = 10 * 1024 * 1024,
    min_width: int = 50,
    min_height: int = 25
) -> ValidationResult:
    """
    Checks format, byte size and pixel dimensions of an uploaded image.
    Corrupted or unparseable input is reported as invalid, never raised.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            image_format = img.format
            img_width, img_height = img.size

    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return ValidationResult(False, "Invalid or corrupted image file.")

    mime_type = PIL_FORMAT_TO_MIME.get(image_format or "")

    if mime_type is None or mime_type not in allowed_mime_types:
        return ValidationResult(
            False, "Invalid image format. Only JPEG, PNG, and WebP are supported."
        )

    if len(image_bytes) > max_file_size:
        return ValidationResult(
            False,
            f"Image file too large. Maximum size is {max_file_size // (1024 * 1024)}MB."
        )

    if img_width < min_width or img_height < min_height:
        return ValidationResult(
            False, f"Image too small. Minimum size is {min_width}x{min_height} pixels."
        )

    return ValidationResult(True)


def extract_roi(image_bytes: bytes, threshold: int = 10) -> RoiResult:
    """
    Crops the image to the bounding box of the signature strokes.

    The background colour is taken from the top-left pixel; any pixel whose
    channels all lie within `threshold` of it is treated as border.

    Best effort: if the image cannot be decoded or holds no foreground, the
    original bytes are returned with trimmed=False.
    """
    try:
        image = decode_image(image_bytes, cv2.IMREAD_COLOR)

    except PreprocessingFailed:
        logger.warning("ROI extraction skipped: image could not be decoded.")
        return RoiResult(image_bytes, False)

    background = image[0, 0].astype(np.int16)
    difference = np.abs(image.astype(np.int16) - background).max(axis=2)
    foreground = difference > threshold

    rows = np.flatnonzero(foreground.any(axis=1))
    cols = np.flatnonzero(foreground.any(axis=0))

    if rows.size == 0 or cols.size == 0:
        logger.warning("ROI extraction skipped: no foreground found.")
        return RoiResult(image_bytes, False)

    y1, y2 = rows[0], rows[-1] + 1
    x1, x2 = cols[0], cols[-1] + 1

    cropped = image[y1:y2, x1:x2]

    try:
        return RoiResult(encode_png(cropped), True)

    except PreprocessingFailed:
        logger.warning("ROI extraction skipped: cropped image could not be encoded.")
        return RoiResult(image_bytes, False)


def rotate_image(image: np.ndarray, angle: float) -> np.ndarray:
    """
    Rotates the image around its center, expanding the canvas so no stroke
    is cut off. Uncovered areas are filled with white.
    """
    h, w = image.shape[:2]
    center = (w / 2.0, h / 2.0)

    matrix = cv2.getRotationMatrix2D(center, angle, 1.0)
    cos = abs(matrix[0, 0])
    sin = abs(matrix[0, 1])

    new_w = int(round(h * sin + w * cos))
    new_h = int(round(h * cos + w * sin))

    # Shift so the rotated content lands in the middle of the new canvas
    matrix[0, 2] += (new_w / 2.0) - center[0]
    matrix[1, 2] += (new_h / 2.0) - center[1]

    return cv2.warpAffine(
        image,
        matrix,
        (new_w, new_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(WHITE, WHITE, WHITE)
    )


def augment_image(image_bytes: bytes, kind: str) -> bytes:
    """
    Produces one synthetic training variant of a signature image.

    kind:
        rotation -> random rotation in [-5, 5] degrees, white fill
        blur     -> gaussian blur with sigma in [0.5, 1.0]
        contrast -> linear contrast scaling by a factor in [0.8, 1.2]

    Uses the process-wide `random` module, so every call differs.

    Raises:
        AugmentationFailed: If the image cannot be transformed.
        ValueError: If kind is not one of AUGMENTATION_KINDS.
    """
    if kind not in AUGMENTATION_KINDS:
        raise ValueError(f"Unknown augmentation '{kind}'. Valid kinds: {AUGMENTATION_KINDS}")

    try:
        image = decode_image(image_bytes, cv2.IMREAD_COLOR)

        if kind == "rotation":
            angle = (random.random() - 0.5) * 2 * MAX_ROTATION_DEGREES
            augmented = rotate_image(image, angle)

        elif kind == "blur":
            sigma = 0.5 + random.random() * 0.5
            augmented = cv2.GaussianBlur(image, (0, 0), sigmaX=sigma)

        else:
            contrast = 0.8 + random.random() * 0.4
            augmented = cv2.convertScaleAbs(image, alpha=contrast, beta=0)

        return encode_png(augmented)

    except (PreprocessingFailed, cv2.error) as e:
        raise AugmentationFailed(
            "Failed to augment signature image", context={"kind": kind}
        ) from e
