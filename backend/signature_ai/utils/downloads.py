import requests

from signature_ai.core.exceptions import ImageDownloadError
from signature_ai.core.logging import get_logger


logger = get_logger(__name__)


def fetch_image_bytes(url: str, timeout: float = 10.0, max_bytes: int = 10 * 1024 * 1024) -> bytes:
    """
    Downloads one stored signature image. A single attempt, no retries.

    Args:
        url (str): Public URL of the image.
        timeout (float): Connect/read timeout in seconds.
        max_bytes (int): Responses larger than this are rejected.

    Returns:
        bytes: The raw image payload.

    Raises:
        ImageDownloadError: On network errors, non-2xx status or oversized body.
    """
    try:
        with requests.get(url, timeout=timeout, stream=True) as response:
            response.raise_for_status()

            content = bytearray()
            for chunk in response.iter_content(chunk_size=64 * 1024):
                content.extend(chunk)
                if len(content) > max_bytes:
                    raise ImageDownloadError(url, f"response exceeds {max_bytes} bytes")

    except requests.RequestException as e:
        raise ImageDownloadError(url, str(e)) from e

    logger.debug(f"Downloaded {len(content)} bytes from {url}")

    return bytes(content)
