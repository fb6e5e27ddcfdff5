"""
Image decoding helpers.

Borrow and return requests carry images as base64 data URLs (what a
browser camera capture produces). The face pipeline works on RGB uint8
numpy arrays, so everything is normalized through `load_image`.
"""

import base64
import binascii
import hashlib
import io
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

from library_lending.errors import InvalidImageError

# HEIF/HEIC uploads from iPhones
register_heif_opener()

ImageInput = Union[str, bytes, np.ndarray]


def image_to_base64(image_bytes: bytes, format: str = "jpeg") -> str:
    """Convert image bytes to base64 data URL."""
    b64 = base64.b64encode(image_bytes).decode('utf-8')
    return f"data:image/{format};base64,{b64}"


def base64_to_image(data_url: str) -> bytes:
    """Convert base64 data URL (or bare base64) to image bytes."""
    if ',' in data_url:
        data_url = data_url.split(',', 1)[1]
    try:
        return base64.b64decode(data_url, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidImageError(f"Image is not valid base64: {e}")


def calculate_image_hash(image: Union[str, bytes]) -> str:
    """SHA256 of the image payload, used to reference captures in the audit log."""
    if isinstance(image, str):
        image = image.encode('utf-8')
    return hashlib.sha256(image).hexdigest()


def load_image(image: ImageInput) -> np.ndarray:
    """
    Decode an image into an RGB uint8 array of shape (H, W, 3).

    Accepts a data URL / base64 string, raw encoded bytes, or an array
    that is already decoded.
    """
    if isinstance(image, np.ndarray):
        if image.ndim == 2:
            return np.stack([image] * 3, axis=-1).astype(np.uint8)
        if image.ndim != 3 or image.shape[2] not in (3, 4):
            raise InvalidImageError(f"Unsupported image array shape {image.shape}")
        return np.ascontiguousarray(image[:, :, :3], dtype=np.uint8)

    image_bytes = base64_to_image(image) if isinstance(image, str) else image
    if not image_bytes:
        raise InvalidImageError("Image payload is empty")

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = img.convert('RGB')
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidImageError(f"Could not decode image: {e}")

    return np.asarray(img, dtype=np.uint8)


def resize_to_fit(image: np.ndarray, max_side: int) -> Tuple[np.ndarray, float]:
    """
    Downscale so the longest side is at most `max_side`.

    Returns the (possibly unchanged) image and the scale factor applied,
    so detections can be mapped back with `coord / scale`.
    """
    height, width = image.shape[:2]
    longest = max(height, width)
    if longest <= max_side:
        return image, 1.0

    scale = max_side / float(longest)
    size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
    return cv2.resize(image, size, interpolation=cv2.INTER_AREA), scale
