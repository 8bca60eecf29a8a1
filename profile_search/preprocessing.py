"""
Image preprocessing pipeline for profile matching.

Brings catalog photos and camera frames into the fixed geometry the
feature extractor expects: RGB, uint8, alpha removed, fill-resized to
a square of EMBED_INPUT_SIZE pixels. Also provides the horizontal
mirror used for reverse-face matching and the central square crop used
by the capture and live comparison paths.
"""

import os
import logging

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Extractor input side length. MobileNet-family backbones expect 224.
EMBED_INPUT_SIZE = int(os.environ.get("EMBED_INPUT_SIZE", "224"))

# Central square side as a fraction of the frame's shorter dimension.
DEFAULT_CROP_FRACTION = float(os.environ.get("LIVE_CROP_FRACTION", "0.5"))


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8."""
    if image_np.dtype != np.uint8:
        if image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)
    return image_np


def to_rgb(image_np: np.ndarray) -> np.ndarray:
    """
    Convert an RGB, RGBA or grayscale array to 3-channel RGB.

    The alpha channel is dropped, not composited.
    """
    image_np = normalize_image(image_np)
    if image_np.ndim == 2:
        return cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    channels = image_np.shape[2]
    if channels == 4:
        return np.ascontiguousarray(image_np[:, :, :3])
    if channels == 1:
        return cv2.cvtColor(image_np[:, :, 0], cv2.COLOR_GRAY2RGB)
    return image_np


def load_image(path: str) -> np.ndarray:
    """
    Decode an image file into an RGB uint8 array.

    Raises:
        ValueError: If OpenCV cannot decode the file.
    """
    image = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if image is None:
        raise ValueError(f"Could not decode image: {path}")

    if image.ndim == 2:
        return cv2.cvtColor(normalize_image(image), cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        return cv2.cvtColor(normalize_image(image), cv2.COLOR_BGRA2RGB)
    return cv2.cvtColor(normalize_image(image), cv2.COLOR_BGR2RGB)


def resize_for_extractor(image_np: np.ndarray,
                         size: int = None) -> np.ndarray:
    """
    Fill-resize an image to the extractor's square input geometry.

    Aspect ratio is not preserved (the catalog embeddings were built the
    same way, so queries must match).

    Args:
        image_np: Image array (RGB, RGBA or grayscale).
        size: Target side length. Defaults to EMBED_INPUT_SIZE.

    Returns:
        RGB uint8 array of shape (size, size, 3).
    """
    size = size or EMBED_INPUT_SIZE
    rgb = to_rgb(image_np)
    h, w = rgb.shape[:2]
    if (h, w) == (size, size):
        return rgb
    interpolation = cv2.INTER_AREA if h > size or w > size else cv2.INTER_LINEAR
    return cv2.resize(rgb, (size, size), interpolation=interpolation)


def flip_horizontally(image_np: np.ndarray) -> np.ndarray:
    """Mirror an image left-to-right (the part photographed from its other face)."""
    return cv2.flip(image_np, 1)


def extract_center_patch(image_np: np.ndarray,
                         fraction: float = None) -> np.ndarray:
    """
    Extract the central square of a frame.

    The square side is `fraction` of the shorter image dimension,
    centered in both axes. Offsets are floored so the same frame always
    produces the same crop.

    Args:
        image_np: Image array.
        fraction: Side length as a fraction of min(height, width),
            in (0, 1]. Defaults to DEFAULT_CROP_FRACTION.

    Returns:
        Cropped square patch (a view into image_np).

    Raises:
        ValueError: If fraction is outside (0, 1].
    """
    fraction = DEFAULT_CROP_FRACTION if fraction is None else fraction
    if not 0 < fraction <= 1:
        raise ValueError(f"Crop fraction must be in (0, 1], got {fraction}")

    h, w = image_np.shape[:2]
    size = max(1, int(min(h, w) * fraction))
    x1 = (w - size) // 2
    y1 = (h - size) // 2

    return image_np[y1:y1 + size, x1:x1 + size]


def prepare_query(frame: np.ndarray,
                  crop_fraction: float = None,
                  size: int = None) -> np.ndarray:
    """
    Turn a full camera frame into an extractor-ready query image.

    Crops the central square and fill-resizes it to the extractor
    geometry. This is what gets embedded when the user captures a
    frame for searching or for committing an exemplar.
    """
    patch = extract_center_patch(frame, crop_fraction)
    return resize_for_extractor(patch, size)


def downsample_preview(frame: np.ndarray,
                       crop_fraction: float = None,
                       preview_size: int = 160,
                       size: int = None) -> np.ndarray:
    """
    Build the low-resolution image used by the live comparison loop.

    The central square is first reduced to `preview_size` and only then
    brought to extractor geometry, so the live score reflects the
    preview rather than the full-resolution capture.
    """
    patch = extract_center_patch(frame, crop_fraction)
    preview = cv2.resize(to_rgb(patch), (preview_size, preview_size),
                         interpolation=cv2.INTER_AREA)
    return resize_for_extractor(preview, size)


def encode_jpeg(image_np: np.ndarray, quality: int = 90) -> bytes:
    """
    Encode an RGB image as JPEG bytes.

    Raises:
        ValueError: If OpenCV fails to encode the image.
    """
    bgr = cv2.cvtColor(to_rgb(image_np), cv2.COLOR_RGB2BGR)
    ok, buffer = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()
