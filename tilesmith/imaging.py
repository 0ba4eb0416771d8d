"""
Raster codec boundary.

Every buffer handled by the core is a 4-channel uint8 BGRA numpy array.
Decoding goes through Pillow so EXIF orientation is honoured; encoding
goes through OpenCV.
"""

import base64
import io
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np
from PIL import Image, ImageOps


PNG_FORMAT = "png"
JPEG_FORMAT = "jpeg"
JPEG_QUALITY = 90

_FORMAT_ALIASES = {
    "png": PNG_FORMAT,
    "jpg": JPEG_FORMAT,
    "jpeg": JPEG_FORMAT,
}

_MIME_TYPES = {
    PNG_FORMAT: "image/png",
    JPEG_FORMAT: "image/jpeg",
}


def normalize_format(fmt: str) -> str:
    """Map a format name or file extension to a supported format."""
    key = fmt.lower().lstrip(".")
    if key not in _FORMAT_ALIASES:
        raise ValueError(f"Unsupported image format: {fmt}")
    return _FORMAT_ALIASES[key]


def format_from_path(path: Union[str, Path]) -> str:
    """Pick the output format from a file suffix. Unknown suffixes fall back to PNG."""
    suffix = Path(path).suffix.lower().lstrip(".")
    return _FORMAT_ALIASES.get(suffix, PNG_FORMAT)


def file_extension(fmt: str) -> str:
    """File extension (without dot) for a format."""
    return "jpg" if normalize_format(fmt) == JPEG_FORMAT else "png"


def to_bgra(image: np.ndarray) -> np.ndarray:
    """
    Normalize a grayscale, BGR or BGRA array to uint8 BGRA.

    Args:
        image: Input image (H, W), (H, W, 1), (H, W, 3) or (H, W, 4)

    Returns:
        New BGRA array
    """
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    if image.ndim == 2 or (image.ndim == 3 and image.shape[2] == 1):
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGRA)
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)
    if image.ndim == 3 and image.shape[2] == 4:
        return image.copy()

    raise ValueError(f"Unsupported image shape: {image.shape}")


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes to a BGRA array.

    Raises:
        ValueError: If the bytes are not a decodable raster image
    """
    if not data:
        raise ValueError("Empty image data")

    try:
        with Image.open(io.BytesIO(data)) as pil_image:
            oriented = ImageOps.exif_transpose(pil_image)
            rgba = np.array(oriented.convert("RGBA"))
    except (OSError, SyntaxError, Image.DecompressionBombError) as e:
        raise ValueError(f"Failed to decode image: {e}") from e

    return cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA)


def load_image(path: Union[str, Path]) -> np.ndarray:
    """Read and decode an image file to BGRA."""
    return decode_image(Path(path).read_bytes())


def flatten_on_white(image: np.ndarray) -> np.ndarray:
    """Composite a BGRA image over a white background, returning BGR."""
    bgra = to_bgra(image)
    color = bgra[:, :, :3].astype(np.uint16)
    alpha = bgra[:, :, 3:4].astype(np.uint16)
    flat = (color * alpha + 255 * (255 - alpha) + 127) // 255
    return flat.astype(np.uint8)


def encode_image(image: np.ndarray, fmt: str = PNG_FORMAT) -> bytes:
    """
    Encode a BGRA image.

    PNG keeps the alpha channel. JPEG is flattened onto white.
    """
    fmt = normalize_format(fmt)

    if fmt == JPEG_FORMAT:
        ok, buffer = cv2.imencode(
            ".jpg", flatten_on_white(image), [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY]
        )
    else:
        ok, buffer = cv2.imencode(".png", to_bgra(image), [cv2.IMWRITE_PNG_COMPRESSION, 1])

    if not ok:
        raise ValueError(f"Failed to encode image as {fmt}")
    return buffer.tobytes()


def save_image(path: Union[str, Path], image: np.ndarray, fmt: Optional[str] = None) -> Path:
    """Encode and write an image; format defaults to the file suffix."""
    path = Path(path)
    path.write_bytes(encode_image(image, fmt or format_from_path(path)))
    return path


def resize_exact(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize to exactly (width, height) with Lanczos resampling."""
    if image.shape[1] == width and image.shape[0] == height:
        return image
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_LANCZOS4)


def resize_longest_edge(image: np.ndarray, size: int) -> np.ndarray:
    """Resize so the longest edge equals ``size``, keeping aspect ratio."""
    height, width = image.shape[:2]
    scale = size / max(width, height)
    new_w = max(1, int(round(width * scale)))
    new_h = max(1, int(round(height * scale)))
    return resize_exact(image, new_w, new_h)


def image_from_data_url(data: str) -> np.ndarray:
    """Decode a base64 string, with or without a data URL prefix."""
    if "," in data:
        data = data.split(",", 1)[1]
    try:
        raw = base64.b64decode(data, validate=False)
    except ValueError as e:
        raise ValueError(f"Invalid base64 image data: {e}") from e
    return decode_image(raw)


def image_to_data_url(image: np.ndarray, fmt: str = PNG_FORMAT) -> str:
    """Encode an image as a data URL."""
    fmt = normalize_format(fmt)
    b64 = base64.b64encode(encode_image(image, fmt)).decode("ascii")
    return f"data:{_MIME_TYPES[fmt]};base64,{b64}"
