"""
aiko.core.images - Image normalization shared by user attachments and video frames.

Large images are scaled down to fit 800x600 and re-encoded as JPEG before
they go over the wire, which keeps request bodies and vision costs bounded.
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

MAX_WIDTH = 800
MAX_HEIGHT = 600
JPEG_QUALITY = 80


@dataclass(frozen=True)
class EncodedImage:
    """Raw image bytes plus their MIME type."""
    data: bytes
    mime_type: str = "image/jpeg"

    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.b64()}"


def fit_within(image: Image.Image, max_width: int = MAX_WIDTH, max_height: int = MAX_HEIGHT) -> Image.Image:
    """Scale *image* down (never up) so it fits the bounding box, keeping aspect ratio."""
    if image.width <= max_width and image.height <= max_height:
        return image
    scale = min(max_width / image.width, max_height / image.height)
    size = (max(1, int(image.width * scale)), max(1, int(image.height * scale)))
    return image.resize(size, Image.Resampling.LANCZOS)


def encode_image(image: Image.Image, quality: int = JPEG_QUALITY) -> EncodedImage:
    """Downscale and JPEG-encode a Pillow image."""
    image = fit_within(image)
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=quality)
    return EncodedImage(buf.getvalue(), "image/jpeg")


def load_image(path: Path) -> EncodedImage:
    """Read an image file from disk and normalize it."""
    try:
        with Image.open(path) as img:
            img.load()
            return encode_image(img)
    except UnidentifiedImageError as exc:
        raise ValueError(f"Not an image: {path}") from exc
