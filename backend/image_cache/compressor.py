"""
Image Compressor

Re-encodes raw image payloads before they are persisted:
- Quality-driven JPEG/WebP re-encoding (compression_quality in (0, 1])
- Transparency flattened onto white for JPEG output
- SVG and animated images are passed through untouched
- Never grows a payload: if re-encoding is larger, the original bytes are kept

Pure functions of their inputs; safe to call from any thread without locking.
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .errors import CompressionError

logger = logging.getLogger(__name__)

SVG_MIME = "image/svg+xml"
OCTET_STREAM = "application/octet-stream"

FORMAT_TO_PIL = {
    "webp": "WEBP",
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "png": "PNG",
}


@dataclass
class CompressedImage:
    """Result of running a payload through the compressor."""
    data: bytes
    width: int
    height: int
    format: str
    original_size: int
    quality: float
    compressed: bool

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def is_svg(data: bytes) -> bool:
    """Detect SVG content by its signature."""
    header = data[:500].strip()
    if header.startswith(b"<svg"):
        return True
    if header.startswith(b"<?xml") and b"<svg" in header:
        return True
    return b'xmlns="http://www.w3.org/2000/svg"' in header


def probe(data: bytes) -> Optional[Tuple[int, int, str]]:
    """
    Read (width, height, mime type) without decoding pixel data.

    Returns None when the payload is not a recognizable raster image.
    """
    if not data:
        return None
    if is_svg(data):
        return 0, 0, SVG_MIME
    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
            mime = Image.MIME.get(img.format or "", OCTET_STREAM)
            return width, height, mime
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def detect_mime(data: bytes) -> str:
    info = probe(data)
    return info[2] if info else OCTET_STREAM


class Compressor:
    """
    Stateless re-encoder.

    Usage:
        compressor = Compressor(output_format="jpeg")
        result = compressor.compress_or_passthrough(raw, quality=0.8)
    """

    def __init__(self, output_format: str = "jpeg"):
        if output_format not in FORMAT_TO_PIL:
            raise ValueError(f"Unsupported output format: {output_format}")
        self.output_format = output_format

    def compress(self, data: bytes, quality: float) -> CompressedImage:
        """
        Re-encode ``data`` at ``quality``.

        Raises:
            CompressionError: payload is not an image Pillow can re-encode.
        """
        original_size = len(data)

        if is_svg(data):
            return CompressedImage(
                data=data, width=0, height=0, format=SVG_MIME,
                original_size=original_size, quality=1.0, compressed=False,
            )

        try:
            source = Image.open(BytesIO(data))
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise CompressionError(f"Cannot decode payload: {e}") from e

        save_format = FORMAT_TO_PIL[self.output_format]
        with source:
            try:
                source.load()
            except (OSError, ValueError) as e:
                raise CompressionError(f"Cannot decode payload: {e}") from e

            width, height = source.size
            source_mime = Image.MIME.get(source.format or "", OCTET_STREAM)

            # Re-encoding would drop every frame but the first
            if getattr(source, "n_frames", 1) > 1:
                return CompressedImage(
                    data=data, width=width, height=height, format=source_mime,
                    original_size=original_size, quality=1.0, compressed=False,
                )

            try:
                encoded = self._encode(source, save_format, quality)
            except (OSError, ValueError) as e:
                raise CompressionError(f"Cannot re-encode payload: {e}") from e

        if len(encoded) >= original_size:
            logger.debug(
                f"[Compressor] Re-encoding grew payload ({original_size} -> {len(encoded)} bytes), keeping original"
            )
            return CompressedImage(
                data=data, width=width, height=height, format=source_mime,
                original_size=original_size, quality=1.0, compressed=False,
            )

        return CompressedImage(
            data=encoded,
            width=width,
            height=height,
            format=Image.MIME.get(save_format, f"image/{self.output_format}"),
            original_size=original_size,
            quality=quality,
            compressed=True,
        )

    def compress_or_passthrough(self, data: bytes, quality: float) -> CompressedImage:
        """Compress, or store the raw payload if compression fails."""
        try:
            return self.compress(data, quality)
        except CompressionError as e:
            logger.warning(f"[Compressor] Storing uncompressed payload: {e}")
            info = probe(data)
            width, height, mime = info if info else (0, 0, OCTET_STREAM)
            return CompressedImage(
                data=data, width=width, height=height, format=mime,
                original_size=len(data), quality=1.0, compressed=False,
            )

    def _encode(self, img: Image.Image, save_format: str, quality: float) -> bytes:
        img = self._prepare_mode(img, save_format)
        output = BytesIO()
        save_kwargs = {"format": save_format}
        if save_format in ("JPEG", "WEBP"):
            save_kwargs["quality"] = max(1, min(100, int(round(quality * 100))))
        if save_format == "WEBP":
            save_kwargs["method"] = 4
        img.save(output, **save_kwargs)
        return output.getvalue()

    @staticmethod
    def _prepare_mode(img: Image.Image, save_format: str) -> Image.Image:
        """Convert color mode so ``save_format`` can encode it."""
        if save_format == "JPEG" and (img.mode in ("RGBA", "LA", "P") or "transparency" in img.info):
            # White background for transparency
            rgba = img.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[3])
            return background
        if img.mode not in ("RGB", "RGBA", "L"):
            return img.convert("RGB")
        return img
