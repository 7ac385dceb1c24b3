"""
Compressor tests

Run:
    pytest backend/tests/test_compressor.py -v
"""

from io import BytesIO

import pytest
from PIL import Image

from image_cache.compressor import Compressor, detect_mime, is_svg, probe
from image_cache.errors import CompressionError


SVG = b'<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"><rect width="10" height="10"/></svg>'


def animated_gif(frames: int = 3) -> bytes:
    images = [Image.new("RGB", (16, 16), (i * 40, 0, 0)) for i in range(frames)]
    output = BytesIO()
    images[0].save(output, format="GIF", save_all=True, append_images=images[1:], duration=100)
    return output.getvalue()


# ============================================
# 1. Probing
# ============================================

class TestProbe:
    """Format detection without decoding"""

    def test_png(self, make_image):
        assert probe(make_image(40, 30)) == (40, 30, "image/png")

    def test_jpeg(self, make_image):
        assert probe(make_image(20, 10, fmt="JPEG")) == (20, 10, "image/jpeg")

    def test_svg(self):
        assert is_svg(SVG)
        assert probe(SVG) == (0, 0, "image/svg+xml")

    def test_svg_with_xml_declaration(self):
        assert is_svg(b'<?xml version="1.0"?>\n' + SVG)

    def test_not_an_image(self):
        assert probe(b"definitely not an image") is None
        assert probe(b"") is None
        assert detect_mime(b"garbage") == "application/octet-stream"


# ============================================
# 2. Compression
# ============================================

class TestCompress:
    """Quality-driven re-encoding"""

    def test_noisy_png_shrinks(self, make_image):
        raw = make_image(128, 128, noise=True)
        result = Compressor().compress(raw, 0.8)

        assert result.compressed
        assert result.size_bytes < len(raw)
        assert result.original_size == len(raw)
        assert result.format == "image/jpeg"
        assert (result.width, result.height) == (128, 128)
        assert result.quality == 0.8
        assert probe(result.data)[2] == "image/jpeg"

    def test_lower_quality_is_smaller(self, make_image):
        raw = make_image(128, 128, noise=True)
        compressor = Compressor()
        high = compressor.compress(raw, 0.95)
        low = compressor.compress(raw, 0.3)
        assert low.size_bytes < high.size_bytes

    def test_transparency_flattened_for_jpeg(self, make_image):
        raw = make_image(128, 128, mode="RGBA", noise=True)
        result = Compressor().compress(raw, 0.8)

        with Image.open(BytesIO(result.data)) as img:
            assert img.mode == "RGB"

    def test_palette_transparency_converted_before_source_is_closed(self):
        noise = Image.effect_noise((128, 128), 64).convert("P")
        buffer = BytesIO()
        noise.save(buffer, format="PNG", transparency=0)
        raw = buffer.getvalue()

        compressor = Compressor()
        first = compressor.compress(raw, 0.3)
        second = compressor.compress(raw, 0.3)

        assert first.compressed
        assert first.data == second.data
        with Image.open(BytesIO(first.data)) as img:
            assert img.mode == "RGB"
            assert img.size == (128, 128)

    def test_never_grows_payload(self, make_image):
        # A tiny flat PNG is smaller than any JPEG header
        raw = make_image(4, 4)
        result = Compressor().compress(raw, 0.8)

        assert not result.compressed
        assert result.data == raw
        assert result.format == "image/png"
        assert result.quality == 1.0

    def test_webp_output(self, make_image):
        raw = make_image(128, 128, noise=True)
        result = Compressor(output_format="webp").compress(raw, 0.5)
        assert result.format == "image/webp"

    def test_unknown_output_format(self):
        with pytest.raises(ValueError):
            Compressor(output_format="tiff")


# ============================================
# 3. Pass-through cases
# ============================================

class TestPassthrough:
    """Payloads that are stored as-is"""

    def test_svg_untouched(self):
        result = Compressor().compress(SVG, 0.5)
        assert result.data == SVG
        assert result.format == "image/svg+xml"
        assert not result.compressed

    def test_animated_gif_untouched(self):
        raw = animated_gif()
        result = Compressor().compress(raw, 0.5)
        assert result.data == raw
        assert result.format == "image/gif"
        assert (result.width, result.height) == (16, 16)

    def test_garbage_raises(self):
        with pytest.raises(CompressionError):
            Compressor().compress(b"\x00\x01not an image", 0.8)

    def test_truncated_image_raises(self, make_image):
        raw = make_image(64, 64, noise=True)
        with pytest.raises(CompressionError):
            Compressor().compress(raw[: len(raw) // 2], 0.8)

    def test_fallback_stores_raw_payload(self):
        payload = b"\x00\x01not an image"
        result = Compressor().compress_or_passthrough(payload, 0.8)

        assert result.data == payload
        assert not result.compressed
        assert result.format == "application/octet-stream"
        assert result.original_size == len(payload)
