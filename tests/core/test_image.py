"""Tests for image and buffer helpers."""
import io

import numpy as np
import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from PIL import Image

from facesearch.core.utils.image import (
    ImageTooLargeError,
    bytes_to_numpy_array,
    clamp_dimensions,
    sniff_image_type,
    strip_metadata,
)
from facesearch.core.utils.security import EmbeddingCipher, secure_erase
from tests.conftest import forged_png


def jpeg_with_exif(orientation: int) -> bytes:
    image = Image.new("RGB", (40, 20), (200, 10, 10))
    exif = Image.Exif()
    exif[0x0112] = orientation
    exif[0x010F] = "SecretCam"
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", exif=exif)
    return buffer.getvalue()


class TestImageHelpers:
    def test_sniff(self):
        assert sniff_image_type(b"\xff\xd8\xff\xe0") == "image/jpeg"
        assert sniff_image_type(b"GIF89a") is None
        assert sniff_image_type(b"") is None

    def test_decode_failure(self):
        with pytest.raises(ValueError):
            bytes_to_numpy_array(b"not an image")

    def test_clamp_keeps_small_images(self):
        image = np.zeros((100, 50, 3), dtype=np.uint8)
        resized, scale = clamp_dimensions(image, 1024)
        assert resized is image
        assert scale == 1.0

    def test_clamp_shrinks_larger_side(self):
        resized, scale = clamp_dimensions(np.zeros((500, 2000, 3), dtype=np.uint8), 1000)
        assert resized.shape[:2] == (250, 1000)
        assert scale == 0.5

    def test_strip_metadata_applies_orientation_and_drops_exif(self):
        clean = strip_metadata(jpeg_with_exif(6))

        with Image.open(io.BytesIO(clean)) as image:
            assert image.size == (20, 40)
            assert not image.getexif()
        assert b"SecretCam" not in clean

    def test_strip_metadata_rejects_garbage(self):
        with pytest.raises(ValueError):
            strip_metadata(b"\x89PNG\r\n\x1a\n" + b"garbage!" * 20)

    @pytest.mark.parametrize("width, height", [(20_000, 20_000), (8_000, 6_000)])
    def test_strip_metadata_rejects_pixel_bombs(self, width, height):
        with pytest.raises(ImageTooLargeError):
            strip_metadata(forged_png(width, height))

    def test_strip_metadata_pixel_cap(self):
        with pytest.raises(ImageTooLargeError):
            strip_metadata(jpeg_with_exif(1), max_pixels=100)


class TestSecureErase:
    def test_float_array(self):
        array = np.random.default_rng(0).normal(size=32)
        secure_erase(array)
        assert not array.any()

    def test_non_contiguous_view(self):
        array = np.ones((4, 4))
        secure_erase(array[:, 1])
        assert not array[:, 1].any()
        assert array[:, 0].all()

    def test_bytearray(self):
        buffer = bytearray(b"secret")
        secure_erase(buffer)
        assert buffer == bytearray(6)

    def test_ignores_immutable(self):
        secure_erase(b"bytes")
        secure_erase(None)


class TestEmbeddingCipher:
    def test_seal_open_and_wipe(self):
        cipher = EmbeddingCipher(AESGCM.generate_key(bit_length=256))
        embedding = np.arange(8, dtype=np.float64)

        sealed = cipher.seal(embedding)
        np.testing.assert_array_equal(cipher.open(sealed), embedding)
        assert embedding.tobytes() not in bytes(sealed.ciphertext)

        sealed.wipe()
        assert not any(sealed.ciphertext)
        with pytest.raises(ValueError):
            cipher.open(sealed)

    def test_key_material_is_derived(self):
        first = EmbeddingCipher.from_key_material("c2l4dGVlbi1ieXRlLWtleQ==")
        second = EmbeddingCipher.from_key_material("c2l4dGVlbi1ieXRlLWtleQ==")
        sealed = first.seal(np.ones(4))
        np.testing.assert_array_equal(second.open(sealed), np.ones(4))

    def test_missing_key_uses_ephemeral_key(self):
        cipher = EmbeddingCipher.from_key_material(None)
        assert cipher.open(cipher.seal(np.ones(3))).tolist() == [1.0, 1.0, 1.0]
