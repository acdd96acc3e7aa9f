"""Painting-surface extraction and 16-bit PNG export."""

import struct

import numpy as np
import pytest

from terrasketch import codec
from terrasketch.errors import PreconditionError
from terrasketch.field import GENERATED, PAINTED, Field

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _ihdr(png: bytes):
    """(width, height, bit_depth, color_type) from the IHDR chunk."""
    assert png[:8] == PNG_SIGNATURE
    assert png[12:16] == b"IHDR"
    width, height = struct.unpack(">II", png[16:24])
    return width, height, png[24], png[25]


def test_extract_reads_first_channel_of_rgba_surface():
    surface = np.zeros((3, 4, 4), dtype=np.uint8)
    surface[..., 0] = [[0, 51, 102, 255]] * 3
    surface[..., 3] = 255

    field = codec.extract(surface)
    assert field.kind == PAINTED
    assert (field.width, field.height) == (4, 3)
    np.testing.assert_allclose(field.as_array()[0], [0.0, 0.2, 0.4, 1.0], atol=1e-7)


def test_extract_accepts_single_channel():
    field = codec.extract(np.full((2, 5), 255, dtype=np.uint8))
    assert field.shape == (2, 5)
    assert np.all(field.data == 1.0)


@pytest.mark.parametrize(
    "raster",
    [
        np.zeros((4, 4), dtype=np.float32),
        np.zeros((4, 4), dtype=np.uint16),
        np.zeros(16, dtype=np.uint8),
    ],
)
def test_extract_rejects_non_8bit_or_malformed_surfaces(raster):
    with pytest.raises(PreconditionError):
        codec.extract(raster)


def test_mid_gray_encodes_to_32768():
    field = Field.from_array(np.full((2, 2), 0.5, dtype=np.float32), GENERATED)
    assert codec.encode_samples(field) == b"\x80\x00" * 4

    png = codec.export(field, 2, 2)
    assert _ihdr(png) == (2, 2, 16, 0)

    decoded = codec.decode(png)
    np.testing.assert_array_equal(codec.quantize(decoded), np.full((2, 2), 32768, dtype=np.uint16))


def test_export_is_16bit_grayscale_at_field_size(painted):
    png = codec.export(painted, painted.width, painted.height)
    assert _ihdr(png) == (painted.width, painted.height, 16, 0)


def test_round_trip_is_within_one_quantization_step(painted):
    decoded = codec.decode(codec.export(painted, painted.width, painted.height))
    assert decoded.shape == painted.shape
    assert np.max(np.abs(decoded.as_array() - painted.as_array())) <= 1.0 / 65535 + 1e-7


def test_out_of_range_values_are_clamped():
    field = Field.from_array(np.array([[-0.5, 0.0, 1.0, 3.0]], dtype=np.float32), GENERATED)
    np.testing.assert_array_equal(codec.quantize(field), [[0, 0, 65535, 65535]])


def test_export_dimension_mismatch():
    field = Field.zeros(4, 2)
    with pytest.raises(PreconditionError):
        codec.export(field, 2, 4)
    with pytest.raises(PreconditionError):
        codec.export(field, 4, 3)


def test_save_writes_png(tmp_path, painted):
    path = codec.save(painted, tmp_path / "out" / "heightmap.png")
    assert path.exists()
    assert _ihdr(path.read_bytes())[2] == 16


def test_to_raster_rounds_to_nearest_byte():
    field = Field.from_array(np.array([[0.0, 0.5, 1.0, 1.5]], dtype=np.float32))
    np.testing.assert_array_equal(codec.to_raster(field), [[0, 128, 255, 255]])


def test_raster_file_round_trip(tmp_path):
    surface = np.arange(0, 240, 10, dtype=np.uint8).reshape(4, 6)
    field = codec.extract(surface)

    path = codec.write_raster(field, tmp_path / "painting.png")
    reread = codec.read_raster(path)

    assert reread.kind == PAINTED
    np.testing.assert_array_equal(codec.to_raster(reread), surface)


def test_read_raster_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        codec.read_raster(tmp_path / "nope.png")
