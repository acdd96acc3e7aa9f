"""
Conversions at the edges of the pipeline.

- Painting surface (8-bit grayscale raster)  -> normalized float Field
- Field -> 16-bit big-endian grayscale PNG   (the on-disk interchange format)
- Field -> 8-bit raster                      (write-back onto the painting surface)

PNG encoding/decoding goes through rasterio (GDAL PNG driver). PNG stores
16-bit samples big-endian, which is the byte order encode_samples() produces.
"""
import logging
import warnings
from pathlib import Path
from typing import Union

import numpy as np
import rasterio
from rasterio.errors import NotGeoreferencedWarning
from rasterio.io import MemoryFile

from .errors import PreconditionError
from .field import GENERATED, PAINTED, Field

logger = logging.getLogger(__name__)

RASTER_MAX = 255
SAMPLE_MAX = 65535


def extract(raster: np.ndarray) -> Field:
    """
    Reads the painting surface into a painted Field.

    Channels are assumed equal (true grayscale), so only channel 0 is read.

    Args:
        raster: uint8 array shaped (H, W) or (H, W, C), e.g. a canvas RGBA buffer.
    """
    raster = np.asarray(raster)
    if raster.dtype != np.uint8:
        raise PreconditionError(f"Painting surface must be 8-bit, got dtype {raster.dtype}")
    if raster.ndim == 3:
        raster = raster[:, :, 0]
    elif raster.ndim != 2:
        raise PreconditionError(f"Painting surface must be (H, W) or (H, W, C), got shape {raster.shape}")

    values = raster.astype(np.float32) / np.float32(RASTER_MAX)
    return Field.from_array(values, PAINTED)


def read_raster(path: Union[str, Path]) -> Field:
    """Loads band 1 of an 8-bit raster file (e.g. an exported painting) as a painted Field."""
    if not Path(path).exists():
        raise FileNotFoundError(f"Painting not found at: {path}")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NotGeoreferencedWarning)
        with rasterio.open(path) as src:
            band = src.read(1)
    logger.info(f"Read painting surface {path} ({band.shape[1]}x{band.shape[0]}).")
    return extract(band)


def quantize(field: Field) -> np.ndarray:
    """Clamps to [0, 1] and scales to 0..65535, rounding half up. Returns (H, W) uint16."""
    values = np.clip(field.as_array().astype(np.float64), 0.0, 1.0)
    return np.floor(values * SAMPLE_MAX + 0.5).astype(np.uint16)


def encode_samples(field: Field) -> bytes:
    """Raw big-endian 16-bit samples, row-major, one per pixel."""
    return quantize(field).astype(">u2").tobytes()


def export(field: Field, width: int, height: int) -> bytes:
    """
    Encodes a field as a lossless single-channel 16-bit PNG.

    Args:
        field: Field to encode.
        width, height: Expected dimensions; must match the field.

    Returns:
        bytes: The PNG file contents.
    """
    if int(width) * int(height) != field.data.size or (int(width), int(height)) != (field.width, field.height):
        raise PreconditionError(
            f"Export size {width}x{height} does not match field {field.width}x{field.height}"
        )

    samples = quantize(field)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NotGeoreferencedWarning)
        with MemoryFile() as memfile:
            with memfile.open(driver="PNG", width=field.width, height=field.height,
                              count=1, dtype="uint16") as dst:
                dst.write(samples, 1)
            memfile.seek(0)
            data = memfile.read()

    logger.info(f"Encoded {field.width}x{field.height} heightmap as 16-bit PNG ({len(data) / 1024:.1f} KB).")
    return data


def save(field: Field, path: Union[str, Path]) -> Path:
    """Writes export(field) to disk."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(export(field, field.width, field.height))
    logger.info(f"Saved heightmap to {path}")
    return path


def decode(data: bytes, kind: str = GENERATED) -> Field:
    """Reads a 16-bit PNG produced by export() back into a Field."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NotGeoreferencedWarning)
        with MemoryFile(data) as memfile:
            with memfile.open() as src:
                if src.dtypes[0] != "uint16":
                    raise PreconditionError(f"Expected a 16-bit raster, got {src.dtypes[0]}")
                samples = src.read(1)

    return Field.from_array(samples.astype(np.float32) / np.float32(SAMPLE_MAX), kind)


def to_raster(field: Field) -> np.ndarray:
    """Write-back: field -> (H, W) uint8 grayscale for the painting surface."""
    values = np.clip(field.as_array(), 0.0, 1.0)
    return np.floor(values * RASTER_MAX + 0.5).astype(np.uint8)


def write_raster(field: Field, path: Union[str, Path]) -> Path:
    """Stores to_raster(field) as an 8-bit grayscale PNG."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NotGeoreferencedWarning)
        with rasterio.open(path, "w", driver="PNG", width=field.width, height=field.height,
                           count=1, dtype="uint8") as dst:
            dst.write(to_raster(field), 1)
    logger.info(f"Wrote 8-bit raster to {path}")
    return path
