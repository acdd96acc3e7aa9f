"""
Hand-off to the external 3D preview.

The renderer never gets a full-resolution mesh (4096x4096 would be 16M
vertices). It gets a fixed vertex grid plus an 8-bit texture and lets the
texture sampler interpolate the rest.
"""
import logging
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
from skimage.transform import resize

from .codec import to_raster
from .field import Field

logger = logging.getLogger(__name__)

PREVIEW_RESOLUTION = 512


def downsample(field: Field, resolution: int = PREVIEW_RESOLUTION) -> np.ndarray:
    """
    Resamples a field to a (resolution, resolution) vertex grid.

    Returns:
        np.ndarray: float32 heights in [0, 1].
    """
    vertices = resize(
        field.as_array().astype(np.float32),
        (resolution, resolution),
        order=1,
        mode='edge',
        anti_aliasing=resolution < max(field.width, field.height),
        preserve_range=True,
    )
    return np.clip(vertices, 0.0, 1.0).astype(np.float32)


def preview_texture(field: Field) -> np.ndarray:
    """Full-resolution 8-bit grayscale texture sampled between vertices."""
    return to_raster(field)


def plot_field(field: Field, title: Optional[str] = None, resolution: int = PREVIEW_RESOLUTION):
    """
    Quick-look figure of a field (terrain colormap) without writing to disk.

    Returns:
        matplotlib.figure.Figure
    """
    data = downsample(field, resolution) if max(field.width, field.height) > resolution else field.as_array()
    logger.info(f"Field stats - Min: {data.min():.4f} Max: {data.max():.4f} Mean: {data.mean():.4f}")

    fig, ax = plt.subplots(figsize=(10, 8))
    ax.set_title(title or f"{field.kind.capitalize()} field ({field.width}x{field.height})")
    img = ax.imshow(data, cmap='terrain', vmin=0.0, vmax=1.0)
    fig.colorbar(img, ax=ax, label="Height")
    ax.axis('off')
    return fig
