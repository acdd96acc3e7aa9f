"""
Terrain synthesis kernel.

Reads the painted field (0.0 - 1.0) and blends three noise regimes by the
painted intensity v at each pixel:

    black (v ~ 0)    -> flat ground, exactly 0
    mid-gray (~0.5)  -> continental fbm hills, capped at half height
    white (v ~ 1)    -> ridged mountains scaled by v (brighter = taller)

plus a small fbm detail layer wherever anything was painted. The result is
flattened with a final power curve and clamped to [0, 1].
"""
from string import Template

import numpy as np

from .noise import (
    NOISE_CUDA_SOURCE,
    cuda_float,
    domain_warp,
    fbm,
    ridged_noise,
    saturate,
    smoothstep,
)

# --- Sampling frequencies (noise units across the whole field) ---
TILE_FREQUENCY = 4.0
CONTINENTAL_SCALE = 1.5
CONTINENTAL_OCTAVES = 3
CONTINENTAL_EXPONENT = 2.5
RIDGE_SCALE = 2.5
RIDGE_OCTAVES = 6
DETAIL_SCALE = 12.0
DETAIL_OCTAVES = 4

# --- Blend weights (smoothstep thresholds on painted intensity) ---
HILL_RISE = (0.05, 0.35)
HILL_FALL = (0.6, 0.9)
MOUNTAIN_RAMP = (0.4, 0.8)
DETAIL_RAMP = (0.02, 0.08)
DETAIL_FRACTION = 0.08
HILL_HEIGHT = 0.5

FINAL_EXPONENT = 1.3

ENTRY_POINT = "synthesize_terrain"


def hill_weight(v):
    """Peaks on mid-gray, vanishes at v ~ 0 and v >= 0.9."""
    return smoothstep(HILL_RISE[0], HILL_RISE[1], v) * (1.0 - smoothstep(HILL_FALL[0], HILL_FALL[1], v))


def mountain_weight(v):
    """0 below v = 0.4, 1 above v = 0.8."""
    return smoothstep(MOUNTAIN_RAMP[0], MOUNTAIN_RAMP[1], v)


def detail_weight(v):
    """Constant small fraction once anything is painted."""
    return DETAIL_FRACTION * smoothstep(DETAIL_RAMP[0], DETAIL_RAMP[1], v)


def mountain_term(v, ridges):
    """Mountain contribution. Non-decreasing in v for fixed ridges >= 0."""
    return mountain_weight(v) * (ridges * v)


def terrain_layers(u, w):
    """
    Evaluates the three noise layers at normalized coordinates (u, w).

    Returns:
        tuple: (continental, ridges, detail) float32 arrays.
    """
    x, y = domain_warp(np.asarray(u, dtype=np.float32) * TILE_FREQUENCY,
                       np.asarray(w, dtype=np.float32) * TILE_FREQUENCY)

    continental = fbm(x * CONTINENTAL_SCALE, y * CONTINENTAL_SCALE, CONTINENTAL_OCTAVES)
    continental = np.power(continental, CONTINENTAL_EXPONENT)
    ridges = ridged_noise(x * RIDGE_SCALE, y * RIDGE_SCALE, RIDGE_OCTAVES)
    detail = fbm(x * DETAIL_SCALE, y * DETAIL_SCALE, DETAIL_OCTAVES)
    return continental, ridges, detail


def blend_height(v, continental, ridges, detail):
    """Combines the layers for painted intensity v and shapes the result."""
    height = (hill_weight(v) * continental * HILL_HEIGHT
              + mountain_term(v, ridges)
              + detail_weight(v) * detail)
    height = np.power(saturate(height), FINAL_EXPONENT)
    return saturate(height).astype(np.float32)


def synthesize_pixels(params: np.ndarray, source: np.ndarray, px: np.ndarray, py: np.ndarray) -> np.ndarray:
    """
    Host program for the synthesis kernel.

    Evaluates the per-thread body for every in-bounds thread coordinate at once.

    Args:
        params: uint32 uniform block [width, height, 0, 0].
        source: (height, width) painted field.
        px, py: Integer pixel coordinates of the threads to run.
    """
    width, height = int(params[0]), int(params[1])
    v = source[py, px].astype(np.float32)

    u = px.astype(np.float32) / np.float32(width)
    w = py.astype(np.float32) / np.float32(height)
    continental, ridges, detail = terrain_layers(u, w)
    return blend_height(v, continental, ridges, detail)


_SYNTHESIS_CUDA_TEMPLATE = Template(r'''
__device__ __forceinline__ float hill_weight(float v) {
    return smoothstepf($HILL_RISE_0, $HILL_RISE_1, v) * (1.0f - smoothstepf($HILL_FALL_0, $HILL_FALL_1, v));
}

__device__ __forceinline__ float mountain_weight(float v) {
    return smoothstepf($MTN_0, $MTN_1, v);
}

__device__ __forceinline__ float detail_weight(float v) {
    return $DETAIL_FRACTION * smoothstepf($DETAIL_0, $DETAIL_1, v);
}

extern "C" __global__
void $ENTRY_POINT(const unsigned int* params,
                  const float* heightmap_in,
                  float* heightmap_out) {
    unsigned int width = params[0];
    unsigned int height = params[1];
    unsigned int px = blockIdx.x * blockDim.x + threadIdx.x;
    unsigned int py = blockIdx.y * blockDim.y + threadIdx.y;
    if (px >= width || py >= height) return;

    unsigned int idx = py * width + px;
    float v = heightmap_in[idx];

    // 1. Normalized UV, 2. domain warp at the tiling frequency
    float x = ((float)px / (float)width) * $TILE_FREQUENCY;
    float y = ((float)py / (float)height) * $TILE_FREQUENCY;
    domain_warp(&x, &y);

    // 3-5. Noise layers
    float continental = powf(fbm(x * $CONT_SCALE, y * $CONT_SCALE, $CONT_OCTAVES), $CONT_EXPONENT);
    float ridges = ridged_noise(x * $RIDGE_SCALE, y * $RIDGE_SCALE, $RIDGE_OCTAVES);
    float detail = fbm(x * $DETAIL_SCALE, y * $DETAIL_SCALE, $DETAIL_OCTAVES);

    // 6-7. Blend by painted intensity
    float h = hill_weight(v) * continental * $HILL_HEIGHT
            + mountain_weight(v) * (ridges * v)
            + detail_weight(v) * detail;

    // 8-9. Flatten residues, clamp
    h = powf(fminf(fmaxf(h, 0.0f), 1.0f), $FINAL_EXPONENT);
    heightmap_out[idx] = fminf(fmaxf(h, 0.0f), 1.0f);
}
''')

SYNTHESIS_CUDA_SOURCE = NOISE_CUDA_SOURCE + _SYNTHESIS_CUDA_TEMPLATE.substitute(
    ENTRY_POINT=ENTRY_POINT,
    HILL_RISE_0=cuda_float(HILL_RISE[0]),
    HILL_RISE_1=cuda_float(HILL_RISE[1]),
    HILL_FALL_0=cuda_float(HILL_FALL[0]),
    HILL_FALL_1=cuda_float(HILL_FALL[1]),
    MTN_0=cuda_float(MOUNTAIN_RAMP[0]),
    MTN_1=cuda_float(MOUNTAIN_RAMP[1]),
    DETAIL_FRACTION=cuda_float(DETAIL_FRACTION),
    DETAIL_0=cuda_float(DETAIL_RAMP[0]),
    DETAIL_1=cuda_float(DETAIL_RAMP[1]),
    TILE_FREQUENCY=cuda_float(TILE_FREQUENCY),
    CONT_SCALE=cuda_float(CONTINENTAL_SCALE),
    CONT_OCTAVES=str(int(CONTINENTAL_OCTAVES)),
    CONT_EXPONENT=cuda_float(CONTINENTAL_EXPONENT),
    RIDGE_SCALE=cuda_float(RIDGE_SCALE),
    RIDGE_OCTAVES=str(int(RIDGE_OCTAVES)),
    DETAIL_SCALE=cuda_float(DETAIL_SCALE),
    DETAIL_OCTAVES=str(int(DETAIL_OCTAVES)),
    HILL_HEIGHT=cuda_float(HILL_HEIGHT),
    FINAL_EXPONENT=cuda_float(FINAL_EXPONENT),
)
