"""
Refinement kernel.

Image-processing pass that turns a hand-painted field into something that
reads like a landmass. Four ordered per-pixel steps, all computed from the
same input snapshot (border-clamped, no wraparound):

1. Gaussian blur (7x7, sigma = 2)      - smooths harsh brush-stamp edges.
2. Edge-aware perturbation             - fractal displacement proportional
                                          to the input gradient, so circular
                                          brush edges become bays and inlets.
3. Mountain sharpening                 - unsharp mask weighted by brightness,
                                          then a power-curve mix on peaks.
4. Coastline contrast                  - values inside a narrow low band are
                                          snapped toward 0; values at or above
                                          the band's upper edge pass through.
"""
from string import Template

import numpy as np

from .noise import NOISE_CUDA_SOURCE, cuda_float, fbm, mix, saturate, smoothstep

# --- Step 1: blur ---
BLUR_RADIUS = 3
BLUR_TWO_SIGMA_SQ = 8.0  # 2 * sigma^2, sigma = 2

# --- Step 2: perturbation ---
PERTURB_FREQUENCY = 12.0
PERTURB_OCTAVES = 5
PERTURB_Y_OFFSET = (73.1, 19.7)
MAX_SHIFT_PX = 8.0
EDGE_RAMP = (0.02, 0.15)
PERTURB_BLEND = 0.7

# --- Step 3: sharpening ---
SHARPEN_RAMP = (0.35, 0.75)
SHARPEN_GAIN = 0.6
PEAK_RAMP = (0.55, 1.0)
PEAK_MIX = 0.6
PEAK_EXPONENT = 2.5

# --- Step 4: coastline band ---
COAST_LOW = 0.03
COAST_HIGH = 0.12

ENTRY_POINT = "refine_heightmap"


def _blur_taps():
    taps = []
    for dy in range(-BLUR_RADIUS, BLUR_RADIUS + 1):
        for dx in range(-BLUR_RADIUS, BLUR_RADIUS + 1):
            weight = np.exp(np.float32(-(dx * dx + dy * dy)) / np.float32(BLUR_TWO_SIGMA_SQ))
            taps.append((dx, dy, np.float32(weight)))
    return taps


BLUR_TAPS = _blur_taps()


def sample_clamped(source: np.ndarray, x, y) -> np.ndarray:
    """Gathers source[y, x] with coordinates clamped to the border."""
    height, width = source.shape
    return source[np.clip(y, 0, height - 1), np.clip(x, 0, width - 1)]


def gaussian_blur_at(source: np.ndarray, x, y) -> np.ndarray:
    """7x7 Gaussian-weighted mean around (x, y), normalized by summed weight."""
    total = np.zeros(np.shape(x), dtype=np.float32)
    weight = np.float32(0.0)
    for dx, dy, w in BLUR_TAPS:
        total = total + sample_clamped(source, x + dx, y + dy) * w
        weight = weight + w
    return total / weight


def gradient_magnitude_at(source: np.ndarray, x, y) -> np.ndarray:
    """Central-difference gradient magnitude of the unblurred input."""
    gx = sample_clamped(source, x + 1, y) - sample_clamped(source, x - 1, y)
    gy = sample_clamped(source, x, y + 1) - sample_clamped(source, x, y - 1)
    return np.sqrt(gx * gx + gy * gy)


def perturbed_blur_at(source: np.ndarray, x, y, edge, width: int, height: int) -> np.ndarray:
    """
    Blurred value at a fractal offset from (x, y).

    The offset is at most MAX_SHIFT_PX scaled by the local edge strength, so
    the flat interior (edge == 0) samples itself.
    """
    u = x.astype(np.float32) / np.float32(width) * PERTURB_FREQUENCY
    w = y.astype(np.float32) / np.float32(height) * PERTURB_FREQUENCY
    shift_x = (fbm(u, w, PERTURB_OCTAVES) * 2.0 - 1.0) * MAX_SHIFT_PX * edge
    shift_y = (fbm(u + PERTURB_Y_OFFSET[0], w + PERTURB_Y_OFFSET[1], PERTURB_OCTAVES) * 2.0 - 1.0) * MAX_SHIFT_PX * edge

    # Clamp the displaced centre first, then blur around it
    sx = np.clip(x + np.rint(shift_x).astype(np.int64), 0, width - 1)
    sy = np.clip(y + np.rint(shift_y).astype(np.int64), 0, height - 1)
    return gaussian_blur_at(source, sx, sy)


def sharpen_mountains(smoothed, blurred):
    """Unsharp mask on bright areas, then re-expand contrast among peaks."""
    detail = smoothed - blurred
    strength = smoothstep(SHARPEN_RAMP[0], SHARPEN_RAMP[1], smoothed) * SHARPEN_GAIN
    sharpened = smoothed + detail * strength

    peak = smoothstep(PEAK_RAMP[0], PEAK_RAMP[1], sharpened) * PEAK_MIX
    return mix(sharpened, np.power(saturate(sharpened), PEAK_EXPONENT), peak)


def coastline_contrast(value):
    """Snaps the [COAST_LOW, COAST_HIGH) band toward 0. Identity at or above COAST_HIGH."""
    value = np.asarray(value, dtype=np.float32)
    return np.where(value >= COAST_HIGH, value, value * smoothstep(COAST_LOW, COAST_HIGH, value))


def refine_pixels(params: np.ndarray, source: np.ndarray, px: np.ndarray, py: np.ndarray) -> np.ndarray:
    """
    Host program for the refinement kernel.

    Args:
        params: uint32 uniform block [width, height, 0, 0].
        source: (height, width) input field. Never written.
        px, py: Integer pixel coordinates of the threads to run.
    """
    width, height = int(params[0]), int(params[1])
    px = px.astype(np.int64)
    py = py.astype(np.int64)

    # Step 1
    blurred = gaussian_blur_at(source, px, py)

    # Step 2
    edge = gradient_magnitude_at(source, px, py)
    perturbed = perturbed_blur_at(source, px, py, edge, width, height)
    edge_mix = smoothstep(EDGE_RAMP[0], EDGE_RAMP[1], edge) * PERTURB_BLEND
    smoothed = mix(blurred, perturbed, edge_mix)

    # Step 3
    sharpened = sharpen_mountains(smoothed, blurred)

    # Step 4
    contrasted = coastline_contrast(sharpened)
    return saturate(contrasted).astype(np.float32)


_REFINE_CUDA_TEMPLATE = Template(r'''
__device__ __forceinline__ float sample_clamped(const float* src, int width, int height, int x, int y) {
    int cx = min(max(x, 0), width - 1);
    int cy = min(max(y, 0), height - 1);
    return src[(size_t)cy * (size_t)width + (size_t)cx];
}

__device__ float gaussian_blur(const float* src, int width, int height, int x, int y) {
    float total = 0.0f;
    float weight = 0.0f;
    for (int dy = -$RADIUS; dy <= $RADIUS; dy++) {
        for (int dx = -$RADIUS; dx <= $RADIUS; dx++) {
            float w = expf(-(float)(dx * dx + dy * dy) / $TWO_SIGMA_SQ);
            total += sample_clamped(src, width, height, x + dx, y + dy) * w;
            weight += w;
        }
    }
    return total / weight;
}

__device__ float gradient_magnitude(const float* src, int width, int height, int x, int y) {
    float gx = sample_clamped(src, width, height, x + 1, y) - sample_clamped(src, width, height, x - 1, y);
    float gy = sample_clamped(src, width, height, x, y + 1) - sample_clamped(src, width, height, x, y - 1);
    return sqrtf(gx * gx + gy * gy);
}

extern "C" __global__
void $ENTRY_POINT(const unsigned int* params,
                  const float* heightmap_in,
                  float* heightmap_out) {
    int width = (int)params[0];
    int height = (int)params[1];
    int px = blockIdx.x * blockDim.x + threadIdx.x;
    int py = blockIdx.y * blockDim.y + threadIdx.y;
    if (px >= width || py >= height) return;

    // Step 1: blur
    float blurred = gaussian_blur(heightmap_in, width, height, px, py);

    // Step 2: edge-aware perturbation
    float edge = gradient_magnitude(heightmap_in, width, height, px, py);
    float u = (float)px / (float)width * $FREQ;
    float v = (float)py / (float)height * $FREQ;
    float shift_x = (fbm(u, v, $OCTAVES) * 2.0f - 1.0f) * $MAX_SHIFT * edge;
    float shift_y = (fbm(u + $OFF_X, v + $OFF_Y, $OCTAVES) * 2.0f - 1.0f) * $MAX_SHIFT * edge;
    int sx = min(max(px + (int)rintf(shift_x), 0), width - 1);
    int sy = min(max(py + (int)rintf(shift_y), 0), height - 1);
    float perturbed = gaussian_blur(heightmap_in, width, height, sx, sy);
    float edge_mix = smoothstepf($EDGE_0, $EDGE_1, edge) * $BLEND;
    float smoothed = mixf(blurred, perturbed, edge_mix);

    // Step 3: mountain sharpening
    float strength = smoothstepf($SHARP_0, $SHARP_1, smoothed) * $GAIN;
    float sharpened = smoothed + (smoothed - blurred) * strength;
    float peak = smoothstepf($PEAK_0, $PEAK_1, sharpened) * $PEAK_MIX;
    sharpened = mixf(sharpened, powf(fminf(fmaxf(sharpened, 0.0f), 1.0f), $PEAK_EXPONENT), peak);

    // Step 4: coastline contrast
    float contrasted = sharpened >= $COAST_HIGH
        ? sharpened
        : sharpened * smoothstepf($COAST_LOW, $COAST_HIGH, sharpened);

    heightmap_out[(size_t)py * (size_t)width + (size_t)px] = fminf(fmaxf(contrasted, 0.0f), 1.0f);
}
''')

REFINE_CUDA_SOURCE = NOISE_CUDA_SOURCE + _REFINE_CUDA_TEMPLATE.substitute(
    ENTRY_POINT=ENTRY_POINT,
    RADIUS=str(int(BLUR_RADIUS)),
    TWO_SIGMA_SQ=cuda_float(BLUR_TWO_SIGMA_SQ),
    FREQ=cuda_float(PERTURB_FREQUENCY),
    OCTAVES=str(int(PERTURB_OCTAVES)),
    OFF_X=cuda_float(PERTURB_Y_OFFSET[0]),
    OFF_Y=cuda_float(PERTURB_Y_OFFSET[1]),
    MAX_SHIFT=cuda_float(MAX_SHIFT_PX),
    EDGE_0=cuda_float(EDGE_RAMP[0]),
    EDGE_1=cuda_float(EDGE_RAMP[1]),
    BLEND=cuda_float(PERTURB_BLEND),
    SHARP_0=cuda_float(SHARPEN_RAMP[0]),
    SHARP_1=cuda_float(SHARPEN_RAMP[1]),
    GAIN=cuda_float(SHARPEN_GAIN),
    PEAK_0=cuda_float(PEAK_RAMP[0]),
    PEAK_1=cuda_float(PEAK_RAMP[1]),
    PEAK_MIX=cuda_float(PEAK_MIX),
    PEAK_EXPONENT=cuda_float(PEAK_EXPONENT),
    COAST_LOW=cuda_float(COAST_LOW),
    COAST_HIGH=cuda_float(COAST_HIGH),
)
