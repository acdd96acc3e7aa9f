"""
Deterministic noise primitives.

Every function here is a pure function of position: no seeds, no counters,
no global state. The numpy versions operate element-wise on float32 arrays
(or scalars) and are the host rendition of NOISE_CUDA_SOURCE, which holds the
same math for the CUDA kernels. Both read the constants below.
"""
from string import Template
from typing import Tuple

import numpy as np

# hash2 constants (integer-noise style fract hash)
HASH_SCALE = (123.34, 456.21)
HASH_OFFSET = 45.32

# Per-octave rotation of ~30 degrees to break axis alignment
ROTATE_COS = 0.866
ROTATE_SIN = 0.5

# Domain warp: two independent fbm lookups, the second shifted to decorrelate
WARP_STRENGTH = 0.4
WARP_OCTAVES = 3
WARP_OFFSET = (5.2, 1.3)


def _f32(value) -> np.ndarray:
    return np.asarray(value, dtype=np.float32)


def fract(x):
    return x - np.floor(x)


def mix(a, b, t):
    """Linear blend a -> b, t in [0, 1]."""
    return a * (1.0 - t) + b * t


def saturate(x):
    """Clamp to [0, 1] like fminf(fmaxf(x, 0), 1): NaN maps to 0."""
    return np.fmin(np.fmax(x, 0.0), 1.0)


def smoothstep(edge0: float, edge1: float, x):
    """Hermite step. Saturates to exactly 0.0 / 1.0 outside the edges."""
    t = np.clip((x - edge0) / (edge1 - edge0), 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def quintic(f):
    """6f^5 - 15f^4 + 10f^3. Zero first and second derivative at 0 and 1."""
    return f * f * f * (f * (f * 6.0 - 15.0) + 10.0)


def hash2(x, y):
    """Stateless 2D -> 1D hash in [0, 1)."""
    qx = fract(_f32(x) * np.float32(HASH_SCALE[0]))
    qy = fract(_f32(y) * np.float32(HASH_SCALE[1]))
    d = qx * (qx + HASH_OFFSET) + qy * (qy + HASH_OFFSET)
    return fract((qx + d) * (qy + d))


def value_noise(x, y):
    """Bilinear lattice interpolation of hash2 with quintic smoothing."""
    x = _f32(x)
    y = _f32(y)
    ix = np.floor(x)
    iy = np.floor(y)
    ux = quintic(x - ix)
    uy = quintic(y - iy)

    a = hash2(ix, iy)
    b = hash2(ix + 1.0, iy)
    c = hash2(ix, iy + 1.0)
    d = hash2(ix + 1.0, iy + 1.0)
    return mix(mix(a, b, ux), mix(c, d, ux), uy)


def _rotate(x, y):
    return x * ROTATE_COS - y * ROTATE_SIN, x * ROTATE_SIN + y * ROTATE_COS


def fbm(x, y, octaves: int):
    """
    Fractal sum of value_noise: frequency doubles and amplitude halves per
    octave, and the sampling coordinate is rotated between octaves.
    Range is roughly [0, 1 - 0.5**octaves].
    """
    x = _f32(x)
    y = _f32(y)
    value = np.zeros(np.broadcast(x, y).shape, dtype=np.float32)
    amp = 0.5
    freq = 1.0
    for _ in range(int(octaves)):
        value = value + amp * value_noise(x * freq, y * freq)
        freq *= 2.0
        amp *= 0.5
        x, y = _rotate(x, y)
    return value


def ridged_noise(x, y, octaves: int):
    """
    Ridged multifractal. Each octave folds the noise into a ridge
    (1 - |2n - 1|), squares it, and multiplies by the previous octave's
    folded value clamped to [0, 1], so detail piles up along existing ridges.
    """
    x = _f32(x)
    y = _f32(y)
    shape = np.broadcast(x, y).shape
    value = np.zeros(shape, dtype=np.float32)
    weight = np.ones(shape, dtype=np.float32)
    amp = 0.5
    freq = 1.0
    for _ in range(int(octaves)):
        n = value_noise(x * freq, y * freq)
        n = 1.0 - np.abs(n * 2.0 - 1.0)
        n = n * n
        n = n * weight
        weight = np.clip(n, 0.0, 1.0)

        value = value + n * amp
        freq *= 2.0
        amp *= 0.5
        x, y = _rotate(x, y)
    return value


def domain_warp(x, y) -> Tuple[np.ndarray, np.ndarray]:
    """Offsets (x, y) by two independent fbm lookups scaled by WARP_STRENGTH."""
    x = _f32(x)
    y = _f32(y)
    wx = fbm(x, y, WARP_OCTAVES)
    wy = fbm(x + WARP_OFFSET[0], y + WARP_OFFSET[1], WARP_OCTAVES)
    return x + (wx * 2.0 - 1.0) * WARP_STRENGTH, y + (wy * 2.0 - 1.0) * WARP_STRENGTH


def cuda_float(value: float) -> str:
    """Formats a Python float as a CUDA single-precision literal."""
    return f"{float(value)!r}f"


_NOISE_CUDA_TEMPLATE = Template(r'''
__device__ __forceinline__ float fractf(float x) { return x - floorf(x); }

__device__ __forceinline__ float mixf(float a, float b, float t) {
    return a * (1.0f - t) + b * t;
}

__device__ __forceinline__ float smoothstepf(float e0, float e1, float x) {
    float t = fminf(fmaxf((x - e0) / (e1 - e0), 0.0f), 1.0f);
    return t * t * (3.0f - 2.0f * t);
}

__device__ __forceinline__ float quinticf(float f) {
    return f * f * f * (f * (f * 6.0f - 15.0f) + 10.0f);
}

__device__ float hash2(float x, float y) {
    float qx = fractf(x * $HASH_SX);
    float qy = fractf(y * $HASH_SY);
    float d = qx * (qx + $HASH_OFFSET) + qy * (qy + $HASH_OFFSET);
    return fractf((qx + d) * (qy + d));
}

__device__ float value_noise(float x, float y) {
    float ix = floorf(x);
    float iy = floorf(y);
    float ux = quinticf(x - ix);
    float uy = quinticf(y - iy);

    float a = hash2(ix, iy);
    float b = hash2(ix + 1.0f, iy);
    float c = hash2(ix, iy + 1.0f);
    float d = hash2(ix + 1.0f, iy + 1.0f);
    return mixf(mixf(a, b, ux), mixf(c, d, ux), uy);
}

__device__ __forceinline__ void rotate_octave(float* x, float* y) {
    float rx = *x * $ROT_C - *y * $ROT_S;
    float ry = *x * $ROT_S + *y * $ROT_C;
    *x = rx;
    *y = ry;
}

__device__ float fbm(float x, float y, int octaves) {
    float value = 0.0f;
    float amp = 0.5f;
    float freq = 1.0f;
    for (int i = 0; i < octaves; i++) {
        value += amp * value_noise(x * freq, y * freq);
        freq *= 2.0f;
        amp *= 0.5f;
        rotate_octave(&x, &y);
    }
    return value;
}

__device__ float ridged_noise(float x, float y, int octaves) {
    float value = 0.0f;
    float amp = 0.5f;
    float freq = 1.0f;
    float weight = 1.0f;
    for (int i = 0; i < octaves; i++) {
        float n = value_noise(x * freq, y * freq);
        n = 1.0f - fabsf(n * 2.0f - 1.0f);
        n = n * n;
        n = n * weight;
        weight = fminf(fmaxf(n, 0.0f), 1.0f);

        value += n * amp;
        freq *= 2.0f;
        amp *= 0.5f;
        rotate_octave(&x, &y);
    }
    return value;
}

__device__ void domain_warp(float* x, float* y) {
    float wx = fbm(*x, *y, $WARP_OCTAVES);
    float wy = fbm(*x + $WARP_OX, *y + $WARP_OY, $WARP_OCTAVES);
    *x = *x + (wx * 2.0f - 1.0f) * $WARP_STRENGTH;
    *y = *y + (wy * 2.0f - 1.0f) * $WARP_STRENGTH;
}
''')

NOISE_CUDA_SOURCE = _NOISE_CUDA_TEMPLATE.substitute(
    HASH_SX=cuda_float(HASH_SCALE[0]),
    HASH_SY=cuda_float(HASH_SCALE[1]),
    HASH_OFFSET=cuda_float(HASH_OFFSET),
    ROT_C=cuda_float(ROTATE_COS),
    ROT_S=cuda_float(ROTATE_SIN),
    WARP_OCTAVES=str(int(WARP_OCTAVES)),
    WARP_OX=cuda_float(WARP_OFFSET[0]),
    WARP_OY=cuda_float(WARP_OFFSET[1]),
    WARP_STRENGTH=cuda_float(WARP_STRENGTH),
)
