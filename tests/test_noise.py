"""Noise primitives: determinism, ranges, lattice behaviour."""

import numpy as np
import pytest

from terrasketch import noise


@pytest.fixture
def coords(rng):
    xs = rng.uniform(-50.0, 50.0, size=2000).astype(np.float32)
    ys = rng.uniform(-50.0, 50.0, size=2000).astype(np.float32)
    return xs, ys


def test_hash_is_in_unit_interval_and_position_only(coords):
    xs, ys = coords
    first = noise.hash2(xs, ys)
    second = noise.hash2(xs.copy(), ys.copy())

    assert first.dtype == np.float32
    assert np.all(first >= 0.0)
    assert np.all(first < 1.0)
    np.testing.assert_array_equal(first, second)


def test_hash_is_not_constant(coords):
    values = noise.hash2(*coords)
    assert values.std() > 0.1


def test_value_noise_hits_hash_on_lattice_points():
    ix = np.arange(-5, 5, dtype=np.float32)
    iy = np.arange(3, 13, dtype=np.float32)
    np.testing.assert_allclose(noise.value_noise(ix, iy), noise.hash2(ix, iy), atol=1e-6)


def test_value_noise_is_continuous_across_cells():
    # Straddle the lattice line x = 3 from both sides
    eps = np.float32(1e-3)
    ys = np.linspace(0.1, 0.9, 9, dtype=np.float32)
    left = noise.value_noise(np.full_like(ys, 3.0 - eps), ys)
    right = noise.value_noise(np.full_like(ys, 3.0 + eps), ys)
    assert np.max(np.abs(left - right)) < 1e-3


def test_quintic_has_flat_ends():
    assert noise.quintic(np.float32(0.0)) == 0.0
    assert float(noise.quintic(np.float32(1.0))) == pytest.approx(1.0)
    assert float(noise.quintic(np.float32(0.5))) == pytest.approx(0.5)


@pytest.mark.parametrize("octaves", [1, 3, 5])
def test_fbm_range(coords, octaves):
    values = noise.fbm(*coords, octaves)
    assert np.all(values >= 0.0)
    assert np.all(values <= 1.0 - 0.5 ** octaves + 1e-6)


def test_ridged_noise_is_bounded_and_non_negative(coords):
    values = noise.ridged_noise(*coords, 6)
    assert np.all(values >= 0.0)
    assert np.all(values <= 1.0)


def test_ridged_noise_first_octave_is_folded_square():
    x = np.float32(2.3)
    y = np.float32(7.9)
    n = noise.value_noise(x, y)
    expected = 0.5 * (1.0 - abs(2.0 * n - 1.0)) ** 2
    assert float(noise.ridged_noise(x, y, 1)) == pytest.approx(float(expected), rel=1e-5)


def test_domain_warp_displacement_is_bounded(coords):
    xs, ys = coords
    wx, wy = noise.domain_warp(xs, ys)
    assert np.max(np.abs(wx - xs)) <= noise.WARP_STRENGTH + 1e-4
    assert np.max(np.abs(wy - ys)) <= noise.WARP_STRENGTH + 1e-4
    assert np.max(np.abs(wx - xs)) > 0.0


def test_smoothstep_saturates_exactly():
    x = np.array([-1.0, 0.0, 0.25, 1.0, 2.0], dtype=np.float32)
    out = noise.smoothstep(0.0, 1.0, x)
    assert out[0] == 0.0
    assert out[1] == 0.0
    assert out[3] == 1.0
    assert out[4] == 1.0
    assert 0.0 < out[2] < 0.5


def test_cuda_prelude_is_fully_rendered():
    assert "$" not in noise.NOISE_CUDA_SOURCE
    for name in ("hash2", "value_noise", "fbm", "ridged_noise", "domain_warp"):
        assert name in noise.NOISE_CUDA_SOURCE
    assert "123.34f" in noise.NOISE_CUDA_SOURCE


def test_saturate_clamps_like_fminf_fmaxf():
    x = np.array([np.nan, -2.0, 0.25, 1.0, 7.0], dtype=np.float32)
    out = noise.saturate(x)
    assert out.dtype == np.float32
    np.testing.assert_array_equal(out, [0.0, 0.0, 0.25, 1.0, 1.0])
