"""Tests for diagnostic maps and figures."""

import mrcfile
import numpy as np
import pytest

from optics_refine.diagnostics import DiagnosticsWriter, half_to_full
from optics_refine.physics import tilt_shift_phase


def centered_frequencies(size, pixel_size):
    k = (np.arange(size) - size // 2) / (size * pixel_size)
    ky, kx = np.meshgrid(k, k, indexing="ij")
    return kx, ky


def test_half_to_full_antisymmetric():
    """Test an odd phase map expands to the same map on the full grid."""
    size, pixel_size = 32, 2.0
    k = np.arange(size // 2 + 1) / (size * pixel_size)
    y = np.arange(size)
    y = np.where(y < size // 2 + 1, y, y - size) / (size * pixel_size)
    kx_half, ky_half = np.meshgrid(k, y)
    half = tilt_shift_phase(kx_half, ky_half, 2.7, 0.0197, shift_x=0.2, tilt_y=1.0)

    full = half_to_full(half, antisymmetric=True)

    kx, ky = centered_frequencies(size, pixel_size)
    expected = tilt_shift_phase(kx, ky, 2.7, 0.0197, shift_x=0.2, tilt_y=1.0)
    assert full.shape == (size, size)
    # Row 0 is -s/2, which the half spectrum stores as +s/2
    np.testing.assert_allclose(full[1:], expected[1:], atol=1e-12)


def test_half_to_full_symmetric():
    half = np.arange(8 * 5, dtype=float).reshape(8, 5)
    full = half_to_full(half)
    c = 4
    assert full[c, c] == half[0, 0]
    assert full[c + 1, c - 2] == full[c - 1, c + 2] == half[7, 2]


def test_half_to_full_rejects_bad_shape():
    with pytest.raises(ValueError, match="Expected half spectrum"):
        half_to_full(np.zeros((8, 8)))


def test_write_group_files(tmp_path):
    """Test the artifacts written for diag and debug."""
    writer = DiagnosticsWriter(tmp_path, debug=True, diag=True)
    half = np.random.default_rng(0).uniform(-1.0, 1.0, size=(16, 9))

    writer.write_group(3, np.abs(half), half, half, half, n_max=5)

    names = {p.name for p in tmp_path.iterdir()}
    for stem in (
        "beamtilt_weight-full",
        "beamtilt_delta-phase_residual",
        "beamtilt_delta-phase_per-pixel",
        "beamtilt_delta-phase_lin-fit",
        "beamtilt_delta-phase_iter-fit",
    ):
        assert f"{stem}_optics-group_3_N-5.mrc" in names
        assert f"{stem}_optics-group_3_N-5.png" in names
    assert "beamtilt_summary_optics-group_3_N-5.png" in names

    with mrcfile.open(str(tmp_path / "beamtilt_delta-phase_iter-fit_optics-group_3_N-5.mrc")) as mrc:
        assert mrc.data.shape == (16, 16)
        assert mrc.data.dtype == np.float32


def test_write_group_diag_only(tmp_path):
    writer = DiagnosticsWriter(tmp_path, debug=False, diag=True)
    half = np.zeros((16, 9))

    writer.write_group(1, half, half, half, half)

    names = {p.name for p in tmp_path.iterdir()}
    assert "beamtilt_delta-phase_per-pixel_optics-group_1.mrc" in names
    assert not any(name.startswith("beamtilt_weight-full") for name in names)
