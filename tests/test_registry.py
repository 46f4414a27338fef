"""Tests for the optics group registry and correction cache."""

import numpy as np
import pandas as pd
import pytest

from conftest import BOX_SIZE, make_optics, make_particles
from optics_refine.constants import (
    BEAM_TILT_X,
    BEAM_TILT_Y,
    DEFOCUS_U,
    EVEN_ZERNIKE,
    ODD_ZERNIKE,
    OPTICS_GROUP,
    ORIGIN_X_ANGST,
    PIXEL_SIZE,
    VOLTAGE,
)
from optics_refine.correction_cache import CorrectionCache
from optics_refine.physics import spatial_frequencies, tilt_shift_phase
from optics_refine.registry import OpticsGroup, OpticsGroupError, OpticsGroupRegistry
from optics_refine.types import FitResult


def test_registry_from_table(registry):
    """Test reading groups from an optics table."""
    assert registry.number_of_groups == 2
    assert registry.group_ids == [1, 2]
    group = registry.group(1)
    assert group.pixel_size == 2.0
    assert group.wavelength == pytest.approx(0.019687, abs=1e-5)
    assert not group.has_mag_matrix


def test_registry_missing_columns():
    optics = make_optics().drop(columns=[VOLTAGE])
    with pytest.raises(OpticsGroupError, match="missing columns"):
        OpticsGroupRegistry.from_table(optics)


def test_registry_duplicate_groups():
    with pytest.raises(OpticsGroupError, match="more than once"):
        OpticsGroupRegistry.from_table(make_optics((1, 1)))


def test_parse_coefficient_columns():
    """Test odd/even coefficient cells given as strings or lists."""
    optics = make_optics((1, 2))
    optics[ODD_ZERNIKE] = pd.Series(["[0.1, -0.2]", None], dtype=object)
    optics[EVEN_ZERNIKE] = pd.Series([[0.5], np.nan], dtype=object)
    registry = OpticsGroupRegistry.from_table(optics)

    assert registry.group(1).odd_zernike == (0.1, -0.2)
    assert registry.group(1).even_zernike == (0.5,)
    assert registry.group(2).odd_zernike == ()
    assert registry.group(2).even_zernike == ()


def test_find_undefined_groups(registry):
    particles = pd.concat([make_particles(3, group=1), make_particles(2, group=5)])
    assert registry.find_undefined_groups(particles) == [5]

    with pytest.raises(OpticsGroupError, match=r"undefined optics groups \[5\]"):
        registry.validate_particles(particles, context="batch mic_000")


def test_unknown_group_lookup(registry):
    with pytest.raises(OpticsGroupError, match="Optics group 9 is not defined"):
        registry.group(9)


def test_groups_are_ordered():
    assert OpticsGroupRegistry.from_table(make_optics((1, 2, 3))).groups_are_ordered()
    assert not OpticsGroupRegistry.from_table(make_optics((2, 1))).groups_are_ordered()
    assert not OpticsGroupRegistry.from_table(make_optics((1, 3))).groups_are_ordered()


def test_normalize_ordering_relabels_atomically():
    """Test renumbering by storage order with swapped ids does not alias groups."""
    optics = make_optics((2, 1))
    optics.loc[0, PIXEL_SIZE] = 1.0
    registry = OpticsGroupRegistry.from_table(optics)
    particles = pd.concat([make_particles(3, group=1), make_particles(2, group=2)],
                          ignore_index=True)

    renumbered, relabelled = registry.normalize_ordering(particles)

    assert renumbered.groups_are_ordered()
    # Row 0 (old id 2, pixel 1.0) becomes group 1
    assert renumbered.group(1).pixel_size == 1.0
    assert renumbered.group(2).pixel_size == 2.0
    assert relabelled[OPTICS_GROUP].tolist() == [2, 2, 2, 1, 1]
    # Inputs are untouched
    assert particles[OPTICS_GROUP].tolist() == [1, 1, 1, 2, 2]
    assert registry.group_ids == [2, 1]
    assert renumbered.to_table()[OPTICS_GROUP].tolist() == [1, 2]


def test_load_safely_renumbers_sparse_ids():
    particles = make_particles(4, group=7)
    registry, particles_out = OpticsGroupRegistry.load_safely(particles, make_optics((7,)))
    assert registry.group_ids == [1]
    assert particles_out[OPTICS_GROUP].unique().tolist() == [1]


def test_load_safely_rejects_undefined_groups():
    with pytest.raises(OpticsGroupError, match="undefined"):
        OpticsGroupRegistry.load_safely(make_particles(2, group=3), make_optics((1,)))


def test_load_safely_missing_particle_columns():
    particles = make_particles(2).drop(columns=[DEFOCUS_U])
    assert not OpticsGroupRegistry.contains_all_needed_columns(particles)
    with pytest.raises(OpticsGroupError, match="Particle table is missing columns"):
        OpticsGroupRegistry.load_safely(particles, make_optics())


def test_unit_conversion_inverse(registry):
    """Test angstrom/pixel conversions are exact inverses."""
    for a in (3.7, 20.0, 128.0):
        p = registry.ang_to_pix(a, BOX_SIZE, 1)
        assert registry.pix_to_ang(p, BOX_SIZE, 1) == pytest.approx(a, rel=1e-14)
    assert registry.ang_to_pix(20.0, 64, 1) == pytest.approx(6.4)


def test_groups_present(registry):
    particles = pd.concat([make_particles(2, group=2), make_particles(1, group=1)])
    assert registry.groups_present(particles) == [1, 2]


def test_apply_aniso_mag_transp():
    group = OpticsGroup(id=1, pixel_size=1.0, voltage=300.0, spherical_aberration=2.7,
                        mag=((1.01, 0.0), (0.0, 0.99)))
    registry = OpticsGroupRegistry([group])
    a = np.arange(9, dtype=float).reshape(3, 3)

    out = registry.apply_aniso_mag_transp(a, 1)

    np.testing.assert_allclose(out[0], 1.01 * a[0])
    np.testing.assert_allclose(out[1], 0.99 * a[1])
    np.testing.assert_allclose(out[2], a[2])


def test_correction_cache_memoizes(registry):
    """Test cached images are computed once and read-only."""
    first = registry.phase_correction(1, BOX_SIZE)
    second = registry.phase_correction(1, BOX_SIZE)

    assert first is second
    assert not first.flags.writeable
    assert (1, BOX_SIZE, "phase") in registry.cache
    registry.phase_correction(1, 32)
    registry.gamma_offset(1, BOX_SIZE)
    assert len(registry.cache) == 3
    assert sorted(registry.cache.keys()) == [
        (1, 32, "phase"), (1, BOX_SIZE, "gamma_offset"), (1, BOX_SIZE, "phase"),
    ]


def test_correction_cache_unknown_kind(registry):
    with pytest.raises(ValueError, match="Unknown correction kind"):
        CorrectionCache().get(registry.group(1), 16, "defocus")


def test_phase_correction_includes_beam_tilt():
    """Test tabulated beam tilt enters the antisymmetric phase correction."""
    optics = make_optics()
    optics[BEAM_TILT_X] = [0.6]
    optics[BEAM_TILT_Y] = [-0.4]
    registry = OpticsGroupRegistry.from_table(optics)
    group = registry.group(1)

    kx, ky = spatial_frequencies(BOX_SIZE, group.pixel_size)
    expected = np.exp(1j * tilt_shift_phase(kx, ky, group.spherical_aberration,
                                            group.wavelength, tilt_x=0.6, tilt_y=-0.4))

    np.testing.assert_allclose(registry.phase_correction(1, BOX_SIZE), expected, atol=1e-12)


def test_predict_then_demodulate(registry):
    """Test demodulation undoes the phase correction applied by predict."""
    optics = make_optics()
    optics[ODD_ZERNIKE] = pd.Series([[0.2, -0.1, 3.0, 0.5]], dtype=object)
    registry = OpticsGroupRegistry.from_table(optics)
    particle = make_particles(1).iloc[0]
    rng = np.random.default_rng(1)
    reference = rng.normal(size=(BOX_SIZE, 33)) + 1j * rng.normal(size=(BOX_SIZE, 33))

    predicted = registry.predict(particle, reference, apply_ctf=False, apply_shift=False)
    assert not np.allclose(predicted, reference)

    registry.demodulate(1, predicted)
    np.testing.assert_allclose(predicted, reference, atol=1e-12)


def test_predict_applies_ctf_and_shift(registry):
    particle = make_particles(1).iloc[0].copy()
    particle[ORIGIN_X_ANGST] = 4.0
    reference = np.ones((BOX_SIZE, 33), dtype=complex)

    plain = registry.predict(particle, reference, shift_phases=False, apply_shift=False)
    np.testing.assert_allclose(plain, registry.ctf_image(particle, BOX_SIZE))

    shifted = registry.predict(particle, reference, apply_ctf=False, shift_phases=False)
    np.testing.assert_allclose(np.abs(shifted), 1.0)
    assert not np.allclose(shifted, reference)
    # The reference is not modified
    np.testing.assert_array_equal(reference, np.ones((BOX_SIZE, 33)))


def test_predict_rejects_full_spectrum(registry):
    particle = make_particles(1).iloc[0]
    with pytest.raises(ValueError, match="Expected half spectrum"):
        registry.predict(particle, np.ones((BOX_SIZE, BOX_SIZE), dtype=complex))


def test_demodulate_requires_complex(registry):
    with pytest.raises(ValueError, match="complex half spectrum"):
        registry.demodulate(1, np.ones((BOX_SIZE, 33)))


def test_with_fit_results(registry):
    """Test fitted values are written into a copy of the optics table."""
    fit = np.zeros((BOX_SIZE, 33))
    results = [
        FitResult(1, 0.0, 0.0, 0.5, -0.25, None, fit),
        FitResult(2, 0.0, 0.0, 1.0, 2.0, [0.1, 0.2, 0.3], fit),
    ]

    table = registry.with_fit_results(results)

    assert table[BEAM_TILT_X].tolist() == [0.5, 1.0]
    assert table[BEAM_TILT_Y].tolist() == [-0.25, 2.0]
    assert table.loc[1, ODD_ZERNIKE] == [0.1, 0.2, 0.3]
    assert BEAM_TILT_X not in registry.to_table().columns


def test_demodulate_particle_uses_its_group():
    optics = make_optics((1, 2))
    optics[BEAM_TILT_X] = [0.0, 1.5]
    registry = OpticsGroupRegistry.from_table(optics)
    particle = make_particles(1, group=2).iloc[0]
    observed = registry.phase_correction(2, BOX_SIZE).copy()

    registry.demodulate_particle(particle, observed)

    np.testing.assert_allclose(observed, 1.0, atol=1e-12)
