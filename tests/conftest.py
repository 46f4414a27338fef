"""Shared fixtures: synthetic optics groups, particles and observations."""

import matplotlib

# Use non-interactive backend
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from optics_refine.constants import (
    DEFOCUS_ANGLE,
    DEFOCUS_U,
    DEFOCUS_V,
    MICROGRAPH_NAME,
    OPTICS_GROUP,
    PIXEL_SIZE,
    SPHERICAL_ABERRATION,
    VOLTAGE,
)
from optics_refine.physics import spatial_frequencies, tilt_shift_phase
from optics_refine.registry import OpticsGroupRegistry

BOX_SIZE = 64
PIXEL = 2.0  # Nyquist at 4 A keeps beam tilt phases below pi
VOLTAGE_KV = 300.0
CS_MM = 2.7


def make_optics(group_ids=(1,), pixel_size=PIXEL):
    return pd.DataFrame({
        OPTICS_GROUP: list(group_ids),
        PIXEL_SIZE: [pixel_size] * len(group_ids),
        VOLTAGE: [VOLTAGE_KV] * len(group_ids),
        SPHERICAL_ABERRATION: [CS_MM] * len(group_ids),
    })


def make_particles(n, group=1, micrograph="mics/mic_000.mrc", seed=0):
    rng = np.random.default_rng(seed)
    defocus = rng.uniform(8000.0, 25000.0, size=n)
    return pd.DataFrame({
        OPTICS_GROUP: [group] * n,
        MICROGRAPH_NAME: [micrograph] * n,
        DEFOCUS_U: defocus + 150.0,
        DEFOCUS_V: defocus - 150.0,
        DEFOCUS_ANGLE: rng.uniform(0.0, 180.0, size=n),
    })


def simulate(registry, particles, tilt=(0.0, 0.0), shift=(0.0, 0.0), size=BOX_SIZE):
    """
    Observed and predicted half spectra of particles under a known aberration.

    Predictions are uniform; observations are prediction x CTF x exp(i phi).
    """
    observed, predicted = [], []
    for _, row in particles.iterrows():
        group = registry.group(row[OPTICS_GROUP])
        kx, ky = spatial_frequencies(size, group.pixel_size)
        phase = tilt_shift_phase(
            kx, ky, group.spherical_aberration, group.wavelength,
            shift_x=shift[0], shift_y=shift[1], tilt_x=tilt[0], tilt_y=tilt[1],
        )
        pred = np.ones((size, size // 2 + 1), dtype=np.complex128)
        obs = registry.ctf_image(row, size) * pred * np.exp(1j * phase)
        observed.append(obs)
        predicted.append(pred)
    return observed, predicted


@pytest.fixture
def registry():
    return OpticsGroupRegistry.from_table(make_optics((1, 2)))


@pytest.fixture
def particles():
    return make_particles(20)
